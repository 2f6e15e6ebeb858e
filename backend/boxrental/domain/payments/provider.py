from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

INTENT_SUCCEEDED = "succeeded"


@dataclass(frozen=True)
class CreatedPaymentIntent:
    id: str
    client_secret: str | None
    amount_cents: int
    currency: str


@dataclass(frozen=True)
class ProviderPaymentIntent:
    id: str
    status: str
    amount_cents: int
    currency: str
    latest_charge_ref: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    livemode: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == INTENT_SUCCEEDED


@dataclass(frozen=True)
class ProviderCharge:
    id: str
    amount_cents: int
    amount_refunded_cents: int
    currency: str
    payment_intent_id: str | None = None

    @property
    def refundable_cents(self) -> int:
        return max(0, self.amount_cents - self.amount_refunded_cents)


@dataclass(frozen=True)
class ProviderRefund:
    id: str
    status: str
    amount_cents: int


class PaymentProvider(Protocol):
    async def create_payment_intent(
        self,
        *,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
        receipt_email: str | None = None,
    ) -> CreatedPaymentIntent: ...

    async def retrieve_payment_intent(self, payment_intent_id: str) -> ProviderPaymentIntent: ...

    async def retrieve_latest_charge(self, payment_intent_id: str) -> str | None: ...

    async def retrieve_charge(self, charge_ref: str) -> ProviderCharge: ...

    async def issue_refund(
        self,
        *,
        charge_ref: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> ProviderRefund: ...

    async def update_metadata(
        self, payment_intent_id: str, metadata: dict[str, str], *, idempotency_key: str
    ) -> None: ...

    async def verify_webhook(self, payload: bytes, signature: str | None) -> Any: ...
