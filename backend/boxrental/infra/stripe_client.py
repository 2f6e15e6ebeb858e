from __future__ import annotations

import inspect
import logging
import random
from typing import Any, Callable

import anyio

from boxrental.domain.errors import ProviderPermanentError, ProviderTransientError
from boxrental.domain.payments.provider import (
    CreatedPaymentIntent,
    ProviderCharge,
    ProviderPaymentIntent,
    ProviderRefund,
)
from boxrental.infra.metrics import metrics
from boxrental.infra.stripe_resilience import is_transient_stripe_error, stripe_circuit
from boxrental.settings import settings
from boxrental.shared.circuit_breaker import CircuitBreakerOpenError

logger = logging.getLogger(__name__)

MUTATING_METHOD_PREFIXES: tuple[str, ...] = (
    "create_",
    "issue_",
    "update_",
)

READ_ONLY_METHOD_PREFIXES: tuple[str, ...] = (
    "retrieve_",
    "verify_",
)


def is_mutating_method(method_name: str) -> bool:
    if method_name.startswith(READ_ONLY_METHOD_PREFIXES):
        return False
    return method_name.startswith(MUTATING_METHOD_PREFIXES)


def _field(source: Any, key: str, default: Any = None) -> Any:
    if source is None:
        return default
    if isinstance(source, dict):
        return source.get(key, default)
    getter = getattr(source, "get", None)
    if callable(getter):
        try:
            return getter(key, default)
        except TypeError:
            pass
    return getattr(source, key, default)


def _as_str_dict(source: Any) -> dict[str, str]:
    if not source:
        return {}
    if hasattr(source, "to_dict"):
        source = source.to_dict()
    return {str(key): str(value) for key, value in dict(source).items()}


def _charge_ref(latest_charge: Any) -> str | None:
    if latest_charge is None:
        return None
    if isinstance(latest_charge, str):
        return latest_charge or None
    return _field(latest_charge, "id")


class StripeClient:
    """Payment provider adapter over the blocking Stripe SDK.

    Every SDK call runs in a worker thread behind ``stripe_circuit``. Transient
    failures (network, rate limiting, Stripe 5xx) are retried with exponential
    backoff up to ``stripe_max_attempts``; anything else surfaces immediately as
    ``ProviderPermanentError``.
    """

    def __init__(
        self,
        *,
        secret_key: str | None,
        webhook_secret: str | None,
        stripe_sdk: Any | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
    ) -> None:
        if stripe_sdk is None:
            import stripe as stripe_sdk  # type: ignore

        self.stripe = stripe_sdk
        self.secret_key = secret_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self.max_attempts = max(1, max_attempts or settings.stripe_max_attempts)
        self.backoff_seconds = (
            settings.stripe_retry_backoff_seconds if backoff_seconds is None else max(0.0, backoff_seconds)
        )
        self.backoff_max_seconds = (
            settings.stripe_retry_backoff_max_seconds if backoff_max_seconds is None else backoff_max_seconds
        )

    def _require_secret(self) -> None:
        if not self.secret_key:
            raise ProviderPermanentError(detail="Stripe secret key not configured")
        self.stripe.api_key = self.secret_key

    async def _call(self, fn: Callable[..., Any], /, *args, **kwargs) -> Any:
        def _sync_call() -> Any:
            return fn(*args, **kwargs)

        return await stripe_circuit.call(lambda: anyio.to_thread.run_sync(_sync_call))

    async def _call_with_retry(self, operation: str, fn: Callable[..., Any], /, *args, **kwargs) -> Any:
        self._require_secret()
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._call(fn, *args, **kwargs)
            except CircuitBreakerOpenError as exc:
                logger.warning("stripe_circuit_open", extra={"extra": {"operation": operation}})
                raise ProviderTransientError(detail=f"Payment provider unavailable ({operation})") from exc
            except Exception as exc:  # noqa: BLE001
                if not is_transient_stripe_error(exc):
                    logger.warning(
                        "stripe_call_rejected",
                        extra={"extra": {"operation": operation, "error": type(exc).__name__}},
                    )
                    raise ProviderPermanentError(
                        detail=f"Payment provider rejected {operation}: {type(exc).__name__}"
                    ) from exc
                if attempt >= self.max_attempts:
                    logger.warning(
                        "stripe_retries_exhausted",
                        extra={"extra": {"operation": operation, "attempts": attempt, "error": type(exc).__name__}},
                    )
                    raise ProviderTransientError(
                        detail=f"Payment provider unavailable after {attempt} attempts ({operation})"
                    ) from exc
                metrics.record_provider_retry(operation)
                delay = min(self.backoff_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)
                jitter = delay * random.uniform(0.0, 0.3)
                logger.info(
                    "stripe_call_retry",
                    extra={"extra": {"operation": operation, "attempt": attempt, "error": type(exc).__name__}},
                )
                await anyio.sleep(delay + jitter)
        raise RuntimeError("stripe_retry_exhausted")  # pragma: no cover

    async def create_payment_intent(
        self,
        *,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
        receipt_email: str | None = None,
    ) -> CreatedPaymentIntent:
        payload: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if receipt_email:
            payload["receipt_email"] = receipt_email
        intent = await self._call_with_retry(
            "create_payment_intent",
            self.stripe.PaymentIntent.create,
            idempotency_key=idempotency_key,
            **payload,
        )
        return CreatedPaymentIntent(
            id=str(_field(intent, "id")),
            client_secret=_field(intent, "client_secret"),
            amount_cents=int(_field(intent, "amount", amount_cents)),
            currency=str(_field(intent, "currency", currency)).upper(),
        )

    async def retrieve_payment_intent(self, payment_intent_id: str) -> ProviderPaymentIntent:
        intent = await self._call_with_retry(
            "retrieve_payment_intent", self.stripe.PaymentIntent.retrieve, payment_intent_id
        )
        return ProviderPaymentIntent(
            id=str(_field(intent, "id", payment_intent_id)),
            status=str(_field(intent, "status", "")),
            amount_cents=int(_field(intent, "amount_received") or _field(intent, "amount", 0)),
            currency=str(_field(intent, "currency", "")).upper(),
            latest_charge_ref=_charge_ref(_field(intent, "latest_charge")),
            metadata=_as_str_dict(_field(intent, "metadata")),
            livemode=bool(_field(intent, "livemode", False)),
        )

    async def retrieve_latest_charge(self, payment_intent_id: str) -> str | None:
        charges = await self._call_with_retry(
            "retrieve_latest_charge",
            self.stripe.Charge.list,
            payment_intent=payment_intent_id,
            limit=1,
        )
        data = _field(charges, "data") or []
        if not data:
            return None
        return _charge_ref(data[0])

    async def retrieve_charge(self, charge_ref: str) -> ProviderCharge:
        charge = await self._call_with_retry("retrieve_charge", self.stripe.Charge.retrieve, charge_ref)
        return ProviderCharge(
            id=str(_field(charge, "id", charge_ref)),
            amount_cents=int(_field(charge, "amount", 0)),
            amount_refunded_cents=int(_field(charge, "amount_refunded", 0) or 0),
            currency=str(_field(charge, "currency", "")).upper(),
            payment_intent_id=_field(charge, "payment_intent"),
        )

    async def issue_refund(
        self,
        *,
        charge_ref: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> ProviderRefund:
        refund = await self._call_with_retry(
            "issue_refund",
            self.stripe.Refund.create,
            charge=charge_ref,
            amount=amount_cents,
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        return ProviderRefund(
            id=str(_field(refund, "id")),
            status=str(_field(refund, "status", "pending")),
            amount_cents=int(_field(refund, "amount", amount_cents)),
        )

    async def update_metadata(
        self, payment_intent_id: str, metadata: dict[str, str], *, idempotency_key: str
    ) -> None:
        await self._call_with_retry(
            "update_metadata",
            self.stripe.PaymentIntent.modify,
            payment_intent_id,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )

    async def verify_webhook(self, payload: bytes, signature: str | None) -> Any:
        if not self.webhook_secret:
            raise ValueError("Stripe webhook secret not configured")
        if not signature:
            raise ValueError("Missing Stripe signature header")
        return self.stripe.Webhook.construct_event(payload, signature, self.webhook_secret)


def resolve_client(app_state: Any) -> Any:
    """Return the payment provider for the running app.

    ``app.state.stripe_client`` wins so tests can install a fake; otherwise the
    client built into ``app.state.services`` is used, and as a last resort a new
    ``StripeClient`` is created from settings and cached on the state.
    """
    state = getattr(app_state, "state", app_state)
    client = getattr(state, "stripe_client", None)
    if client is not None:
        return client
    services = getattr(state, "services", None)
    if services is not None and getattr(services, "stripe_client", None) is not None:
        return services.stripe_client
    app_settings = getattr(state, "app_settings", None) or settings
    client = StripeClient(
        secret_key=app_settings.stripe_secret_key,
        webhook_secret=app_settings.stripe_webhook_secret,
    )
    state.stripe_client = client
    return client


async def call_stripe_client_method(client: Any, method_name: str, /, *args, **kwargs) -> Any:
    method = getattr(client, method_name, None)
    if method is None:
        raise AttributeError(f"Stripe client missing method {method_name}")

    if is_mutating_method(method_name) and not kwargs.get("idempotency_key"):
        raise ValueError(
            f"Stripe mutation '{method_name}' requires idempotency_key to be provided"
        )

    result = method(*args, **kwargs)
    if inspect.isawaitable(result):
        return await result
    return result
