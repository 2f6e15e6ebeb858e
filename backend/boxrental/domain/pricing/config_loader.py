import hashlib
import json
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class CancellationTier(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    min_hours_before_start: float = Field(ge=0)
    refund_percent: int = Field(ge=0, le=100)
    apply_transaction_fee: bool = False


class CancellationPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    max_rental_days: int | None = Field(None, ge=1)
    tiers: tuple[CancellationTier, ...]

    @field_validator("tiers")
    @classmethod
    def sort_tiers(cls, tiers: tuple[CancellationTier, ...]) -> tuple[CancellationTier, ...]:
        if not tiers:
            raise ValueError("cancellation policy has no tiers")
        return tuple(sorted(tiers, key=lambda tier: tier.min_hours_before_start, reverse=True))

    def tier_for(self, hours_until_start: float) -> CancellationTier | None:
        for tier in self.tiers:
            if hours_until_start >= tier.min_hours_before_start:
                return tier
        return None


def _default_policies() -> tuple[CancellationPolicy, ...]:
    return (
        CancellationPolicy(
            name="short_rental",
            max_rental_days=3,
            tiers=(
                CancellationTier(min_hours_before_start=24, refund_percent=100, apply_transaction_fee=True),
                CancellationTier(min_hours_before_start=0, refund_percent=50),
            ),
        ),
        CancellationPolicy(
            name="long_rental",
            max_rental_days=None,
            tiers=(
                CancellationTier(min_hours_before_start=48, refund_percent=100, apply_transaction_fee=True),
                CancellationTier(min_hours_before_start=0, refund_percent=75),
            ),
        ),
    )


class PricingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    pricing_config_id: str = "boxrental"
    pricing_config_version: str = "v1"
    currency: str = "SEK"
    base_price_per_day_cents: int = Field(30000, ge=0)
    model_multipliers: dict[str, float] = Field(default_factory=lambda: {"CLASSIC": 1.0, "PRO": 1.5})
    transaction_fee_cents: int = Field(2900, ge=0)
    started_booking_behaviour: Literal["deny", "zero_refund"] = "deny"
    cancellation_policies: tuple[CancellationPolicy, ...] = Field(default_factory=_default_policies)
    config_hash: str | None = None

    @model_validator(mode="after")
    def check_policies(self) -> "PricingConfig":
        if not self.cancellation_policies:
            raise ValueError("at least one cancellation policy is required")
        if all(policy.max_rental_days is not None for policy in self.cancellation_policies):
            raise ValueError("one cancellation policy must have no max_rental_days")
        return self

    def multiplier_for(self, model: str) -> float:
        return self.model_multipliers.get(model.upper(), 1.0)

    def policy_for(self, rental_days: int) -> CancellationPolicy:
        bounded = sorted(
            (policy for policy in self.cancellation_policies if policy.max_rental_days is not None),
            key=lambda policy: policy.max_rental_days,
        )
        for policy in bounded:
            if rental_days <= policy.max_rental_days:
                return policy
        return next(policy for policy in self.cancellation_policies if policy.max_rental_days is None)


def _canonical_json(data: dict) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def _resolve_pricing_path(path: str) -> Path:
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate
    cwd_candidate = (Path.cwd() / candidate).resolve()
    if cwd_candidate.exists():
        return cwd_candidate
    module_candidate = Path(__file__).resolve().parents[3] / candidate
    if module_candidate.exists():
        return module_candidate
    raise FileNotFoundError(f"Pricing config not found at {path}")


def load_pricing_config(path: str | None) -> PricingConfig:
    if not path:
        return PricingConfig()
    resolved_path = _resolve_pricing_path(path)
    data = json.loads(resolved_path.read_text(encoding="utf-8"))
    config_hash = hashlib.sha256(_canonical_json(data).encode("utf-8")).hexdigest()
    return PricingConfig.model_validate({**data, "config_hash": f"sha256:{config_hash}"})
