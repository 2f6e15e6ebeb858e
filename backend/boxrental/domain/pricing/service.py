from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from boxrental.domain.intervals import days_between, rental_days
from boxrental.domain.pricing.config_loader import PricingConfig


@dataclass(frozen=True)
class RentalQuote:
    days: int
    price_per_day_cents: int
    total_cents: int
    currency: str


def daily_rate_cents(
    config: PricingConfig,
    *,
    model: str,
    box_price_cents: int | None = None,
    location_price_cents: int | None = None,
) -> int:
    if box_price_cents is not None:
        base = box_price_cents
    elif location_price_cents is not None:
        base = location_price_cents
    else:
        base = config.base_price_per_day_cents
    return int(round(base * config.multiplier_for(model)))


def quote_rental(
    config: PricingConfig,
    *,
    model: str,
    start: datetime,
    end: datetime,
    box_price_cents: int | None = None,
    location_price_cents: int | None = None,
) -> RentalQuote:
    per_day = daily_rate_cents(
        config,
        model=model,
        box_price_cents=box_price_cents,
        location_price_cents=location_price_cents,
    )
    days = rental_days(start, end)
    return RentalQuote(days=days, price_per_day_cents=per_day, total_cents=per_day * days, currency=config.currency)


def quote_extension(
    config: PricingConfig,
    *,
    model: str,
    current_end: datetime,
    new_end: datetime,
    box_price_cents: int | None = None,
    location_price_cents: int | None = None,
) -> RentalQuote:
    per_day = daily_rate_cents(
        config,
        model=model,
        box_price_cents=box_price_cents,
        location_price_cents=location_price_cents,
    )
    days = days_between(current_end, new_end)
    return RentalQuote(days=days, price_per_day_cents=per_day, total_cents=per_day * days, currency=config.currency)
