from functools import lru_cache

from fastapi import Request

from boxrental.domain.pricing.config_loader import PricingConfig, load_pricing_config
from boxrental.infra import stripe_client as stripe_infra
from boxrental.infra.db import get_db_session  # noqa: F401
from boxrental.infra.notifications import Notifier, resolve_notifier
from boxrental.settings import settings
from boxrental.shared.clock import Clock, system_clock


@lru_cache
def get_pricing_config() -> PricingConfig:
    return load_pricing_config(settings.pricing_config_path)


def get_clock(request: Request) -> Clock:
    return getattr(request.app.state, "clock", None) or system_clock


def get_payment_provider(request: Request):
    return stripe_infra.resolve_client(request.app.state)


def get_notifier(request: Request) -> Notifier:
    notifier = getattr(request.app.state, "notifier", None)
    if notifier is not None:
        return notifier
    services = getattr(request.app.state, "services", None)
    if services is not None and getattr(services, "notifier", None) is not None:
        return services.notifier
    notifier = resolve_notifier(getattr(request.app.state, "app_settings", None))
    request.app.state.notifier = notifier
    return notifier
