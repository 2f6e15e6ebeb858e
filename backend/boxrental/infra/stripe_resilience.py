from __future__ import annotations

import asyncio

from boxrental.settings import settings
from boxrental.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

TRANSIENT_STRIPE_ERRORS: tuple[str, ...] = (
    "APIConnectionError",
    "RateLimitError",
    "APIError",
    "TryAgain",
)


def is_transient_stripe_error(exc: BaseException) -> bool:
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, CircuitBreakerOpenError)):
        return True
    if any(cls.__name__ in TRANSIENT_STRIPE_ERRORS for cls in type(exc).__mro__):
        return True
    http_status = getattr(exc, "http_status", None)
    return isinstance(http_status, int) and (http_status == 429 or http_status >= 500)


stripe_circuit = CircuitBreaker(
    name="stripe",
    failure_threshold=settings.stripe_circuit_failure_threshold,
    recovery_time=settings.stripe_circuit_recovery_seconds,
    window_seconds=settings.stripe_circuit_window_seconds,
    half_open_max_calls=settings.stripe_circuit_half_open_max_calls,
    timeout_seconds=settings.stripe_timeout_seconds,
    is_failure=is_transient_stripe_error,
)
