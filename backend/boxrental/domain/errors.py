from dataclasses import dataclass
from typing import ClassVar, List


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = "https://example.com/problems/domain-error"
    errors: List[dict] | None = None

    status_code: ClassVar[int] = 400
    kind: ClassVar[str] = "domain_error"

    def __str__(self) -> str:
        return self.detail


@dataclass
class ValidationError(DomainError):
    title: str = "Validation Error"
    type: str = "https://example.com/problems/validation-error"

    status_code: ClassVar[int] = 400
    kind: ClassVar[str] = "validation_error"


@dataclass
class NotFoundError(DomainError):
    title: str = "Not Found"
    type: str = "https://example.com/problems/not-found"

    status_code: ClassVar[int] = 404
    kind: ClassVar[str] = "not_found"


@dataclass
class ConflictError(DomainError):
    title: str = "Conflict"
    type: str = "https://example.com/problems/conflict"

    status_code: ClassVar[int] = 409
    kind: ClassVar[str] = "conflict"


@dataclass
class BoxNoLongerAvailable(ConflictError):
    title: str = "Box No Longer Available"
    type: str = "https://example.com/problems/box-no-longer-available"

    kind: ClassVar[str] = "box_no_longer_available"


@dataclass
class PaymentNotSucceeded(DomainError):
    """The provider does not (yet) report the payment as settled; retry later."""

    title: str = "Payment Not Succeeded"
    type: str = "https://example.com/problems/payment-not-succeeded"

    status_code: ClassVar[int] = 409
    kind: ClassVar[str] = "payment_not_succeeded"


@dataclass
class ProviderTransientError(DomainError):
    title: str = "Payment Provider Unavailable"
    type: str = "https://example.com/problems/provider-unavailable"

    status_code: ClassVar[int] = 503
    kind: ClassVar[str] = "provider_transient"


@dataclass
class ProviderPermanentError(DomainError):
    title: str = "Payment Provider Rejected Request"
    type: str = "https://example.com/problems/provider-rejected"

    status_code: ClassVar[int] = 502
    kind: ClassVar[str] = "provider_permanent"
