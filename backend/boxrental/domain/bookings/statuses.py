PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
UPCOMING = "UPCOMING"
ACTIVE = "ACTIVE"
OVERDUE = "OVERDUE"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"

ALL_STATUSES = frozenset({PENDING, CONFIRMED, UPCOMING, ACTIVE, OVERDUE, COMPLETED, CANCELLED})
RESERVED_STATUSES = frozenset({PENDING, CONFIRMED, UPCOMING})
TERMINAL_STATUSES = frozenset({COMPLETED, CANCELLED})
SETTLED_STATUSES = frozenset({CONFIRMED, UPCOMING, ACTIVE})
BASE_BLOCKING_STATUSES = frozenset({PENDING, CONFIRMED, UPCOMING, ACTIVE})

# Forward ordering of the lifecycle; a synced booking never moves to a lower rank.
STATUS_RANK = {
    PENDING: 0,
    CONFIRMED: 0,
    UPCOMING: 0,
    ACTIVE: 1,
    OVERDUE: 2,
    COMPLETED: 3,
    CANCELLED: 3,
}


def blocking_statuses(*, overdue_blocks: bool = True) -> frozenset[str]:
    if overdue_blocks:
        return BASE_BLOCKING_STATUSES | {OVERDUE}
    return BASE_BLOCKING_STATUSES


def status_rank(status: str) -> int:
    return STATUS_RANK[status]


BOX_ACTIVE = "ACTIVE"
BOX_INACTIVE = "INACTIVE"
BOX_MODEL_CLASSIC = "CLASSIC"
BOX_MODEL_PRO = "PRO"
BOX_MODELS = frozenset({BOX_MODEL_CLASSIC, BOX_MODEL_PRO})

PAYMENT_KIND_BOOKING = "BOOKING"
PAYMENT_KIND_EXTENSION = "EXTENSION"

PAYMENT_PENDING = "PENDING"
PAYMENT_SUCCEEDED = "SUCCEEDED"
PAYMENT_FAILED = "FAILED"
PAYMENT_REFUNDED = "REFUNDED"
PAYMENT_PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"

REFUND_NOT_REQUIRED = "not_required"
REFUND_PENDING = "pending"
REFUND_SUCCEEDED = "succeeded"
REFUND_FAILED = "failed"
