from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from boxrental.infra.metrics import metrics
from boxrental.infra.notifications import RECONCILIATION_REQUIRED, Notifier, dispatch_notification

logger = logging.getLogger("boxrental.reconciliation")

REFUND_FAILED = "refund_failed"
BOX_DOUBLE_BOOKED = "box_double_booked"
EXTENSION_CONFLICT = "extension_conflict"


@dataclass(frozen=True)
class ReconciliationWarning:
    """Money and booking state disagree; an operator has to follow up."""

    kind: str
    detail: str
    booking_id: str | None = None
    payment_intent_id: str | None = None
    charge_ref: str | None = None
    amount_cents: int | None = None


async def report_reconciliation_warning(
    warning: ReconciliationWarning, *, notifier: Notifier | None = None
) -> ReconciliationWarning:
    logger.error("reconciliation_warning", extra={"extra": asdict(warning)})
    metrics.record_reconciliation_warning(warning.kind)
    await dispatch_notification(notifier, RECONCILIATION_REQUIRED, asdict(warning))
    return warning
