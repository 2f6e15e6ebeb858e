from boxrental.domain.bookings import schemas
from boxrental.domain.bookings.db_models import Booking
from boxrental.domain.intervals import Interval
from boxrental.shared.clock import ensure_utc


def booking_response(booking: Booking) -> schemas.BookingResponse:
    return schemas.BookingResponse(
        booking_id=booking.booking_id,
        box_id=booking.box_id,
        status=booking.status,
        start_at=ensure_utc(booking.start_at),
        end_at=ensure_utc(booking.end_at),
        total_cents=booking.total_cents,
        currency=booking.currency,
        returned_at=ensure_utc(booking.returned_at) if booking.returned_at else None,
        cancelled_at=ensure_utc(booking.cancelled_at) if booking.cancelled_at else None,
        refund_status=booking.refund_status,
    )


def interval_responses(ranges: list[Interval]) -> list[schemas.IntervalResponse]:
    return [schemas.IntervalResponse(start=interval.start, end=interval.end) for interval in ranges]
