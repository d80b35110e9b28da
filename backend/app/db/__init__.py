from app.db.base import Base
from app.db.models import (
    BOOKING_STATUSES,
    Booking,
    CalendarBlock,
    RateLimitAttempt,
)

__all__ = [
    "Base",
    "BOOKING_STATUSES",
    "Booking",
    "CalendarBlock",
    "RateLimitAttempt",
]
