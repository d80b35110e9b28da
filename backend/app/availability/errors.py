from __future__ import annotations

from typing import Any


class AvailabilityError(Exception):
    error_code = "AVAILABILITY_ERROR"
    default_message = "Availability could not be determined."

    def __init__(self, human_message: str | None = None) -> None:
        self.human_message = human_message or self.default_message
        super().__init__(self.human_message)

    def to_response(self) -> dict[str, Any]:
        return {
            "ok": False,
            "error_code": self.error_code,
            "human_message": self.human_message,
        }


class InvalidInput(AvailabilityError):
    error_code = "INVALID_INPUT"
    default_message = "Invalid date, time or service list."


class InvalidRange(AvailabilityError):
    error_code = "INVALID_RANGE"
    default_message = "Start must be before end."


class StoreUnavailable(AvailabilityError):
    error_code = "STORE_UNAVAILABLE"
    default_message = "Booking calendar is temporarily unavailable."


class SlotTaken(AvailabilityError):
    """Raised when the persistence layer rejects a write for an occupied slot."""

    error_code = "SLOT_TAKEN"
    default_message = "That time slot was just taken."


class OperationCancelled(AvailabilityError):
    error_code = "CANCELLED"
    default_message = "Availability check was cancelled."
