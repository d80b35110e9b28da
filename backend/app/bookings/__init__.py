from app.bookings.service import (
    AdminCreateBookingArgs,
    BlockDateArgs,
    CreateBookingArgs,
    UpdateBookingArgs,
    block_date,
    create_booking,
    delete_booking,
    get_booking,
    list_bookings,
    map_validation_error,
    serialize_booking,
    unblock_date,
    update_booking,
)

__all__ = [
    "AdminCreateBookingArgs",
    "BlockDateArgs",
    "CreateBookingArgs",
    "UpdateBookingArgs",
    "block_date",
    "create_booking",
    "delete_booking",
    "get_booking",
    "list_bookings",
    "map_validation_error",
    "serialize_booking",
    "unblock_date",
    "update_booking",
]
