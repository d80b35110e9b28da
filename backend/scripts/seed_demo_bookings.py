from datetime import date, time, timedelta

from app.bookings.service import generate_booking_reference
from app.db.models import Booking
from app.db.session import SessionLocal


DEMO_EMAIL = "demo@example.com"


def seed_demo_bookings() -> None:
    session = SessionLocal()
    try:
        existing = session.query(Booking).filter(Booking.client_email == DEMO_EMAIL).count()
        if existing:
            print(f"Demo bookings already exist ({existing})")
            return

        first_day = date.today() + timedelta(days=7)
        demo = [
            Booking(
                booking_reference=generate_booking_reference(),
                client_name="Demo Wedding",
                client_email=DEMO_EMAIL,
                event_type="Wedding",
                event_date=first_day,
                start_time=time(14, 0),
                end_time=time(18, 0),
                services=["DJ", "PHOTOGRAPHY"],
                status="CONFIRMED",
            ),
            Booking(
                booking_reference=generate_booking_reference(),
                client_name="Demo Birthday",
                client_email=DEMO_EMAIL,
                event_type="Birthday",
                event_date=first_day + timedelta(days=1),
                start_time=time(19, 0),
                end_time=time(22, 0),
                services=["KARAOKE"],
                status="PENDING",
            ),
        ]
        session.add_all(demo)
        session.commit()
        print(f"Created {len(demo)} demo bookings starting {first_day.isoformat()}")
    finally:
        session.close()


if __name__ == "__main__":
    seed_demo_bookings()
