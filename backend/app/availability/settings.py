"""
Engine configuration resolved once at startup.

The numeric thresholds (buffer, setup lead, search window, ranking size) are
business policy, so they live here rather than in the detector or resolver.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from zoneinfo import ZoneInfo

from app import config


@dataclass(frozen=True)
class ServiceDuration:
    default_hours: int
    min_hours: int
    max_hours: int


SERVICE_CATALOGUE: dict[str, ServiceDuration] = {
    "DJ": ServiceDuration(default_hours=5, min_hours=4, max_hours=6),
    "PHOTOGRAPHY": ServiceDuration(default_hours=4, min_hours=3, max_hours=8),
    "KARAOKE": ServiceDuration(default_hours=3, min_hours=2, max_hours=5),
}


@dataclass(frozen=True)
class EngineSettings:
    """
    Attributes:
        granularity_minutes: Slot grid step (15/30/60)
        business_hours: weekday (0 = Monday) -> (start_hour, end_hour);
            a weekday missing from the mapping is closed
        buffer_minutes: Default minimum gap around a booking
        setup_lead_minutes: Default equipment setup window before a booking
        multi_service_setup_extra_minutes: Extra lead for bookings with 3+ services
        max_alternatives: How many alternative slots the resolver returns
        search_window_days: Days on each side of the requested date to search
        cache_ttl_seconds: Availability cache entry lifetime
        min_event_minutes: Shortest bookable event, used for whole-day checks
        timezone: The single business timezone
    """

    granularity_minutes: int = 15
    business_hours: dict[int, tuple[int, int]] = field(
        default_factory=lambda: {weekday: (8, 23) for weekday in range(7)}
    )
    buffer_minutes: int = 30
    setup_lead_minutes: int = 60
    multi_service_setup_extra_minutes: int = 30
    max_alternatives: int = 3
    search_window_days: int = 3
    cache_ttl_seconds: float = 300.0
    min_event_minutes: int = 120
    timezone: str = "America/Chicago"

    def __post_init__(self):
        if self.granularity_minutes not in (15, 30, 60):
            raise ValueError(
                f"granularity_minutes must be 15, 30, or 60, got {self.granularity_minutes}"
            )
        for weekday, (start_hour, end_hour) in self.business_hours.items():
            if not 0 <= weekday <= 6:
                raise ValueError(f"Invalid weekday {weekday} in business_hours")
            if not 0 <= start_hour < end_hour <= 24:
                raise ValueError(
                    f"Invalid business hours {start_hour}-{end_hour} for weekday {weekday}"
                )
        if self.buffer_minutes < 0 or self.setup_lead_minutes < 0:
            raise ValueError("buffer_minutes and setup_lead_minutes must be non-negative")
        if self.max_alternatives < 0 or self.search_window_days < 0:
            raise ValueError("max_alternatives and search_window_days must be non-negative")
        ZoneInfo(self.timezone)

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def hours_for(self, weekday: int) -> tuple[int, int] | None:
        return self.business_hours.get(weekday)


def load_engine_settings() -> EngineSettings:
    hours = (config.BUSINESS_START_HOUR, config.BUSINESS_END_HOUR)
    return EngineSettings(
        granularity_minutes=config.SLOT_GRANULARITY_MINUTES,
        business_hours={weekday: hours for weekday in range(7)},
        buffer_minutes=config.BOOKING_BUFFER_MINUTES,
        setup_lead_minutes=config.BOOKING_SETUP_LEAD_MINUTES,
        multi_service_setup_extra_minutes=config.MULTI_SERVICE_SETUP_EXTRA_MINUTES,
        max_alternatives=config.MAX_ALTERNATIVES,
        search_window_days=config.ALTERNATIVE_SEARCH_WINDOW_DAYS,
        cache_ttl_seconds=config.AVAILABILITY_CACHE_TTL_SECONDS,
        min_event_minutes=config.MIN_EVENT_MINUTES,
        timezone=config.BUSINESS_TIMEZONE,
    )
