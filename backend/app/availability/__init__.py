from app.availability.admission import AdmissionDecision, AdmissionGate, AdmissionMode, SqlAttemptStore
from app.availability.broadcaster import Subscription, UpdateBroadcaster
from app.availability.cache import AvailabilityCache, CacheKey
from app.availability.conflicts import (
    BufferViolation,
    ConflictPolicy,
    DirectOverlap,
    NoConflict,
    SetupConflict,
    classify,
)
from app.availability.engine import AvailabilityEngine, CancellationToken, SlotCheck
from app.availability.errors import (
    AvailabilityError,
    InvalidInput,
    InvalidRange,
    OperationCancelled,
    SlotTaken,
    StoreUnavailable,
)
from app.availability.resolver import Resolution, suggest_alternatives
from app.availability.settings import EngineSettings, load_engine_settings
from app.availability.slots import DateRange, TimeSlot, generate_slots
from app.availability.store import AvailabilityStore

__all__ = [
    "AdmissionDecision",
    "AdmissionGate",
    "AdmissionMode",
    "SqlAttemptStore",
    "Subscription",
    "UpdateBroadcaster",
    "AvailabilityCache",
    "CacheKey",
    "BufferViolation",
    "ConflictPolicy",
    "DirectOverlap",
    "NoConflict",
    "SetupConflict",
    "classify",
    "AvailabilityEngine",
    "CancellationToken",
    "SlotCheck",
    "AvailabilityError",
    "InvalidInput",
    "InvalidRange",
    "OperationCancelled",
    "SlotTaken",
    "StoreUnavailable",
    "Resolution",
    "suggest_alternatives",
    "EngineSettings",
    "load_engine_settings",
    "DateRange",
    "TimeSlot",
    "generate_slots",
    "AvailabilityStore",
]
