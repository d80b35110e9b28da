from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.availability.admission import (
    AdmissionGate,
    AdmissionLimit,
    AdmissionMode,
    SqlAttemptStore,
)
from app.db.base import Base


LOGIN_LIMITS = {"login": AdmissionLimit(limit=5, window_seconds=15 * 60)}
START = datetime(2024, 2, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now


class FakeAttemptStore:
    def __init__(self):
        self.attempts = []
        self.cleared = []

    def count_since(self, identifier, action, since):
        return len(self._matching(identifier, action, since))

    def oldest_since(self, identifier, action, since):
        matching = self._matching(identifier, action, since)
        return min(matching) if matching else None

    def record(self, identifier, action, at):
        self.attempts.append((identifier, action, at))

    def clear(self, identifier, action):
        self.cleared.append((identifier, action))
        self.attempts = [a for a in self.attempts if a[:2] != (identifier, action)]

    def _matching(self, identifier, action, since):
        return [at for ident, act, at in self.attempts if (ident, act) == (identifier, action) and at >= since]


class BrokenAttemptStore(FakeAttemptStore):
    def count_since(self, identifier, action, since):
        raise RuntimeError("database is down")

    def clear(self, identifier, action):
        raise RuntimeError("database is down")


def _gate(mode, store=None, clock=None):
    return AdmissionGate(
        mode=mode,
        limits=LOGIN_LIMITS,
        store=store if store is not None else FakeAttemptStore(),
        clock=clock or FakeClock(),
    )


def test_mode_is_resolved_from_flag_value():
    assert AdmissionMode.resolve("true") is AdmissionMode.ENFORCE
    assert AdmissionMode.resolve(" LOG ") is AdmissionMode.LOG_ONLY
    assert AdmissionMode.resolve("false") is AdmissionMode.DISABLED
    assert AdmissionMode.resolve(None) is AdmissionMode.DISABLED


def test_enforce_blocks_after_limit_with_retry_after():
    clock = FakeClock()
    gate = _gate(AdmissionMode.ENFORCE, clock=clock)

    remaining = []
    for _ in range(5):
        decision = gate.check("10.0.0.1", "login")
        assert decision.allowed is True
        remaining.append(decision.remaining)
        clock.now += timedelta(seconds=60)

    blocked = gate.check("10.0.0.1", "login")

    assert remaining == [4, 3, 2, 1, 0]
    assert blocked.allowed is False
    assert blocked.remaining == 0
    assert blocked.retry_after_seconds == 15 * 60 - 5 * 60


def test_log_only_allows_sixth_attempt_but_reports_zero_remaining(caplog):
    store = FakeAttemptStore()
    gate = _gate(AdmissionMode.LOG_ONLY, store=store)

    for _ in range(5):
        assert gate.check("10.0.0.1", "login").allowed is True

    sixth = gate.check("10.0.0.1", "login")

    assert sixth.allowed is True
    assert sixth.remaining == 0
    assert sixth.limited is True
    assert len(store.attempts) == 5
    assert "log-only" in caplog.text


def test_window_slides_past_old_attempts():
    clock = FakeClock()
    gate = _gate(AdmissionMode.ENFORCE, clock=clock)
    for _ in range(5):
        gate.check("10.0.0.1", "login")

    clock.now += timedelta(minutes=15, seconds=1)

    assert gate.check("10.0.0.1", "login").allowed is True


def test_identifiers_are_limited_independently():
    gate = _gate(AdmissionMode.ENFORCE)
    for _ in range(5):
        gate.check("10.0.0.1", "login")

    assert gate.check("10.0.0.1", "login").allowed is False
    assert gate.check("10.0.0.2", "login").allowed is True


def test_disabled_gate_never_touches_store():
    store = BrokenAttemptStore()
    gate = _gate(AdmissionMode.DISABLED, store=store)

    decision = gate.check("10.0.0.1", "login")

    assert decision.allowed is True
    assert decision.remaining == 4


def test_store_failure_fails_open(caplog):
    gate = _gate(AdmissionMode.ENFORCE, store=BrokenAttemptStore())

    decision = gate.check("10.0.0.1", "login")

    assert decision.allowed is True
    assert "allowing request" in caplog.text


def test_clear_resets_attempts_and_swallows_failures(caplog):
    store = FakeAttemptStore()
    gate = _gate(AdmissionMode.ENFORCE, store=store)
    for _ in range(5):
        gate.check("10.0.0.1", "login")

    gate.clear("10.0.0.1", "login")
    assert gate.check("10.0.0.1", "login").allowed is True

    _gate(AdmissionMode.ENFORCE, store=BrokenAttemptStore()).clear("10.0.0.1", "login")
    assert "Failed clearing" in caplog.text


def test_unknown_action_is_a_configuration_error():
    with pytest.raises(ValueError):
        _gate(AdmissionMode.ENFORCE).check("10.0.0.1", "checkout")


def test_from_config_builds_limits():
    gate = AdmissionGate.from_config(
        "log",
        {"login": {"limit": 5, "window_seconds": 900}},
        store=FakeAttemptStore(),
    )

    assert gate.mode is AdmissionMode.LOG_ONLY
    assert gate.limits["login"] == AdmissionLimit(limit=5, window_seconds=900)


def test_sql_attempt_store_counts_within_window():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    store = SqlAttemptStore(sessionmaker(bind=engine, expire_on_commit=False))

    store.record("10.0.0.1", "login", START - timedelta(minutes=20))
    store.record("10.0.0.1", "login", START - timedelta(minutes=5))
    store.record("10.0.0.1", "login", START - timedelta(minutes=1))
    store.record("10.0.0.1", "booking_create", START)

    since = START - timedelta(minutes=15)
    assert store.count_since("10.0.0.1", "login", since) == 2
    assert store.oldest_since("10.0.0.1", "login", since) == START - timedelta(minutes=5)

    store.clear("10.0.0.1", "login")
    assert store.count_since("10.0.0.1", "login", since) == 0
    assert store.count_since("10.0.0.1", "booking_create", since) == 1
