"""
Booking admission gate: sliding-window attempt limits per (identifier, action).

Modes are resolved once from ENABLE_RATE_LIMIT:
  "true" -> ENFORCE   block once the window quota is used
  "log"  -> LOG_ONLY  never block, but report remaining=0 and log the overage
  other  -> DISABLED  allow without touching storage

Any storage failure fails open.
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

from sqlalchemy.orm import Session

from app.db.models import RateLimitAttempt


logger = logging.getLogger("bookingengine.availability.admission")


class AdmissionMode(enum.Enum):
    ENFORCE = "enforce"
    LOG_ONLY = "log"
    DISABLED = "disabled"

    @classmethod
    def resolve(cls, raw: str | None) -> "AdmissionMode":
        value = (raw or "").strip().lower()
        if value == "true":
            return cls.ENFORCE
        if value == "log":
            return cls.LOG_ONLY
        return cls.DISABLED


@dataclass(frozen=True)
class AdmissionLimit:
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: int | None = None
    limited: bool = False

    def to_dict(self) -> dict:
        payload = {"allowed": self.allowed, "remaining": self.remaining}
        if self.retry_after_seconds is not None:
            payload["retry_after_seconds"] = self.retry_after_seconds
        return payload


class AttemptStore(Protocol):
    def count_since(self, identifier: str, action: str, since: datetime) -> int: ...

    def oldest_since(self, identifier: str, action: str, since: datetime) -> datetime | None: ...

    def record(self, identifier: str, action: str, at: datetime) -> None: ...

    def clear(self, identifier: str, action: str) -> None: ...


class SqlAttemptStore:
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def count_since(self, identifier: str, action: str, since: datetime) -> int:
        db = self.session_factory()
        try:
            return (
                db.query(RateLimitAttempt)
                .filter(RateLimitAttempt.identifier == identifier)
                .filter(RateLimitAttempt.action == action)
                .filter(RateLimitAttempt.created_at >= since)
                .count()
            )
        finally:
            db.close()

    def oldest_since(self, identifier: str, action: str, since: datetime) -> datetime | None:
        db = self.session_factory()
        try:
            row = (
                db.query(RateLimitAttempt)
                .filter(RateLimitAttempt.identifier == identifier)
                .filter(RateLimitAttempt.action == action)
                .filter(RateLimitAttempt.created_at >= since)
                .order_by(RateLimitAttempt.created_at.asc())
                .first()
            )
            return _normalize_datetime(row.created_at) if row is not None else None
        finally:
            db.close()

    def record(self, identifier: str, action: str, at: datetime) -> None:
        db = self.session_factory()
        try:
            db.add(RateLimitAttempt(identifier=identifier, action=action, created_at=at))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def clear(self, identifier: str, action: str) -> None:
        db = self.session_factory()
        try:
            (
                db.query(RateLimitAttempt)
                .filter(RateLimitAttempt.identifier == identifier)
                .filter(RateLimitAttempt.action == action)
                .delete(synchronize_session=False)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class AdmissionGate:
    def __init__(
        self,
        mode: AdmissionMode,
        limits: dict[str, AdmissionLimit],
        store: AttemptStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        if mode is not AdmissionMode.DISABLED and store is None:
            raise ValueError("An attempt store is required unless the gate is disabled.")
        self.mode = mode
        self.limits = limits
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_config(
        cls,
        raw_mode: str,
        raw_limits: dict[str, dict[str, int]],
        store: AttemptStore | None,
    ) -> "AdmissionGate":
        limits = {
            action: AdmissionLimit(limit=int(item["limit"]), window_seconds=int(item["window_seconds"]))
            for action, item in raw_limits.items()
        }
        return cls(mode=AdmissionMode.resolve(raw_mode), limits=limits, store=store)

    def check(self, identifier: str, action: str) -> AdmissionDecision:
        limit = self._limit_for(action)
        if self.mode is AdmissionMode.DISABLED:
            return AdmissionDecision(allowed=True, remaining=max(0, limit.limit - 1))

        now = self.clock()
        window_start = now - timedelta(seconds=limit.window_seconds)
        try:
            attempts = self.store.count_since(identifier, action, window_start)
            if attempts < limit.limit:
                self.store.record(identifier, action, now)
                return AdmissionDecision(
                    allowed=True,
                    remaining=max(0, limit.limit - attempts - 1),
                )

            oldest = self.store.oldest_since(identifier, action, window_start)
        except Exception:
            logger.exception(
                "Admission check failed for action=%s; allowing request.",
                action,
            )
            return AdmissionDecision(allowed=True, remaining=max(0, limit.limit - 1))

        if oldest is not None:
            reset_in = (oldest + timedelta(seconds=limit.window_seconds) - now).total_seconds()
            retry_after = max(1, math.ceil(reset_in))
        else:
            retry_after = limit.window_seconds

        if self.mode is AdmissionMode.LOG_ONLY:
            logger.warning(
                "Admission limit exceeded (log-only) action=%s identifier=%s retry_after=%s",
                action,
                identifier,
                retry_after,
            )
            return AdmissionDecision(
                allowed=True,
                remaining=0,
                retry_after_seconds=retry_after,
                limited=True,
            )

        return AdmissionDecision(
            allowed=False,
            remaining=0,
            retry_after_seconds=retry_after,
            limited=True,
        )

    def clear(self, identifier: str, action: str) -> None:
        if self.mode is AdmissionMode.DISABLED:
            return
        try:
            self.store.clear(identifier, action)
        except Exception:
            logger.exception("Failed clearing admission attempts for action=%s", action)

    def _limit_for(self, action: str) -> AdmissionLimit:
        try:
            return self.limits[action]
        except KeyError as exc:
            raise ValueError(f"No admission limit configured for action {action!r}") from exc


def _normalize_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
