from __future__ import annotations

import itertools
import logging
import threading
from datetime import date
from typing import Any, Callable


logger = logging.getLogger("bookingengine.availability.broadcaster")

UpdateCallback = Callable[[dict[str, Any]], Any]


class Subscription:
    """Disposer for one registered callback. Calling it more than once is a no-op."""

    def __init__(self, broadcaster: "UpdateBroadcaster", target_date: date, token: int):
        self.date = target_date
        self._broadcaster = broadcaster
        self._token = token
        self._disposed = False
        self._lock = threading.Lock()

    @property
    def disposed(self) -> bool:
        return self._disposed

    def __call__(self) -> None:
        self.dispose()

    def dispose(self) -> None:
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
        self._broadcaster._remove(self.date, self._token)


class UpdateBroadcaster:
    """In-process registry of per-date update callbacks."""

    def __init__(self):
        self._subscribers: dict[date, dict[int, UpdateCallback]] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, target_date: date, callback: UpdateCallback) -> Subscription:
        with self._lock:
            token = next(self._tokens)
            self._subscribers.setdefault(target_date, {})[token] = callback
        return Subscription(self, target_date, token)

    def notify(self, target_date: date, payload: dict[str, Any]) -> int:
        """Invoke callbacks for target_date in registration order; returns how many succeeded."""
        with self._lock:
            callbacks = list(self._subscribers.get(target_date, {}).values())

        delivered = 0
        for callback in callbacks:
            try:
                callback(payload)
                delivered += 1
            except Exception:
                logger.exception("Availability update callback failed for date=%s", target_date)
        return delivered

    def subscriber_count(self, target_date: date) -> int:
        with self._lock:
            return len(self._subscribers.get(target_date, {}))

    def _remove(self, target_date: date, token: int) -> None:
        with self._lock:
            callbacks = self._subscribers.get(target_date)
            if not callbacks:
                return
            callbacks.pop(token, None)
            if not callbacks:
                del self._subscribers[target_date]
