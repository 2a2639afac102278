"""Expiry of locks whose TTL has run out, and the loop that feeds it."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional, Union

from .lockdb import PRESENCE_TYPE, Lock

logger = logging.getLogger(__name__)

LOCKS_EXPIRED_COUNTER = "LocksExpired"
PRESENCE_EXPIRED_COUNTER = "PresenceExpired"
EXPIRATION_METRICS_INTERVAL = 60.0

Duration = Union[float, int, timedelta]


def _seconds(value: Duration) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class Timer:
    """A one-shot timer that starts running when it is created."""

    def __init__(self, seconds: Duration) -> None:
        self._deadline = time.monotonic() + _seconds(seconds)

    def wait(self, cancel_event: threading.Event) -> bool:
        """Block until the timer fires (True) or ``cancel_event`` is set (False)."""
        remaining = max(0.0, self._deadline - time.monotonic())
        return not cancel_event.wait(remaining)


class SystemClock:
    """Wall-clock source of timers and interruptible sleeps."""

    def new_timer(self, seconds: Duration) -> Timer:
        """Return a timer that fires after ``seconds``."""
        return Timer(seconds)

    def sleep(self, seconds: Duration, stop_event: threading.Event) -> bool:
        """Sleep for ``seconds``; return False if ``stop_event`` cut it short."""
        return not stop_event.wait(_seconds(seconds))


@dataclass
class _Check:
    cancel: threading.Event
    index: int


class LockPick:
    """Releases each registered lock once its TTL passes unless it was refreshed."""

    def __init__(self, lock_db: Any, clock: Any = None) -> None:
        self._lock_db = lock_db
        self._clock = clock if clock is not None else SystemClock()
        self._checks: dict[tuple[str, str], _Check] = {}
        self._mutex = threading.Lock()
        self._counter_mutex = threading.Lock()
        self._locks_expired = 0
        self._presences_expired = 0

    def expiration_counts(self) -> tuple[int, int]:
        """Return the numbers of expired locks and expired presences."""
        with self._counter_mutex:
            return self._locks_expired, self._presences_expired

    def register_ttl(self, lock: Lock) -> None:
        """Start watching ``lock``, replacing any check of an older index."""
        data = {
            "key": lock.resource.key,
            "modified-index": lock.modified_index,
            "type": lock.resource.type,
        }
        logger.debug("register-ttl.starting %s", data)
        check_key = (lock.resource.key, lock.modified_id)
        check = _Check(cancel=threading.Event(), index=lock.modified_index)

        with self._mutex:
            existing = self._checks.get(check_key)
            if existing is not None:
                if existing.index >= check.index:
                    logger.debug(
                        "found-expiration-check-for-index %s",
                        {**data, "index": existing.index},
                    )
                    return
                existing.cancel.set()
            self._checks[check_key] = check
            threading.Thread(
                target=self._check_expiration,
                args=(lock, check.cancel, data),
                daemon=True,
            ).start()
        logger.debug("register-ttl.completed %s", data)

    def _check_expiration(
        self, lock: Lock, cancel: threading.Event, data: dict[str, Any]
    ) -> None:
        timer = self._clock.new_timer(lock.ttl_in_seconds)
        if not timer.wait(cancel):
            logger.debug("cancelling-old-check %s", data)
            return

        check_key = (lock.resource.key, lock.modified_id)
        try:
            try:
                expired = self._lock_db.fetch_and_release(lock)
            except Exception:
                logger.exception("failed-compare-and-release %s", data)
                return
            if expired:
                logger.info("lock-expired %s", data)
                with self._counter_mutex:
                    if lock.resource.type == PRESENCE_TYPE:
                        self._presences_expired += 1
                    else:
                        self._locks_expired += 1
        finally:
            with self._mutex:
                current = self._checks.get(check_key)
                if current is not None and current.index == lock.modified_index:
                    del self._checks[check_key]


class Burglar:
    """Periodically hands every stored lock to a lock pick and reports expiries."""

    def __init__(
        self,
        lock_db: Any,
        lock_pick: Any,
        clock: Any,
        check_interval: Duration,
        metric_client: Any,
    ) -> None:
        self._lock_db = lock_db
        self._lock_pick = lock_pick
        self._clock = clock if clock is not None else SystemClock()
        self._check_interval = check_interval
        self._metric_client = metric_client

    def _register_all(self) -> None:
        try:
            locks = self._lock_db.fetch_all("")
        except Exception:
            logger.error("burglar.failed-fetching-locks", exc_info=True)
            return
        for lock in locks:
            self._lock_pick.register_ttl(lock)

    def _emit_metrics(self, stop_event: threading.Event) -> None:
        while self._clock.sleep(EXPIRATION_METRICS_INTERVAL, stop_event):
            locks_expired, presences_expired = self._lock_pick.expiration_counts()
            self._metric_client.send_metric(LOCKS_EXPIRED_COUNTER, int(locks_expired))
            self._metric_client.send_metric(PRESENCE_EXPIRED_COUNTER, int(presences_expired))

    def run(
        self, stop_event: threading.Event, ready_event: Optional[threading.Event] = None
    ) -> None:
        """Run until ``stop_event`` is set; ``ready_event`` is set once started."""
        logger.info("burglar.started")
        try:
            self._register_all()
            metrics = threading.Thread(
                target=self._emit_metrics, args=(stop_event,), daemon=True
            )
            metrics.start()
            if ready_event is not None:
                ready_event.set()
            while self._clock.sleep(self._check_interval, stop_event):
                self._register_all()
            logger.info("burglar.signalled")
            metrics.join()
        finally:
            logger.info("burglar.complete")