from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Protocol

logger = logging.getLogger(__name__)


class UpdaterObserver(Protocol):
    def app_attempted(self, app: str, at: datetime) -> None: ...

    def app_succeeded(self, app: str, at: datetime) -> None: ...

    def app_update_duration(self, app: str, seconds: float) -> None: ...

    def scheduler_skipped(self, app: str, reason: str) -> None: ...

    def pass_finished(self, *, duration_seconds: float, counters: Mapping[str, int], warm_up: bool) -> None: ...


class InMemoryMetrics:
    """Thread-safe counters and gauges kept in process memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.last_attempt: dict[str, datetime] = {}
        self.last_success: dict[str, datetime] = {}
        self.update_durations: dict[str, list[float]] = {}
        self.skip_reasons: Counter[str] = Counter()
        self.image_counters: Counter[str] = Counter()
        self.pass_durations: list[float] = []
        self.warm_up_passes = 0

    def app_attempted(self, app: str, at: datetime) -> None:
        with self._lock:
            self.last_attempt[app] = at

    def app_succeeded(self, app: str, at: datetime) -> None:
        with self._lock:
            self.last_success[app] = at

    def app_update_duration(self, app: str, seconds: float) -> None:
        with self._lock:
            self.update_durations.setdefault(app, []).append(seconds)

    def scheduler_skipped(self, app: str, reason: str) -> None:
        with self._lock:
            self.skip_reasons[reason] += 1

    def pass_finished(self, *, duration_seconds: float, counters: Mapping[str, int], warm_up: bool) -> None:
        with self._lock:
            if warm_up:
                self.warm_up_passes += 1
                return
            self.pass_durations.append(duration_seconds)
            self.image_counters.update(counters)


class ObserverHub:
    """Fans hook calls out to observers; a failing observer is logged and ignored."""

    def __init__(self, observers: Sequence[UpdaterObserver] = ()) -> None:
        self._observers = tuple(observers)

    def _notify(self, hook: str, *args: object, **kwargs: object) -> None:
        for observer in self._observers:
            try:
                getattr(observer, hook)(*args, **kwargs)
            except Exception as e:
                logger.warning("Observer %s.%s failed: %s", type(observer).__name__, hook, e)

    def app_attempted(self, app: str, at: datetime) -> None:
        self._notify("app_attempted", app, at)

    def app_succeeded(self, app: str, at: datetime) -> None:
        self._notify("app_succeeded", app, at)

    def app_update_duration(self, app: str, seconds: float) -> None:
        self._notify("app_update_duration", app, seconds)

    def scheduler_skipped(self, app: str, reason: str) -> None:
        self._notify("scheduler_skipped", app, reason)

    def pass_finished(self, *, duration_seconds: float, counters: Mapping[str, int], warm_up: bool) -> None:
        self._notify("pass_finished", duration_seconds=duration_seconds, counters=counters, warm_up=warm_up)
