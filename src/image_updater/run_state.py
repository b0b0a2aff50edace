from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class RunStats:
    last_attempt: datetime | None = None
    last_success: datetime | None = None
    fail_count: int = 0


class RunState:
    """Attempt/success history per application plus per-repository write locks.

    The stats map and the lock map are guarded by two independent locks, so a
    worker waiting on a repository never blocks stat updates for other apps.
    """

    def __init__(self) -> None:
        self._stats_lock = threading.Lock()
        self._stats: dict[str, RunStats] = {}
        self._repo_locks_guard = threading.Lock()
        self._repo_locks: dict[str, threading.Lock] = {}

    def record_attempt(self, app: str, *, now: datetime | None = None) -> None:
        if now is None:
            now = _utcnow()
        with self._stats_lock:
            current = self._stats.get(app, RunStats())
            self._stats[app] = replace(current, last_attempt=now)

    def record_result(self, app: str, *, failed: bool, now: datetime | None = None) -> None:
        if now is None:
            now = _utcnow()
        with self._stats_lock:
            current = self._stats.get(app, RunStats())
            if failed:
                self._stats[app] = replace(current, fail_count=current.fail_count + 1)
                return
            last_success = current.last_success
            if last_success is None or now > last_success:
                last_success = now
            self._stats[app] = replace(current, last_success=last_success, fail_count=0)

    def stats(self, app: str) -> RunStats:
        with self._stats_lock:
            return self._stats.get(app, RunStats())

    def snapshot(self) -> dict[str, RunStats]:
        # RunStats is frozen, so a shallow copy of the map is a point-in-time copy.
        with self._stats_lock:
            return dict(self._stats)

    def repository_lock(self, repo_url: str) -> threading.Lock:
        with self._repo_locks_guard:
            lock = self._repo_locks.get(repo_url)
            if lock is None:
                lock = threading.Lock()
                self._repo_locks[repo_url] = lock
            return lock

    def known_repositories(self) -> tuple[str, ...]:
        with self._repo_locks_guard:
            return tuple(sorted(self._repo_locks))
