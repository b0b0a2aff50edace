from __future__ import annotations

import logging
import os
import threading
import time
from collections import Counter
from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable

from image_updater.applications import Application
from image_updater.metrics import ObserverHub
from image_updater.run_state import RunState
from image_updater.worker import AppUpdateResult

logger = logging.getLogger(__name__)

AUTO_CONCURRENCY_PER_CPU = 8
SKIP_PER_REPO_CAP = "per_repo_cap"
SKIP_CANCELLED = "cancelled"
SKIP_IN_FLIGHT = "in_flight"

UpdateFn = Callable[..., AppUpdateResult]


class DispatchError(ValueError):
    pass


@dataclass(slots=True)
class PassResult:
    applications_processed: int = 0
    images_considered: int = 0
    images_updated: int = 0
    skipped: int = 0
    errors: int = 0
    skip_reasons: Counter[str] = field(default_factory=Counter)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add(self, app_result: AppUpdateResult) -> None:
        with self._lock:
            self.applications_processed += 1
            self.images_considered += app_result.images_considered
            self.images_updated += app_result.images_updated
            self.skipped += app_result.images_skipped
            self.errors += app_result.errors

    def add_skip(self, reason: str, *, error: bool = False) -> None:
        with self._lock:
            self.skipped += 1
            self.skip_reasons[reason] += 1
            if error:
                self.errors += 1

    def as_counters(self) -> dict[str, int]:
        with self._lock:
            return {
                "applications_processed": self.applications_processed,
                "images_considered": self.images_considered,
                "images_updated": self.images_updated,
                "skipped": self.skipped,
                "errors": self.errors,
            }

    def skip_reason_counts(self) -> dict[str, int]:
        with self._lock:
            return dict(self.skip_reasons)


class WaitGroup:
    """Counts outstanding work items; ``wait`` returns once the count is zero."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._count = 0

    def begin(self) -> None:
        with self._cond:
            self._count += 1

    def done(self) -> None:
        with self._cond:
            if self._count <= 0:
                raise DispatchError("WaitGroup.done() called more times than begin()")
            self._count -= 1
            if self._count == 0:
                self._cond.notify_all()

    def wait(self, timeout: float | None = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._count == 0, timeout=timeout)

    @property
    def pending(self) -> int:
        with self._cond:
            return self._count


class InFlightSet:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._names: set[str] = set()

    def try_add(self, name: str) -> bool:
        with self._lock:
            if name in self._names:
                return False
            self._names.add(name)
            return True

    def discard(self, name: str) -> None:
        with self._lock:
            self._names.discard(name)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._names

    def __len__(self) -> int:
        with self._lock:
            return len(self._names)


def resolve_concurrency(max_concurrency: int, due_apps: int, cpu_count: int | None = None) -> int:
    """Explicit value wins; 0 means ``min(cpu_count * 8, due_apps)``, at least 1."""
    if max_concurrency < 0:
        raise DispatchError(f"max_concurrency must be >= 0, got {max_concurrency}")
    if max_concurrency > 0:
        return max_concurrency
    if cpu_count is None:
        cpu_count = os.cpu_count() or 1
    return max(1, min(cpu_count * AUTO_CONCURRENCY_PER_CPU, due_apps))


@dataclass(frozen=True, slots=True)
class DispatchSettings:
    concurrency: int = 1
    dry_run: bool = False
    per_repo_cap: int = 0

    def for_warm_up(self) -> DispatchSettings:
        return replace(self, concurrency=1, dry_run=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConcurrencyDispatcher:
    """Runs the update function for many applications on a bounded pool.

    A slot of the bounded semaphore is taken before each submission and
    released when the update function returns. ``wait`` blocks until every
    submitted worker returned; ``wait_settled`` additionally waits until
    every pending write-back future resolved and its result was recorded.
    """

    def __init__(
        self,
        update: UpdateFn,
        *,
        run_state: RunState,
        settings: DispatchSettings,
        in_flight: InFlightSet | None = None,
        observers: ObserverHub | None = None,
        cancel: threading.Event | None = None,
        acquire_poll_seconds: float = 0.1,
    ) -> None:
        if settings.concurrency < 1:
            raise DispatchError(f"concurrency must be >= 1, got {settings.concurrency}")
        if settings.per_repo_cap < 0:
            raise DispatchError(f"per_repo_cap must be >= 0, got {settings.per_repo_cap}")
        self._update = update
        self.run_state = run_state
        self.settings = settings
        self.in_flight = in_flight
        self._observers = observers or ObserverHub()
        self.cancel = cancel or threading.Event()
        self._acquire_poll_seconds = acquire_poll_seconds
        self._slots = threading.BoundedSemaphore(settings.concurrency)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.concurrency,
            thread_name_prefix="image-updater-worker",
        )
        self._workers = WaitGroup()
        self._settled = WaitGroup()

    def _acquire_slot(self) -> bool:
        while not self.cancel.is_set():
            if self._slots.acquire(timeout=self._acquire_poll_seconds):
                return True
        return False

    def dispatch(self, apps: Sequence[Application], result: PassResult) -> int:
        """Submit ``apps`` in order; returns the number of dispatched workers."""
        per_repo: Counter[str] = Counter()
        dispatched = 0
        for app in apps:
            cap = self.settings.per_repo_cap
            if cap > 0:
                repo = app.repository
                if per_repo[repo] >= cap:
                    logger.info("Skipping application=%s: repository %s reached per-repo cap %d", app.name, repo, cap)
                    result.add_skip(SKIP_PER_REPO_CAP)
                    self._observers.scheduler_skipped(app.name, SKIP_PER_REPO_CAP)
                    continue

            if self.in_flight is not None and not self.in_flight.try_add(app.name):
                logger.debug("Skipping application=%s: previous update still in flight", app.name)
                self._observers.scheduler_skipped(app.name, SKIP_IN_FLIGHT)
                continue

            self._workers.begin()
            self._settled.begin()
            if not self._acquire_slot():
                logger.warning("Dispatch of application=%s cancelled before a worker slot was free", app.name)
                result.add_skip(SKIP_CANCELLED, error=True)
                self._observers.scheduler_skipped(app.name, SKIP_CANCELLED)
                self._release_in_flight(app.name)
                self._settled.done()
                self._workers.done()
                continue

            try:
                self._executor.submit(self._run, app, result)
            except RuntimeError as e:
                self._slots.release()
                logger.error("Could not submit application=%s: %s", app.name, e)
                result.add_skip(SKIP_CANCELLED, error=True)
                self._release_in_flight(app.name)
                self._settled.done()
                self._workers.done()
                continue
            per_repo[app.repository] += 1
            dispatched += 1
        return dispatched

    def _run(self, app: Application, result: PassResult) -> None:
        started = time.monotonic()
        try:
            attempted_at = _utcnow()
            self.run_state.record_attempt(app.name, now=attempted_at)
            self._observers.app_attempted(app.name, attempted_at)
            try:
                app_result = self._update(app, dry_run=self.settings.dry_run)
            except Exception:
                logger.exception("Unexpected error while updating application=%s", app.name)
                app_result = AppUpdateResult(application=app.name, errors=1)
        finally:
            self._slots.release()

        try:
            if app_result.write_future is None:
                self._settle(app, app_result, result, started)
            else:
                app_result.write_future.add_done_callback(
                    lambda f: self._settle_write(app, app_result, f, result, started)
                )
        finally:
            self._workers.done()

    def _settle_write(
        self,
        app: Application,
        app_result: AppUpdateResult,
        future: Future,
        result: PassResult,
        started: float,
    ) -> None:
        error = future.exception()
        if error is not None:
            logger.error("Could not write back application=%s: %s", app.name, error)
            app_result = app_result.with_write_failure()
        self._settle(app, app_result, result, started)

    def _settle(self, app: Application, app_result: AppUpdateResult, result: PassResult, started: float) -> None:
        try:
            failed = app_result.errors > 0
            finished_at = _utcnow()
            self.run_state.record_result(app.name, failed=failed, now=finished_at)
            result.add(app_result)
            if not failed:
                self._observers.app_succeeded(app.name, finished_at)
            self._observers.app_update_duration(app.name, time.monotonic() - started)
        except Exception:
            logger.exception("Could not record result for application=%s", app.name)
        finally:
            self._release_in_flight(app.name)
            self._settled.done()

    def _release_in_flight(self, name: str) -> None:
        if self.in_flight is not None:
            self.in_flight.discard(name)

    def wait(self, timeout: float | None = None) -> bool:
        return self._workers.wait(timeout)

    def wait_settled(self, timeout: float | None = None) -> bool:
        return self._settled.wait(timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=True)
