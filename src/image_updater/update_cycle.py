from __future__ import annotations

import functools
import logging
import os
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from image_updater.applications import Application, filter_applications_for_update
from image_updater.audit_trail import PassLog, format_pass_record
from image_updater.collaborators import OrchestratorClient, RegistryResolver
from image_updater.config import SUPPORTED_API_KINDS, UpdaterConfig, UpdaterConfigError, validate_config
from image_updater.dispatcher import (
    AUTO_CONCURRENCY_PER_CPU,
    ConcurrencyDispatcher,
    DispatchError,
    DispatchSettings,
    InFlightSet,
    PassResult,
    UpdateFn,
    resolve_concurrency,
)
from image_updater.git_client import GitClientFactory, clone_git_client
from image_updater.inventory import InventoryClient
from image_updater.metrics import ObserverHub, UpdaterObserver
from image_updater.paths import UpdaterPaths, default_cache_dir
from image_updater.repo_writer import CommitSettings, RepoWriterRegistry
from image_updater.run_state import RunState
from image_updater.scheduling import is_due, order_applications
from image_updater.worker import update_application

logger = logging.getLogger(__name__)

SUMMARY_FORMAT = (
    "Processing results: applications=%d images_considered=%d images_skipped=%d images_updated=%d errors=%d"
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class SchedulerState:
    """Process-lifetime scheduling state owned by a driver."""

    run_state: RunState = field(default_factory=RunState)
    in_flight: InFlightSet = field(default_factory=InFlightSet)


def log_pass_summary(result: PassResult) -> None:
    counters = result.as_counters()
    logger.info(
        SUMMARY_FORMAT,
        counters["applications_processed"],
        counters["images_considered"],
        counters["skipped"],
        counters["images_updated"],
        counters["errors"],
    )


def run_update_pass(
    apps: Sequence[Application],
    *,
    update: UpdateFn,
    run_state: RunState,
    settings: DispatchSettings,
    writers: RepoWriterRegistry | None = None,
    schedule: str = "default",
    cooldown: timedelta = timedelta(0),
    observers: ObserverHub | None = None,
    cancel: threading.Event | None = None,
    warm_up: bool = False,
    now: datetime | None = None,
) -> PassResult:
    """Order, dispatch and settle one full pass over ``apps``."""
    if now is None:
        now = _utcnow()
    observers = observers or ObserverHub()
    by_name = {app.name: app for app in apps}
    order = order_applications(list(by_name), run_state.snapshot(), policy=schedule, cooldown=cooldown, now=now)

    started = time.monotonic()
    result = PassResult()
    dispatcher = ConcurrencyDispatcher(
        update,
        run_state=run_state,
        settings=settings,
        observers=observers,
        cancel=cancel,
    )
    try:
        dispatcher.dispatch([by_name[name] for name in order], result)
        dispatcher.wait()
        if writers is not None:
            writers.flush_all()
        dispatcher.wait_settled()
    finally:
        dispatcher.close()

    if warm_up:
        logger.info("Warm-up pass finished for %d application(s)", len(order))
    else:
        log_pass_summary(result)
    observers.pass_finished(
        duration_seconds=time.monotonic() - started,
        counters=result.as_counters(),
        warm_up=warm_up,
    )
    return result


class UpdateDriver:
    """Shared wiring for the cycle and continuous drivers."""

    mode_name = "cycle"

    def __init__(
        self,
        config: UpdaterConfig,
        *,
        resolver: RegistryResolver,
        orchestrator: OrchestratorClient | None = None,
        git_factory: GitClientFactory | None = None,
        observers: Sequence[UpdaterObserver] = (),
        stop_event: threading.Event | None = None,
        cpu_count: int | None = None,
    ) -> None:
        if config.applications_api not in SUPPORTED_API_KINDS:
            raise UpdaterConfigError(f"application api kind {config.applications_api!r} is not supported")
        validate_config(config)
        if orchestrator is None:
            if config.applications_api != "inventory" or config.inventory_path is None:
                raise UpdaterConfigError(
                    f"applications_api {config.applications_api!r} needs an orchestrator client"
                )
            orchestrator = InventoryClient(config.inventory_path)

        self.config = config
        self.resolver = resolver
        self.orchestrator = orchestrator
        self.observers = ObserverHub(observers)
        self.stop_event = stop_event or threading.Event()
        self.cpu_count = cpu_count
        self.state = SchedulerState()

        paths = UpdaterPaths(cache_dir=config.cache_dir or default_cache_dir())
        if git_factory is None:
            git_factory = functools.partial(clone_git_client, temp_dir=paths.checkouts_dir)
        self.writers = RepoWriterRegistry(
            self.state.run_state.repository_lock,
            git_factory=git_factory,
            commit=CommitSettings(
                user=config.git.user,
                email=config.git.email,
                signing_key=config.git.signing_key,
                signing_method=config.git.signing_method,
                sign_off=config.git.sign_off,
                message_template=config.git.message_template,
            ),
            max_batch=config.write_batch.max_batch,
            flush_every=config.write_batch.flush_every.total_seconds(),
        )
        self.pass_log = PassLog(paths.pass_log_path) if config.pass_log else None
        self.update: UpdateFn = functools.partial(
            update_application,
            resolver=resolver,
            orchestrator=orchestrator,
            writers=self.writers,
        )

    def stop(self) -> None:
        self.stop_event.set()

    def load_applications(self) -> list[Application] | None:
        try:
            apps = self.orchestrator.list_applications(self.config.app_label)
        except Exception:
            logger.exception("Could not list applications")
            return None
        eligible = filter_applications_for_update(apps, self.config.app_name_patterns)
        logger.debug("Considering %d of %d application(s) for update", len(eligible), len(apps))
        return eligible

    def _record_pass(self, result: PassResult, *, started_at: datetime) -> None:
        if self.pass_log is None:
            return
        record = format_pass_record(
            mode=self.mode_name,
            started_at=started_at,
            finished_at=_utcnow(),
            counters=result.as_counters(),
            skip_reasons=result.skip_reason_counts(),
        )
        try:
            self.pass_log.record(record)
        except OSError as e:
            logger.warning("Could not append pass record to %s: %s", self.pass_log.path, e)

    def warm_up(self) -> PassResult | None:
        """Dry-run every eligible application once, serially, on a throwaway state."""
        apps = self.load_applications()
        if apps is None:
            return None
        settings = DispatchSettings(concurrency=1, dry_run=self.config.dry_run).for_warm_up()
        return run_update_pass(
            apps,
            update=self.update,
            run_state=RunState(),
            settings=settings,
            observers=self.observers,
            cancel=self.stop_event,
            warm_up=True,
        )

    def run(self) -> None:
        raise NotImplementedError


class CycleDriver(UpdateDriver):
    """Runs one full pass every ``check_interval``; passes never overlap."""

    mode_name = "cycle"

    def run_once(self) -> PassResult | None:
        apps = self.load_applications()
        if apps is None:
            return None
        run_state = RunState()
        self.writers.bind(run_state.repository_lock)
        try:
            concurrency = resolve_concurrency(self.config.max_concurrency, len(apps), self.cpu_count)
        except DispatchError as e:
            raise UpdaterConfigError(str(e)) from e
        settings = DispatchSettings(
            concurrency=concurrency,
            dry_run=self.config.dry_run,
            per_repo_cap=self.config.per_repo_cap,
        )
        logger.info("Starting image update cycle, considering %d application(s), concurrency=%d", len(apps), concurrency)
        started_at = _utcnow()
        result = run_update_pass(
            apps,
            update=self.update,
            run_state=run_state,
            settings=settings,
            writers=self.writers,
            schedule=self.config.schedule,
            cooldown=self.config.cooldown,
            observers=self.observers,
            cancel=self.stop_event,
            now=started_at,
        )
        self._record_pass(result, started_at=started_at)
        return result

    def run(self) -> None:
        interval = self.config.check_interval.total_seconds()
        try:
            if self.config.warm_up:
                self.warm_up()
            while not self.stop_event.is_set():
                self.run_once()
                if interval == 0:
                    break
                self.stop_event.wait(interval)
        finally:
            self.writers.shutdown()


class ContinuousDriver(UpdateDriver):
    """Dispatches every due application each tick without waiting for earlier work."""

    mode_name = "continuous"

    def __init__(self, config: UpdaterConfig, **kwargs: Any) -> None:
        if config.write_batch.flush_every <= timedelta(0):
            raise UpdaterConfigError("continuous mode requires write_batch.flush_every > 0")
        super().__init__(config, **kwargs)
        try:
            concurrency = resolve_concurrency(
                config.max_concurrency,
                self._auto_ceiling(),
                self.cpu_count,
            )
        except DispatchError as e:
            raise UpdaterConfigError(str(e)) from e
        self.totals = PassResult()
        self.dispatcher = ConcurrencyDispatcher(
            self.update,
            run_state=self.state.run_state,
            settings=DispatchSettings(
                concurrency=concurrency,
                dry_run=config.dry_run,
                per_repo_cap=config.per_repo_cap,
            ),
            in_flight=self.state.in_flight,
            observers=self.observers,
            cancel=self.stop_event,
        )

    def _auto_ceiling(self) -> int:
        return (self.cpu_count or os.cpu_count() or 1) * AUTO_CONCURRENCY_PER_CPU

    def due_applications(self, apps: Sequence[Application], *, now: datetime) -> list[Application]:
        snapshot = self.state.run_state.snapshot()
        interval = self.config.check_interval
        due = [a for a in apps if is_due(snapshot.get(a.name), now=now, check_interval=interval)]
        by_name = {a.name: a for a in due}
        order = order_applications(
            list(by_name),
            snapshot,
            policy=self.config.schedule,
            cooldown=self.config.cooldown,
            now=now,
        )
        return [by_name[name] for name in order]

    def tick(self, *, now: datetime | None = None) -> int:
        apps = self.load_applications()
        if apps is None:
            return 0
        due = self.due_applications(apps, now=now or _utcnow())
        if not due:
            return 0
        dispatched = self.dispatcher.dispatch(due, self.totals)
        logger.debug("Dispatched %d of %d due application(s)", dispatched, len(due))
        return dispatched

    def drain(self) -> None:
        self.dispatcher.wait()
        self.writers.flush_all()
        self.dispatcher.wait_settled()

    def run(self) -> None:
        tick = self.config.continuous_tick.total_seconds()
        started_at = _utcnow()
        try:
            if self.config.warm_up:
                self.warm_up()
            while not self.stop_event.is_set():
                self.tick()
                if self.config.check_interval == timedelta(0):
                    break
                self.stop_event.wait(tick)
        finally:
            self.drain()
            self.writers.shutdown()
            self.dispatcher.close()
            log_pass_summary(self.totals)
            self._record_pass(self.totals, started_at=started_at)


def create_driver(config: UpdaterConfig, **kwargs: Any) -> UpdateDriver:
    if config.mode == "continuous":
        return ContinuousDriver(config, **kwargs)
    return CycleDriver(config, **kwargs)
