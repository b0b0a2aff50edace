from __future__ import annotations

import functools
import logging
import subprocess
import threading
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
import yaml

from image_updater.applications import Application, ImageSpec, WriteBackConfig
from image_updater.audit_trail import read_jsonl
from image_updater.config import UpdaterConfig, UpdaterConfigError, WriteBatchSettings
from image_updater.dispatcher import DispatchSettings
from image_updater.git_client import clone_git_client
from image_updater.metrics import InMemoryMetrics, ObserverHub
from image_updater.run_state import RunState
from image_updater.update_cycle import ContinuousDriver, CycleDriver, create_driver, run_update_pass
from image_updater.worker import AppUpdateResult


class FakeResolver:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.lookups = 0

    def new_client(self, image: ImageSpec) -> Any:
        return object()

    def get_tags(self, image: ImageSpec, client: Any, constraint: str | None) -> Sequence[str]:
        with self.lock:
            self.lookups += 1
        return ["1.0", "1.1"]

    def get_newest_version_from_tags(self, image: ImageSpec, constraint: str | None, tags: Sequence[str]) -> str | None:
        return max(tags)


class FakeOrchestrator:
    def __init__(self, apps: Sequence[Application]) -> None:
        self.apps = list(apps)
        self.lock = threading.Lock()
        self.updated: list[str] = []
        self.selectors: list[str | None] = []

    def list_applications(self, label_selector: str | None) -> Sequence[Application]:
        self.selectors.append(label_selector)
        return self.apps

    def set_kustomize_image(self, app: Application, image: ImageSpec, tag: str) -> None:
        pass

    def set_helm_image(self, app: Application, image: ImageSpec, tag: str) -> None:
        pass

    def update_spec(self, app: Application) -> None:
        with self.lock:
            self.updated.append(app.name)


def _git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return completed.stdout


def _make_remote(tmp_path: Path) -> Path:
    seed = tmp_path / "seed"
    seed.mkdir()
    _git(seed, "init", "-b", "main")
    _git(seed, "config", "user.name", "Test")
    _git(seed, "config", "user.email", "test@example.com")
    (seed / "README.md").write_text("gitops\n", encoding="utf-8")
    _git(seed, "add", ".")
    _git(seed, "commit", "-m", "init")
    remote = tmp_path / "remote.git"
    _git(tmp_path, "clone", "--bare", str(seed), str(remote))
    return remote


def _api_apps(n: int) -> list[Application]:
    return [Application(name=f"app-{i}", images=(ImageSpec(f"registry/app-{i}", current_tag="1.0"),)) for i in range(n)]


def test_run_update_pass_logs_one_summary_line(caplog: pytest.LogCaptureFixture) -> None:
    def update(app: Application, *, dry_run: bool) -> AppUpdateResult:
        return AppUpdateResult(application=app.name, images_considered=2, images_updated=1, images_skipped=1)

    metrics = InMemoryMetrics()
    with caplog.at_level(logging.INFO, logger="image_updater.update_cycle"):
        result = run_update_pass(
            _api_apps(3),
            update=update,
            run_state=RunState(),
            settings=DispatchSettings(concurrency=2),
            observers=ObserverHub([metrics]),
        )

    assert result.as_counters() == {
        "applications_processed": 3,
        "images_considered": 6,
        "images_updated": 3,
        "skipped": 3,
        "errors": 0,
    }
    summaries = [r.getMessage() for r in caplog.records if r.getMessage().startswith("Processing results")]
    assert summaries == [
        "Processing results: applications=3 images_considered=6 images_skipped=3 images_updated=3 errors=0"
    ]
    assert len(metrics.pass_durations) == 1


def test_cycle_driver_writes_back_through_git(tmp_path: Path) -> None:
    remote = _make_remote(tmp_path)
    write_back = WriteBackConfig(method="git", repo_url=str(remote), branch="main")
    apps = [
        Application(
            name=name,
            path=f"apps/{name}",
            images=(ImageSpec(f"registry/{name}", current_tag="1.0"),),
            write_back=write_back,
        )
        for name in ("api", "web")
    ]
    metrics = InMemoryMetrics()
    config = UpdaterConfig(check_interval=timedelta(0), max_concurrency=0, cache_dir=tmp_path / "cache", pass_log=True)
    driver = CycleDriver(
        config,
        resolver=FakeResolver(),
        orchestrator=FakeOrchestrator(apps),
        git_factory=functools.partial(clone_git_client, temp_dir=tmp_path / "checkouts"),
        observers=[metrics],
        cpu_count=2,
    )

    driver.run()

    for name in ("api", "web"):
        override = yaml.safe_load(_git(remote, "show", f"main:apps/{name}/.argocd-source-{name}.yaml"))
        assert override == {"kustomize": {"images": [f"registry/{name}:1.1"]}}
    records = read_jsonl(tmp_path / "cache" / "passes.jsonl")
    assert len(records) == 1
    assert records[0]["counters"]["images_updated"] == 2
    assert records[0]["counters"]["errors"] == 0
    assert set(metrics.last_success) == {"api", "web"}


def test_warm_up_pass_is_dry_and_counted_separately(tmp_path: Path) -> None:
    orchestrator = FakeOrchestrator(_api_apps(3))
    resolver = FakeResolver()
    metrics = InMemoryMetrics()
    config = UpdaterConfig(
        check_interval=timedelta(0),
        warm_up=True,
        max_concurrency=4,
        cache_dir=tmp_path / "cache",
        pass_log=True,
    )
    driver = CycleDriver(config, resolver=resolver, orchestrator=orchestrator, observers=[metrics])

    driver.run()

    assert sorted(orchestrator.updated) == ["app-0", "app-1", "app-2"]
    assert resolver.lookups == 6
    assert metrics.warm_up_passes == 1
    assert len(metrics.pass_durations) == 1
    records = read_jsonl(tmp_path / "cache" / "passes.jsonl")
    assert len(records) == 1
    assert records[0]["counters"]["applications_processed"] == 3


def test_stopped_cycle_driver_runs_no_pass() -> None:
    orchestrator = FakeOrchestrator(_api_apps(1))
    stop = threading.Event()
    stop.set()
    driver = CycleDriver(UpdaterConfig(), resolver=FakeResolver(), orchestrator=orchestrator, stop_event=stop)

    driver.run()

    assert orchestrator.selectors == []


def test_unsupported_api_kind_fails_before_dispatch() -> None:
    with pytest.raises(UpdaterConfigError, match="not supported"):
        CycleDriver(UpdaterConfig(applications_api="argocd"), resolver=FakeResolver(), orchestrator=FakeOrchestrator([]))
    with pytest.raises(UpdaterConfigError, match="needs an orchestrator client"):
        CycleDriver(UpdaterConfig(), resolver=FakeResolver())


def test_negative_concurrency_is_fatal() -> None:
    with pytest.raises(UpdaterConfigError, match="max_concurrency"):
        CycleDriver(UpdaterConfig(max_concurrency=-1), resolver=FakeResolver(), orchestrator=FakeOrchestrator([]))


def test_continuous_mode_requires_flush_timer() -> None:
    config = UpdaterConfig(mode="continuous", write_batch=WriteBatchSettings(flush_every=timedelta(0)))
    with pytest.raises(UpdaterConfigError, match="flush_every"):
        ContinuousDriver(config, resolver=FakeResolver(), orchestrator=FakeOrchestrator([]))


def test_continuous_tick_dispatches_only_due_apps() -> None:
    orchestrator = FakeOrchestrator(_api_apps(2))
    config = UpdaterConfig(mode="continuous", check_interval=timedelta(hours=1), max_concurrency=0)
    driver = create_driver(config, resolver=FakeResolver(), orchestrator=orchestrator, cpu_count=1)
    assert isinstance(driver, ContinuousDriver)
    try:
        assert driver.tick() == 2
        driver.drain()
        assert driver.tick() == 0
        later = datetime.now(timezone.utc) + timedelta(hours=2)
        assert driver.tick(now=later) == 2
        driver.drain()
    finally:
        driver.writers.shutdown()
        driver.dispatcher.close()

    assert driver.totals.applications_processed == 4
    assert sorted(orchestrator.updated) == ["app-0", "app-0", "app-1", "app-1"]
    assert driver.state.run_state.stats("app-0").fail_count == 0
    assert len(driver.state.in_flight) == 0


def test_continuous_driver_with_zero_interval_runs_one_tick() -> None:
    orchestrator = FakeOrchestrator(_api_apps(3))
    config = UpdaterConfig(mode="continuous", check_interval=timedelta(0), max_concurrency=2)
    driver = ContinuousDriver(config, resolver=FakeResolver(), orchestrator=orchestrator)

    driver.run()

    assert driver.totals.applications_processed == 3
    assert sorted(orchestrator.updated) == ["app-0", "app-1", "app-2"]
