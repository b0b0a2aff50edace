from __future__ import annotations

import logging
import os
import queue
import tempfile
import threading
import time
from collections.abc import Sequence
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Literal

from image_updater.applications import ChangeEntry, WriteBackConfig
from image_updater.git_client import (
    CommitOptions,
    GitClient,
    GitClientFactory,
    GitError,
    clone_git_client,
)
from image_updater.manifests import ManifestApplier

logger = logging.getLogger(__name__)

DEFAULT_MAX_BATCH = 10
DEFAULT_FLUSH_EVERY_SECONDS = 2.0

LockProvider = Callable[[str], threading.Lock]


class WriteBackError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class CommitSettings:
    user: str = "image-updater"
    email: str = "noreply@image-updater.local"
    signing_key: str | None = None
    signing_method: str | None = None
    sign_off: bool = False
    message_template: str | None = None


@dataclass(frozen=True, slots=True)
class WriteOutcome:
    application: str
    branch: str
    committed: bool


@dataclass(frozen=True, slots=True)
class WriteIntent:
    application: str
    write_back: WriteBackConfig
    changes: tuple[ChangeEntry, ...]
    applier: ManifestApplier
    result: Future = field(default_factory=Future, compare=False, repr=False)


def render_commit_message(
    app_name: str,
    changes: Sequence[ChangeEntry],
    template: str | None = None,
) -> str:
    change_lines = "".join(
        f"updates image {c.image.name} tag '{c.old_tag or ''}' to '{c.new_tag}'\n" for c in changes
    )
    if template:
        try:
            return template.format(app_name=app_name, changes=change_lines)
        except (KeyError, IndexError, ValueError) as e:
            logger.error("could not render commit message template for application=%s: %s", app_name, e)
            return f"build: update of application {app_name}"
    return f"build: automatic update of {app_name}\n\n{change_lines}"


def _batch_commit_message(intents: Sequence[WriteIntent], template: str | None) -> str:
    messages = [render_commit_message(i.application, i.changes, template) for i in intents]
    if len(messages) == 1:
        return messages[0]
    apps = ", ".join(i.application for i in intents)
    header = f"build: automatic update of {len(intents)} applications ({apps})"
    return header + "\n\n" + "\n".join(m.rstrip("\n") + "\n" for m in messages)


def group_by_branch(intents: Sequence[WriteIntent]) -> list[tuple[tuple[str, str], list[WriteIntent]]]:
    """Group intents by (checkout branch, write branch) in first-seen order."""
    groups: dict[tuple[str, str], list[WriteIntent]] = {}
    for intent in intents:
        groups.setdefault(intent.write_back.branch_key, []).append(intent)
    return list(groups.items())


def _fail(intents: Sequence[WriteIntent], message: str) -> None:
    for intent in intents:
        if not intent.result.done():
            intent.result.set_exception(WriteBackError(message))


def _prepare_checkout(client: GitClient, *, branch: str, write_branch: str) -> tuple[str, str]:
    client.init()
    checkout_branch = branch
    if checkout_branch in ("", "HEAD"):
        checkout_branch = client.sym_ref_to_branch(checkout_branch)
        logger.info("resolved remote default branch to %r and using that for operations", checkout_branch)

    push_branch = write_branch or checkout_branch
    if push_branch != checkout_branch:
        try:
            client.fetch(push_branch)
        except GitError:
            client.fetch(checkout_branch)
            logger.debug("Creating branch %r and using that for push operations", push_branch)
            client.branch(checkout_branch, push_branch)
    else:
        client.fetch(checkout_branch)
    client.checkout(push_branch)
    return checkout_branch, push_branch


def _commit_and_push(
    client: GitClient,
    intents: Sequence[WriteIntent],
    paths: Sequence[str],
    *,
    push_branch: str,
    force: bool,
    commit: CommitSettings,
) -> None:
    if commit.user and commit.email:
        client.config(commit.user, commit.email)

    fd, message_path = tempfile.mkstemp(prefix="image-updater-commit-msg")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(_batch_commit_message(intents, commit.message_template))
        opts = CommitOptions(
            message_path=Path(message_path),
            signing_key=commit.signing_key,
            signing_method=commit.signing_method if commit.signing_key else None,
            sign_off=commit.sign_off,
        )
        client.commit(paths, opts)
        client.push("origin", push_branch, force)
    finally:
        try:
            os.unlink(message_path)
        except OSError:
            pass


def _write_branch_group(
    repo_url: str,
    key: tuple[str, str],
    group: Sequence[WriteIntent],
    *,
    git_factory: GitClientFactory,
    commit: CommitSettings,
) -> None:
    branch, write_branch = key
    label = f"repo={repo_url} branch={branch or 'HEAD'}"
    try:
        client = git_factory(repo_url, group[0].write_back.credentials)
    except GitError as e:
        logger.error("Could not create git client for %s: %s", label, e)
        _fail(group, f"could not create git client for {repo_url}: {e}")
        return

    try:
        try:
            checkout_branch, push_branch = _prepare_checkout(client, branch=branch, write_branch=write_branch)
        except GitError as e:
            logger.error("Could not check out %s: %s", label, e)
            _fail(group, f"could not check out {branch or 'HEAD'} of {repo_url}: {e}")
            return

        applied: list[tuple[WriteIntent, bool]] = []
        changed_paths: list[str] = []
        for intent in group:
            try:
                changed = intent.applier.apply(client.root)
                if changed:
                    path = str(intent.applier.target_path(client.root).relative_to(client.root))
                    client.add(path)
                    if path not in changed_paths:
                        changed_paths.append(path)
            except Exception as e:
                logger.error("Could not apply changes for application=%s %s: %s", intent.application, label, e)
                _fail([intent], f"could not apply changes for {intent.application}: {e}")
                continue
            applied.append((intent, changed))

        changed_intents = [intent for intent, changed in applied if changed]
        if changed_intents:
            try:
                _commit_and_push(
                    client,
                    changed_intents,
                    changed_paths,
                    push_branch=push_branch,
                    force=push_branch != checkout_branch,
                    commit=commit,
                )
            except GitError as e:
                logger.error("Could not commit/push %s: %s", label, e)
                _fail(changed_intents, f"could not write back to {repo_url}@{push_branch}: {e}")
                changed_intents = []
            else:
                logger.info(
                    "Committed %d application update(s) to repo=%s branch=%s",
                    len(changed_intents),
                    repo_url,
                    push_branch,
                )
        else:
            logger.debug("No manifest changes for %s, skipping commit", label)

        for intent, changed in applied:
            if intent.result.done():
                continue
            intent.result.set_result(
                WriteOutcome(application=intent.application, branch=push_branch, committed=changed)
            )
    finally:
        client.close()


def write_batch(
    repo_url: str,
    intents: Sequence[WriteIntent],
    *,
    lock: threading.Lock,
    git_factory: GitClientFactory = clone_git_client,
    commit: CommitSettings = CommitSettings(),
) -> None:
    """Persist a batch of intents for one repository.

    The repository lock is held for the whole batch. Each branch group gets
    its own checkout and at most one commit and one push.
    """
    if not intents:
        return
    with lock:
        for key, group in group_by_branch(intents):
            _write_branch_group(repo_url, key, group, git_factory=git_factory, commit=commit)


@dataclass(frozen=True, slots=True)
class _Control:
    kind: Literal["flush", "stop"]
    done: threading.Event


class RepoWriteCoordinator:
    """Serializes and batches all git writes for one repository.

    A batch is flushed when ``max_batch`` intents are pending, when
    ``flush_every`` seconds passed since the first pending intent (0 disables
    the timer), on ``flush()`` and on ``shutdown()``.
    """

    def __init__(
        self,
        repo_url: str,
        *,
        lock_for: LockProvider,
        git_factory: GitClientFactory = clone_git_client,
        commit: CommitSettings = CommitSettings(),
        max_batch: int = DEFAULT_MAX_BATCH,
        flush_every: float = DEFAULT_FLUSH_EVERY_SECONDS,
    ) -> None:
        if max_batch < 1:
            raise WriteBackError(f"max_batch must be >= 1, got {max_batch}")
        if flush_every < 0:
            raise WriteBackError(f"flush_every must be >= 0, got {flush_every}")
        self.repo_url = repo_url
        self.max_batch = max_batch
        self.flush_every = flush_every
        self._lock_for = lock_for
        self._git_factory = git_factory
        self._commit = commit
        self._queue: queue.Queue[WriteIntent | _Control] = queue.Queue()
        self._closed = False
        self._closed_lock = threading.Lock()
        self._thread = threading.Thread(target=self._run, name=f"repo-writer:{repo_url}", daemon=True)
        self._thread.start()

    def submit(self, intent: WriteIntent) -> Future:
        with self._closed_lock:
            if self._closed:
                raise WriteBackError(f"write coordinator for {self.repo_url} is shut down")
            self._queue.put(intent)
        return intent.result

    def flush(self, timeout: float | None = None) -> bool:
        done = threading.Event()
        with self._closed_lock:
            if self._closed:
                return True
            self._queue.put(_Control(kind="flush", done=done))
        return done.wait(timeout)

    def shutdown(self, *, wait: bool = True, timeout: float | None = None) -> None:
        with self._closed_lock:
            if not self._closed:
                self._closed = True
                self._queue.put(_Control(kind="stop", done=threading.Event()))
        if wait:
            self._thread.join(timeout)

    def _flush(self, pending: list[WriteIntent]) -> None:
        if not pending:
            return
        try:
            write_batch(
                self.repo_url,
                pending,
                lock=self._lock_for(self.repo_url),
                git_factory=self._git_factory,
                commit=self._commit,
            )
        except Exception as e:
            logger.exception("Unexpected failure flushing %d intent(s) for repo=%s", len(pending), self.repo_url)
            _fail(pending, f"unexpected write-back failure for {self.repo_url}: {e}")

    def _run(self) -> None:
        pending: list[WriteIntent] = []
        deadline: float | None = None
        while True:
            timeout = None
            if pending and deadline is not None:
                timeout = max(deadline - time.monotonic(), 0.0)
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                self._flush(pending)
                pending, deadline = [], None
                continue

            if isinstance(item, _Control):
                self._flush(pending)
                pending, deadline = [], None
                item.done.set()
                if item.kind == "stop":
                    return
                continue

            pending.append(item)
            if len(pending) == 1 and self.flush_every > 0:
                deadline = time.monotonic() + self.flush_every
            if len(pending) >= self.max_batch:
                self._flush(pending)
                pending, deadline = [], None


class RepoWriterRegistry:
    """Creates one long-lived coordinator per repository on first write."""

    def __init__(
        self,
        lock_for: LockProvider,
        *,
        git_factory: GitClientFactory = clone_git_client,
        commit: CommitSettings = CommitSettings(),
        max_batch: int = DEFAULT_MAX_BATCH,
        flush_every: float = DEFAULT_FLUSH_EVERY_SECONDS,
    ) -> None:
        self._lock_for = lock_for
        self._git_factory = git_factory
        self._commit = commit
        self._max_batch = max_batch
        self._flush_every = flush_every
        self._guard = threading.Lock()
        self._coordinators: dict[str, RepoWriteCoordinator] = {}

    def bind(self, lock_for: LockProvider) -> None:
        with self._guard:
            self._lock_for = lock_for

    def _current_lock(self, repo_url: str) -> threading.Lock:
        with self._guard:
            lock_for = self._lock_for
        return lock_for(repo_url)

    def coordinator(self, repo_url: str) -> RepoWriteCoordinator:
        with self._guard:
            coordinator = self._coordinators.get(repo_url)
            if coordinator is None:
                coordinator = RepoWriteCoordinator(
                    repo_url,
                    lock_for=self._current_lock,
                    git_factory=self._git_factory,
                    commit=self._commit,
                    max_batch=self._max_batch,
                    flush_every=self._flush_every,
                )
                self._coordinators[repo_url] = coordinator
            return coordinator

    def submit(self, intent: WriteIntent) -> Future:
        return self.coordinator(intent.write_back.repo_url).submit(intent)

    def flush_all(self, timeout: float | None = None) -> None:
        with self._guard:
            coordinators = list(self._coordinators.values())
        for coordinator in coordinators:
            coordinator.flush(timeout)

    def shutdown(self) -> None:
        with self._guard:
            coordinators = list(self._coordinators.values())
        for coordinator in coordinators:
            coordinator.shutdown(wait=True)
