from __future__ import annotations

import base64
import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol, Sequence

from image_updater.applications import GitCredentials

logger = logging.getLogger(__name__)

DEFAULT_COMMIT_MESSAGE = "Update parameters"

_BASIC_AUTH_HEADER_ENV = "IMAGE_UPDATER_GIT_AUTH_HEADER"


class GitError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class CommitOptions:
    message: str | None = None
    message_path: Path | None = None
    signing_key: str | None = None
    signing_method: str | None = None
    sign_off: bool = False


class GitClient(Protocol):
    @property
    def root(self) -> Path: ...

    def init(self) -> None: ...

    def fetch(self, branch: str | None = None) -> None: ...

    def checkout(self, branch: str) -> None: ...

    def branch(self, source: str, target: str) -> None: ...

    def add(self, path: str) -> None: ...

    def config(self, user: str, email: str) -> None: ...

    def commit(self, paths: Sequence[str], opts: CommitOptions) -> None: ...

    def push(self, remote: str, branch: str, force: bool) -> None: ...

    def sym_ref_to_branch(self, sym_ref: str) -> str: ...

    def close(self) -> None: ...


GitClientFactory = Callable[[str, GitCredentials], GitClient]


def _credential_env(creds: GitCredentials) -> tuple[list[str], dict[str, str]]:
    args: list[str] = []
    env: dict[str, str] = {"GIT_TERMINAL_PROMPT": "0"}
    if creds.username or creds.password:
        token = base64.b64encode(
            f"{creds.username or ''}:{creds.password or ''}".encode("utf-8")
        ).decode("ascii")
        env[_BASIC_AUTH_HEADER_ENV] = f"Authorization: Basic {token}"
        args = ["--config-env", f"http.extraHeader={_BASIC_AUTH_HEADER_ENV}"]
    if creds.ssh_private_key_path:
        key = shlex.quote(creds.ssh_private_key_path)
        env["GIT_SSH_COMMAND"] = f"ssh -i {key} -o IdentitiesOnly=yes -o StrictHostKeyChecking=accept-new"
    return args, env


def _run_git(
    args: Sequence[str],
    *,
    cwd: Path,
    timeout_seconds: float = 60.0,
    check: bool = True,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    full_env = None
    if env:
        full_env = os.environ.copy()
        full_env.update(env)
    try:
        completed = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout_seconds,
            env=full_env,
        )
    except FileNotFoundError as e:
        raise GitError("git CLI not found (install git and ensure it's on PATH).") from e
    except subprocess.TimeoutExpired as e:
        raise GitError(f"git {' '.join(args)} timed out after {timeout_seconds:.0f}s.") from e

    if check and completed.returncode != 0:
        stderr = (completed.stderr or "").strip()
        stdout = (completed.stdout or "").strip()
        details = stderr or stdout or "<no output>"
        raise GitError(f"git {' '.join(args)} failed (exit={completed.returncode}): {details}")
    return completed


class NativeGitClient:
    """Git CLI client bound to one working tree and one remote URL."""

    def __init__(
        self,
        repo_url: str,
        root: Path,
        creds: GitCredentials | None = None,
        *,
        cleanup: bool = False,
        timeout_seconds: float = 120.0,
    ) -> None:
        self.repo_url = repo_url
        self._root = root
        self._cleanup = cleanup
        self._timeout_seconds = timeout_seconds
        self._cred_args, self._cred_env = _credential_env(creds or GitCredentials())

    @property
    def root(self) -> Path:
        return self._root

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        return _run_git(
            list(args),
            cwd=self._root,
            timeout_seconds=self._timeout_seconds,
            check=check,
        )

    def _remote_git(self, *args: str) -> subprocess.CompletedProcess[str]:
        return _run_git(
            [*self._cred_args, *args],
            cwd=self._root,
            timeout_seconds=self._timeout_seconds,
            check=True,
            env=self._cred_env,
        )

    def init(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        if (self._root / ".git").exists():
            return
        self._git("init")
        self._git("remote", "add", "origin", self.repo_url)

    def fetch(self, branch: str | None = None) -> None:
        if branch:
            self._remote_git("fetch", "--force", "origin", f"+refs/heads/{branch}:refs/remotes/origin/{branch}")
        else:
            self._remote_git("fetch", "--force", "--prune", "origin")

    def checkout(self, branch: str) -> None:
        completed = self._git(
            "show-ref", "--verify", "--quiet", f"refs/remotes/origin/{branch}", check=False
        )
        if completed.returncode == 0:
            self._git("checkout", "-B", branch, f"origin/{branch}")
        else:
            self._git("checkout", branch)

    def branch(self, source: str, target: str) -> None:
        if source:
            self.checkout(source)
        self._git("branch", "--force", target)

    def add(self, path: str) -> None:
        self._git("add", "--", path)

    def config(self, user: str, email: str) -> None:
        self._git("config", "user.name", user)
        self._git("config", "user.email", email)

    def commit(self, paths: Sequence[str], opts: CommitOptions) -> None:
        """Commit ``paths`` only, or every tracked change when ``paths`` is empty."""
        args: list[str] = []
        # -c must come before the subcommand.
        if opts.signing_method:
            args.extend(["-c", f"gpg.format={opts.signing_method}"])
        args.append("commit")
        if not paths:
            args.append("-a")
        if opts.signing_key:
            args.append(f"-S{opts.signing_key}")
        if opts.sign_off:
            args.append("-s")
        if opts.message:
            args.extend(["-m", opts.message])
        elif opts.message_path is not None:
            args.extend(["-F", str(opts.message_path)])
        else:
            args.extend(["-m", DEFAULT_COMMIT_MESSAGE])
        if paths:
            args.extend(["--", *paths])
        self._git(*args)

    def push(self, remote: str, branch: str, force: bool) -> None:
        args = ["push"]
        if force:
            args.append("-f")
        args.extend([remote, branch])
        try:
            self._remote_git(*args)
        except GitError as e:
            raise GitError(f"could not push {branch} to {remote}: {e}") from e

    def sym_ref_to_branch(self, sym_ref: str) -> str:
        completed = self._remote_git("remote", "show", "origin")
        for line in (completed.stdout or "").splitlines():
            line = line.strip()
            if line.startswith("HEAD branch:"):
                branch = line.split(":", 1)[1].strip()
                if branch and branch != "(unknown)":
                    return branch
        raise GitError(f"no default branch found in remote for {sym_ref or 'HEAD'!r}")

    def close(self) -> None:
        if not self._cleanup:
            return
        try:
            shutil.rmtree(self._root)
        except OSError as e:
            logger.error("could not remove temp dir %s: %s", self._root, e)


def clone_git_client(repo_url: str, creds: GitCredentials, *, temp_dir: Path | None = None) -> GitClient:
    """Production factory: a client over a fresh temporary checkout root."""
    if temp_dir is not None:
        temp_dir.mkdir(parents=True, exist_ok=True)
    root = Path(tempfile.mkdtemp(prefix="git-", dir=temp_dir))
    return NativeGitClient(repo_url, root, creds, cleanup=True)
