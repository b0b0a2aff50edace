from __future__ import annotations

import functools
import subprocess
import threading
from pathlib import Path

import pytest
import yaml

from image_updater.applications import ChangeEntry, GitCredentials, ImageSpec, WriteBackConfig
from image_updater.git_client import CommitOptions, GitError, NativeGitClient, _credential_env, clone_git_client
from image_updater.manifests import KustomizeImagesApplier
from image_updater.repo_writer import WriteIntent, write_batch


def _git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


def _make_remote(tmp_path: Path) -> Path:
    seed = tmp_path / "seed"
    seed.mkdir()
    _git(seed, "init", "-b", "main")
    _git(seed, "config", "user.name", "Test")
    _git(seed, "config", "user.email", "test@example.com")
    kustomization = seed / "overlays" / "prod" / "kustomization.yaml"
    kustomization.parent.mkdir(parents=True)
    kustomization.write_text(
        "resources:\n- deployment.yaml\nimages:\n- name: registry/web\n  newTag: '1.0'\n",
        encoding="utf-8",
    )
    _git(seed, "add", ".")
    _git(seed, "commit", "-m", "init")

    remote = tmp_path / "remote.git"
    _git(tmp_path, "clone", "--bare", str(seed), str(remote))
    return remote


def _intent(branch: str = "main", write_branch: str = "", tag: str = "1.2") -> WriteIntent:
    change = ChangeEntry(ImageSpec("registry/web", current_tag="1.0"), "1.0", tag)
    return WriteIntent(
        application="web",
        write_back=WriteBackConfig(method="git", branch=branch, write_branch=write_branch),
        changes=(change,),
        applier=KustomizeImagesApplier(base="overlays/prod", changes=(change,)),
    )


def _remote_file(remote: Path, ref: str) -> dict:
    return yaml.safe_load(_git(remote, "show", f"{ref}:overlays/prod/kustomization.yaml"))


def test_credential_env_basic_auth() -> None:
    args, env = _credential_env(GitCredentials(username="u", password="p"))

    assert args == ["--config-env", "http.extraHeader=IMAGE_UPDATER_GIT_AUTH_HEADER"]
    assert env["IMAGE_UPDATER_GIT_AUTH_HEADER"] == "Authorization: Basic dTpw"
    assert env["GIT_TERMINAL_PROMPT"] == "0"


def test_credential_env_ssh_key() -> None:
    args, env = _credential_env(GitCredentials(ssh_private_key_path="/keys/id_ed25519"))

    assert args == []
    assert env["GIT_SSH_COMMAND"].startswith("ssh -i /keys/id_ed25519 ")


def test_credential_env_without_credentials() -> None:
    assert _credential_env(GitCredentials()) == ([], {"GIT_TERMINAL_PROMPT": "0"})


def test_write_batch_commits_and_pushes_to_remote(tmp_path: Path) -> None:
    remote = _make_remote(tmp_path)
    checkouts = tmp_path / "checkouts"
    factory = functools.partial(clone_git_client, temp_dir=checkouts)
    intent = _intent()

    write_batch(str(remote), [intent], lock=threading.Lock(), git_factory=factory)

    assert intent.result.result(timeout=0).committed is True
    assert _remote_file(remote, "main")["images"] == [{"name": "registry/web", "newTag": "1.2"}]
    message = _git(remote, "log", "-1", "--format=%B", "main")
    assert message.startswith("build: automatic update of web")
    assert "updates image registry/web tag '1.0' to '1.2'" in message
    assert list(checkouts.iterdir()) == []


def test_identical_state_produces_no_new_commit(tmp_path: Path) -> None:
    remote = _make_remote(tmp_path)
    factory = functools.partial(clone_git_client, temp_dir=tmp_path / "checkouts")
    write_batch(str(remote), [_intent()], lock=threading.Lock(), git_factory=factory)
    count = _git(remote, "rev-list", "--count", "main").strip()

    again = _intent()
    write_batch(str(remote), [again], lock=threading.Lock(), git_factory=factory)

    assert again.result.result(timeout=0).committed is False
    assert _git(remote, "rev-list", "--count", "main").strip() == count


def test_head_branch_and_write_branch(tmp_path: Path) -> None:
    remote = _make_remote(tmp_path)
    factory = functools.partial(clone_git_client, temp_dir=tmp_path / "checkouts")
    intent = _intent(branch="", write_branch="image-updater")

    write_batch(str(remote), [intent], lock=threading.Lock(), git_factory=factory)

    outcome = intent.result.result(timeout=0)
    assert outcome.branch == "image-updater"
    assert _remote_file(remote, "image-updater")["images"][0]["newTag"] == "1.2"
    assert _remote_file(remote, "main")["images"][0]["newTag"] == "1.0"


def test_fetch_of_missing_branch_raises(tmp_path: Path) -> None:
    remote = _make_remote(tmp_path)
    client = NativeGitClient(str(remote), tmp_path / "work")
    client.init()

    with pytest.raises(GitError, match="fetch"):
        client.fetch("does-not-exist")
    assert client.sym_ref_to_branch("HEAD") == "main"


def test_commit_with_paths_leaves_other_edits_out(tmp_path: Path) -> None:
    remote = _make_remote(tmp_path)
    client = NativeGitClient(str(remote), tmp_path / "work")
    client.init()
    client.fetch("main")
    client.checkout("main")
    client.config("bot", "bot@example.com")
    (client.root / "overlays" / "prod" / "kustomization.yaml").write_text("images: []\n", encoding="utf-8")
    (client.root / "notes.txt").write_text("hello\n", encoding="utf-8")
    client.add("notes.txt")

    client.commit(["notes.txt"], CommitOptions(message="notes"))

    assert _git(client.root, "show", "--name-only", "--format=", "HEAD").split() == ["notes.txt"]
    assert "overlays/prod/kustomization.yaml" in _git(client.root, "status", "--porcelain")
