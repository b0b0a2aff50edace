from __future__ import annotations

import fnmatch
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Literal

logger = logging.getLogger(__name__)

WriteBackMethod = Literal["argocd", "git"]
ApplicationType = Literal["kustomize", "helm"]


@dataclass(frozen=True, slots=True)
class GitCredentials:
    username: str | None = None
    password: str | None = None
    ssh_private_key_path: str | None = None


@dataclass(frozen=True, slots=True)
class ImageSpec:
    """One image of an application that is allowed to be updated.

    ``name`` is the image reference without tag (``ghcr.io/org/api``) and
    ``current_tag`` is the tag live in the application, if any. ``constraint``
    is handed to the registry resolver unmodified.
    """

    name: str
    current_tag: str | None = None
    constraint: str | None = None
    alias: str | None = None
    helm_image_name: str | None = None
    helm_image_tag: str | None = None
    kustomize_image_name: str | None = None

    def with_tag(self, tag: str | None) -> str:
        if not tag:
            return self.name
        return f"{self.name}:{tag}"


@dataclass(frozen=True, slots=True)
class WriteBackConfig:
    method: WriteBackMethod = "argocd"
    repo_url: str = ""
    branch: str = ""
    write_branch: str = ""
    target: str = ""
    kustomize_base: str = ""
    helm_values: str = ""
    credentials: GitCredentials = GitCredentials()

    @property
    def branch_key(self) -> tuple[str, str]:
        return (self.branch, self.write_branch)


@dataclass(frozen=True, slots=True)
class Application:
    name: str
    namespace: str = ""
    app_type: ApplicationType = "kustomize"
    repo_url: str = ""
    path: str = ""
    target_revision: str = ""
    images: tuple[ImageSpec, ...] = ()
    labels: Mapping[str, str] = field(default_factory=dict)
    write_back: WriteBackConfig = WriteBackConfig()

    @property
    def repository(self) -> str:
        return self.write_back.repo_url or self.repo_url


@dataclass(frozen=True, slots=True)
class ChangeEntry:
    image: ImageSpec
    old_tag: str | None
    new_tag: str


def match_label_selector(labels: Mapping[str, str], selector: str | None) -> bool:
    """Evaluate an equality-based selector such as ``team=a,tier!=db,managed``."""
    if not selector or not selector.strip():
        return True
    for raw in selector.split(","):
        term = raw.strip()
        if not term:
            continue
        if "!=" in term:
            key, value = (p.strip() for p in term.split("!=", 1))
            if labels.get(key) == value:
                return False
        elif "=" in term:
            key, value = (p.strip() for p in term.split("=", 1))
            value = value.lstrip("=").strip()
            if labels.get(key) != value:
                return False
        elif term not in labels:
            return False
    return True


def filter_applications_for_update(
    apps: Iterable[Application],
    name_patterns: Sequence[str] | None = None,
) -> list[Application]:
    patterns = [p for p in (name_patterns or ()) if p]
    eligible: list[Application] = []
    for app in apps:
        if not app.images:
            logger.debug("Skipping application=%s: no images configured for update", app.name)
            continue
        if patterns and not any(fnmatch.fnmatchcase(app.name, p) for p in patterns):
            logger.debug("Skipping application=%s: name does not match %s", app.name, patterns)
            continue
        eligible.append(app)
    return eligible
