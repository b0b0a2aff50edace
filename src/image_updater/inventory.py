from __future__ import annotations

import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from image_updater.applications import (
    Application,
    GitCredentials,
    ImageSpec,
    WriteBackConfig,
    match_label_selector,
)
from image_updater.collaborators import OrchestratorError
from image_updater.config import as_bool, as_choice, as_str, load_toml_table

logger = logging.getLogger(__name__)

_APP_TYPES: tuple[str, ...] = ("kustomize", "helm")
_WRITE_BACK_METHODS: tuple[str, ...] = ("argocd", "git")


class InventoryError(ValueError):
    pass


def _parse_labels(value: Any, *, field: str, errors: list[str]) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        errors.append(f"{field}: expected table, got {type(value).__name__}")
        return {}
    labels: dict[str, str] = {}
    for key, item in value.items():
        if not isinstance(item, str):
            errors.append(f"{field}.{key}: expected string, got {type(item).__name__}")
            continue
        labels[str(key)] = item
    return labels


def _parse_image(raw: Any, *, field: str, errors: list[str]) -> ImageSpec | None:
    if not isinstance(raw, dict):
        errors.append(f"{field}: expected table, got {type(raw).__name__}")
        return None
    name = as_str(raw.get("name"), field=f"{field}.name", errors=errors, required=True)
    if name is None:
        return None
    return ImageSpec(
        name=name,
        current_tag=as_str(raw.get("current_tag"), field=f"{field}.current_tag", errors=errors),
        constraint=as_str(raw.get("constraint"), field=f"{field}.constraint", errors=errors),
        alias=as_str(raw.get("alias"), field=f"{field}.alias", errors=errors),
        helm_image_name=as_str(raw.get("helm_image_name"), field=f"{field}.helm_image_name", errors=errors),
        helm_image_tag=as_str(raw.get("helm_image_tag"), field=f"{field}.helm_image_tag", errors=errors),
        kustomize_image_name=as_str(
            raw.get("kustomize_image_name"), field=f"{field}.kustomize_image_name", errors=errors
        ),
    )


def _parse_credentials(raw: dict[str, Any], *, field: str, errors: list[str], environ: Mapping[str, str]) -> GitCredentials:
    password = None
    password_env = as_str(raw.get("password_env"), field=f"{field}.password_env", errors=errors)
    if password_env is not None:
        password = environ.get(password_env)
        if not password:
            errors.append(f"{field}.password_env: environment variable {password_env!r} is not set")
    return GitCredentials(
        username=as_str(raw.get("username"), field=f"{field}.username", errors=errors),
        password=password,
        ssh_private_key_path=as_str(
            raw.get("ssh_private_key_path"), field=f"{field}.ssh_private_key_path", errors=errors
        ),
    )


def _parse_write_back(raw: Any, *, field: str, errors: list[str], environ: Mapping[str, str]) -> WriteBackConfig:
    if raw is None:
        return WriteBackConfig()
    if not isinstance(raw, dict):
        errors.append(f"{field}: expected table, got {type(raw).__name__}")
        return WriteBackConfig()
    method = as_choice(raw.get("method"), field=f"{field}.method", errors=errors, choices=_WRITE_BACK_METHODS, default="argocd")

    def opt(key: str) -> str:
        return as_str(raw.get(key), field=f"{field}.{key}", errors=errors) or ""

    return WriteBackConfig(
        method=method,  # type: ignore[arg-type]
        repo_url=opt("repo_url"),
        branch=opt("branch"),
        write_branch=opt("write_branch"),
        target=opt("target"),
        kustomize_base=opt("kustomize_base"),
        helm_values=opt("helm_values"),
        credentials=_parse_credentials(raw, field=field, errors=errors, environ=environ),
    )


def parse_inventory(data: Mapping[str, Any], *, environ: Mapping[str, str] | None = None) -> tuple[Application, ...]:
    if environ is None:
        environ = os.environ
    errors: list[str] = []
    raw_apps = data.get("applications")
    if raw_apps is None:
        return ()
    if not isinstance(raw_apps, dict):
        raise InventoryError("Invalid inventory:\n- applications: expected table")

    apps: list[Application] = []
    for name, raw in raw_apps.items():
        field = f"applications.{name}"
        if not isinstance(raw, dict):
            errors.append(f"{field}: expected table, got {type(raw).__name__}")
            continue
        images_raw = raw.get("images") or []
        if not isinstance(images_raw, list):
            errors.append(f"{field}.images: expected array of tables, got {type(images_raw).__name__}")
            images_raw = []
        images = [
            image
            for idx, item in enumerate(images_raw)
            if (image := _parse_image(item, field=f"{field}.images[{idx}]", errors=errors)) is not None
        ]
        write_back = _parse_write_back(raw.get("write_back"), field=f"{field}.write_back", errors=errors, environ=environ)
        repo_url = as_str(raw.get("repo_url"), field=f"{field}.repo_url", errors=errors) or ""
        if write_back.method == "git" and not (write_back.repo_url or repo_url):
            errors.append(f"{field}: git write-back needs repo_url or write_back.repo_url")
        if as_bool(raw.get("enabled"), field=f"{field}.enabled", errors=errors, default=True) is False:
            logger.debug("Inventory application=%s is disabled", name)
            continue
        apps.append(
            Application(
                name=str(name),
                namespace=as_str(raw.get("namespace"), field=f"{field}.namespace", errors=errors) or "",
                app_type=as_choice(  # type: ignore[arg-type]
                    raw.get("type"), field=f"{field}.type", errors=errors, choices=_APP_TYPES, default="kustomize"
                ),
                repo_url=repo_url,
                path=as_str(raw.get("path"), field=f"{field}.path", errors=errors) or "",
                target_revision=as_str(raw.get("target_revision"), field=f"{field}.target_revision", errors=errors)
                or "",
                images=tuple(images),
                labels=_parse_labels(raw.get("labels"), field=f"{field}.labels", errors=errors),
                write_back=write_back,
            )
        )

    if errors:
        raise InventoryError("Invalid inventory:\n- " + "\n- ".join(errors))
    apps.sort(key=lambda a: a.name)
    return tuple(apps)


def load_inventory(path: Path, *, environ: Mapping[str, str] | None = None) -> tuple[Application, ...]:
    return parse_inventory(load_toml_table(path, error=InventoryError), environ=environ)


@dataclass(frozen=True, slots=True)
class InventoryClient:
    """Application source backed by a TOML file, re-read on every listing.

    The file cannot receive spec updates, so only git write-back works for
    applications listed here.
    """

    path: Path

    def list_applications(self, label_selector: str | None) -> Sequence[Application]:
        apps = load_inventory(self.path)
        return [a for a in apps if match_label_selector(a.labels, label_selector)]

    def set_kustomize_image(self, app: Application, image: ImageSpec, tag: str) -> None:
        raise OrchestratorError(f"inventory {self.path} does not support API write-back (application={app.name})")

    def set_helm_image(self, app: Application, image: ImageSpec, tag: str) -> None:
        raise OrchestratorError(f"inventory {self.path} does not support API write-back (application={app.name})")

    def update_spec(self, app: Application) -> None:
        raise OrchestratorError(f"inventory {self.path} does not support API write-back (application={app.name})")
