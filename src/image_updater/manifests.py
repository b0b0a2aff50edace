from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import yaml

from image_updater.applications import ApplicationType, ChangeEntry
from image_updater.audit_trail import write_text_atomic

logger = logging.getLogger(__name__)

KUSTOMIZATION_FILENAMES: tuple[str, ...] = ("kustomization.yaml", "kustomization.yml", "Kustomization")
GENERATED_VALUES_HEADER = "# auto generated by image-updater\n"


class ManifestError(RuntimeError):
    pass


class ManifestApplier(Protocol):
    """Mutates one file of a checked-out working tree.

    ``apply`` returns False when the file already holds the rendered content,
    so re-applying the same resolved state never produces a commit.
    """

    def target_path(self, root: Path) -> Path: ...

    def apply(self, root: Path) -> bool: ...


def _load_yaml(path: Path) -> tuple[str | None, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None, None
    except OSError as e:
        raise ManifestError(f"Failed to read {path}: {e}") from e
    try:
        return text, yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ManifestError(f"Failed to parse YAML in {path}: {e}") from e


def _dump_yaml(data: Any) -> str:
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False, indent=2)


def _write_if_changed(path: Path, original_text: str | None, original_data: Any, new_data: Any, *, header: str = "") -> bool:
    if original_text is not None and original_data == new_data:
        logger.debug("target file %s and rendered data are the same, skipping", path)
        return False
    rendered = header + _dump_yaml(new_data)
    if original_text is not None and original_text == rendered:
        return False
    write_text_atomic(path, rendered)
    return True


def _mapping_section(path: Path, data: dict[str, Any], key: str) -> dict[str, Any]:
    section = data.get(key)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ManifestError(f"{path}: {key!r} must be a mapping, got {type(section).__name__}")
    return dict(section)


def _list_section(path: Path, data: dict[str, Any], key: str) -> list[Any]:
    section = data.get(key)
    if section is None:
        return []
    if not isinstance(section, list):
        raise ManifestError(f"{path}: {key!r} must be a list, got {type(section).__name__}")
    return section


def _image_tag_fields(tag: str) -> dict[str, str]:
    if tag.startswith("sha256:"):
        return {"digest": tag}
    return {"newTag": tag}


@dataclass(frozen=True, slots=True)
class KustomizeImagesApplier:
    base: str
    changes: tuple[ChangeEntry, ...]

    def target_path(self, root: Path) -> Path:
        base_dir = root / self.base
        for name in KUSTOMIZATION_FILENAMES:
            candidate = base_dir / name
            if candidate.is_file():
                return candidate
        raise ManifestError(f"could not find kustomization in {base_dir}")

    def apply(self, root: Path) -> bool:
        path = self.target_path(root)
        text, data = _load_yaml(path)
        if not isinstance(data, dict):
            raise ManifestError(f"{path}: expected a mapping document")

        new_data = dict(data)
        images = [dict(entry) for entry in _list_section(path, data, "images") if isinstance(entry, dict)]
        for change in self.changes:
            name = change.image.kustomize_image_name or change.image.name
            entry = next((e for e in images if e.get("name") == name), None)
            if entry is None:
                entry = {"name": name}
                images.append(entry)
            if name != change.image.name:
                entry["newName"] = change.image.name
            entry.pop("newTag", None)
            entry.pop("digest", None)
            entry.update(_image_tag_fields(change.new_tag))
        new_data["images"] = images
        return _write_if_changed(path, text, data, new_data)


def _set_helm_value(values: dict[str, Any], key: str, value: str) -> None:
    if key in values and not isinstance(values[key], dict):
        values[key] = value
        return
    parts = key.split(".")
    node = values
    for idx, part in enumerate(parts[:-1]):
        child = node.get(part)
        if child is None:
            child = {}
            node[part] = child
        elif not isinstance(child, dict):
            path = ".".join(parts[: idx + 1])
            raise ManifestError(f"unexpected type for key {path!r}: {type(child).__name__} is not a mapping")
        node = child
    node[parts[-1]] = value


def _copy_mapping(data: Any) -> Any:
    if isinstance(data, dict):
        return {k: _copy_mapping(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_copy_mapping(v) for v in data]
    return data


@dataclass(frozen=True, slots=True)
class HelmValuesApplier:
    values_path: str
    changes: tuple[ChangeEntry, ...]

    def target_path(self, root: Path) -> Path:
        return root / self.values_path

    def apply(self, root: Path) -> bool:
        path = self.target_path(root)
        text, data = _load_yaml(path)
        header = ""
        if text is None or not text.strip():
            data = {}
            header = GENERATED_VALUES_HEADER
            text = None
        elif not isinstance(data, dict):
            raise ManifestError(f"{path}: expected a mapping document")

        new_data = _copy_mapping(data)
        for change in self.changes:
            image = change.image
            if not image.helm_image_name:
                raise ManifestError(f"could not find a helm image-name key for image {image.name}")
            if image.helm_image_tag:
                _set_helm_value(new_data, image.helm_image_tag, change.new_tag)
                _set_helm_value(new_data, image.helm_image_name, image.name)
            else:
                _set_helm_value(new_data, image.helm_image_name, image.with_tag(change.new_tag))
        return _write_if_changed(path, text, data, new_data, header=header)


@dataclass(frozen=True, slots=True)
class ParameterOverrideApplier:
    """Writes ``.argocd-source-<app>.yaml`` style parameter overrides."""

    target: str
    app_type: ApplicationType
    changes: tuple[ChangeEntry, ...]

    def target_path(self, root: Path) -> Path:
        return root / self.target

    def _merge_kustomize(self, path: Path, data: dict[str, Any]) -> None:
        section = _mapping_section(path, data, "kustomize")
        images = [str(i) for i in _list_section(path, section, "images")]
        for change in self.changes:
            name = change.image.kustomize_image_name or change.image.name
            rendered = change.image.with_tag(change.new_tag)
            if name != change.image.name:
                rendered = f"{name}={rendered}"
            prefixes = (f"{name}:", f"{name}=", f"{name}@")
            images = [i for i in images if i != name and not i.startswith(prefixes)]
            images.append(rendered)
        section["images"] = images
        data["kustomize"] = section

    def _merge_helm(self, path: Path, data: dict[str, Any]) -> None:
        section = _mapping_section(path, data, "helm")
        params: dict[str, dict[str, Any]] = {}
        for raw in _list_section(path, section, "parameters"):
            if isinstance(raw, dict) and "name" in raw:
                params[str(raw["name"])] = dict(raw)
        for change in self.changes:
            image = change.image
            name_key = image.helm_image_name or "image.name"
            tag_key = image.helm_image_tag or "image.tag"
            params[name_key] = {"name": name_key, "value": image.name, "forcestring": True}
            params[tag_key] = {"name": tag_key, "value": change.new_tag, "forcestring": True}
        section["parameters"] = [params[k] for k in sorted(params)]
        data["helm"] = section

    def apply(self, root: Path) -> bool:
        path = self.target_path(root)
        text, data = _load_yaml(path)
        if not isinstance(data, dict):
            if data is not None:
                logger.warning("Replacing unparseable override file %s", path)
            data = {}
        new_data = _copy_mapping(data)
        if self.app_type == "kustomize":
            self._merge_kustomize(path, new_data)
        elif self.app_type == "helm":
            self._merge_helm(path, new_data)
        else:
            raise ManifestError(f"unsupported application type {self.app_type!r}")
        return _write_if_changed(path, text, data, new_data)


def default_override_target(app_path: str, app_name: str) -> str:
    return str(Path(app_path or ".") / f".argocd-source-{app_name}.yaml")


def select_applier(
    *,
    app_name: str,
    app_type: ApplicationType,
    app_path: str,
    kustomize_base: str,
    helm_values: str,
    target: str,
    changes: Sequence[ChangeEntry],
) -> ManifestApplier:
    change_tuple = tuple(changes)
    if kustomize_base:
        return KustomizeImagesApplier(base=kustomize_base, changes=change_tuple)
    if helm_values:
        return HelmValuesApplier(values_path=helm_values, changes=change_tuple)
    return ParameterOverrideApplier(
        target=target or default_override_target(app_path, app_name),
        app_type=app_type,
        changes=change_tuple,
    )
