from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Literal

from image_updater.scheduling import SCHEDULE_POLICIES

logger = logging.getLogger(__name__)

UpdateMode = Literal["cycle", "continuous"]

SUPPORTED_API_KINDS: tuple[str, ...] = ("kubernetes", "inventory")
UPDATE_MODES: tuple[str, ...] = ("cycle", "continuous")
LOG_LEVELS: tuple[str, ...] = ("trace", "debug", "info", "warn", "warning", "error")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_DURATION_RE = re.compile(r"^(?:(?P<h>\d+)h)?(?:(?P<m>\d+)m)?(?:(?P<s>\d+(?:\.\d+)?)s)?$")


class UpdaterConfigError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class GitSettings:
    user: str = "image-updater"
    email: str = "noreply@image-updater.local"
    signing_key: str | None = None
    signing_method: str = "openpgp"
    sign_off: bool = False
    message_template: str | None = None


@dataclass(frozen=True, slots=True)
class WriteBatchSettings:
    max_batch: int = 10
    flush_every: timedelta = timedelta(seconds=2)


@dataclass(frozen=True, slots=True)
class UpdaterConfig:
    applications_api: str = "kubernetes"
    inventory_path: Path | None = None
    dry_run: bool = False
    check_interval: timedelta = timedelta(minutes=2)
    max_concurrency: int = 10
    schedule: str = "default"
    cooldown: timedelta = timedelta(0)
    per_repo_cap: int = 0
    mode: UpdateMode = "cycle"
    warm_up: bool = False
    continuous_tick: timedelta = timedelta(seconds=1)
    app_name_patterns: tuple[str, ...] = ()
    app_label: str | None = None
    log_level: str = "info"
    cache_dir: Path | None = None
    pass_log: bool = False
    git: GitSettings = field(default_factory=GitSettings)
    write_batch: WriteBatchSettings = field(default_factory=WriteBatchSettings)


def parse_duration(value: Any) -> timedelta:
    """Accept seconds as a number, or strings such as ``90``, ``90s``, ``2m`` or ``1h30m``."""
    if isinstance(value, bool):
        raise UpdaterConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise UpdaterConfigError(f"duration must be >= 0, got {value}")
        return timedelta(seconds=value)
    if not isinstance(value, str):
        raise UpdaterConfigError(f"invalid duration: expected number or string, got {type(value).__name__}")

    text = value.strip()
    if not text:
        raise UpdaterConfigError("invalid duration: empty string")
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if seconds < 0:
            raise UpdaterConfigError(f"duration must be >= 0, got {value!r}")
        return timedelta(seconds=seconds)

    match = _DURATION_RE.match(text)
    if match is None or not any(match.groupdict().values()):
        raise UpdaterConfigError(f"invalid duration: {value!r}")
    return timedelta(
        hours=int(match.group("h") or 0),
        minutes=int(match.group("m") or 0),
        seconds=float(match.group("s") or 0),
    )


def load_toml_table(path: Path, *, error: type[Exception] = UpdaterConfigError) -> dict[str, Any]:
    try:
        import tomllib  # pyright: ignore[reportMissingImports]
    except ModuleNotFoundError:  # pragma: no cover
        import tomli as tomllib  # type: ignore[no-redef]

    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError as e:
        raise error(f"Config file not found: {path}") from e
    except OSError as e:
        raise error(f"Failed to read config file: {path}") from e
    except Exception as e:  # tomllib.TOMLDecodeError is not public across tomli/tomllib
        raise error(f"Failed to parse TOML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise error(f"Expected TOML document to be a table in {path}")
    return data


def as_str(value: Any, *, field: str, errors: list[str], required: bool = False) -> str | None:
    if value is None:
        if required:
            errors.append(f"{field}: required field missing")
        return None
    if not isinstance(value, str):
        errors.append(f"{field}: expected string, got {type(value).__name__}")
        return None
    if not value.strip():
        errors.append(f"{field}: must be non-empty")
        return None
    return value


def as_str_list(value: Any, *, field: str, errors: list[str]) -> list[str] | None:
    if value is None:
        return None
    if not isinstance(value, list):
        errors.append(f"{field}: expected list[str], got {type(value).__name__}")
        return None
    out: list[str] = []
    for idx, item in enumerate(value):
        if not isinstance(item, str):
            errors.append(f"{field}[{idx}]: expected string, got {type(item).__name__}")
            continue
        if not item.strip():
            errors.append(f"{field}[{idx}]: must be non-empty")
            continue
        out.append(item)
    return out


def as_bool(value: Any, *, field: str, errors: list[str], default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        errors.append(f"{field}: expected bool, got {type(value).__name__}")
        return default
    return value


def _as_int(value: Any, *, field: str, errors: list[str], default: int, minimum: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append(f"{field}: expected int, got {type(value).__name__}")
        return default
    if value < minimum:
        errors.append(f"{field}: must be >= {minimum}, got {value}")
        return default
    return value


def _as_duration(value: Any, *, field: str, errors: list[str], default: timedelta) -> timedelta:
    if value is None:
        return default
    try:
        return parse_duration(value)
    except UpdaterConfigError as e:
        errors.append(f"{field}: {e}")
        return default


def as_choice(value: Any, *, field: str, errors: list[str], choices: tuple[str, ...], default: str) -> str:
    text = as_str(value, field=field, errors=errors)
    if text is None:
        return default
    if text not in choices:
        errors.append(f"{field}: expected one of {', '.join(choices)}, got {text!r}")
        return default
    return text


def _table(value: Any, *, field: str, errors: list[str]) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        errors.append(f"{field}: expected table, got {type(value).__name__}")
        return {}
    return value


def _parse_git(raw: dict[str, Any], errors: list[str]) -> GitSettings:
    defaults = GitSettings()
    return GitSettings(
        user=as_str(raw.get("user"), field="git.user", errors=errors) or defaults.user,
        email=as_str(raw.get("email"), field="git.email", errors=errors) or defaults.email,
        signing_key=as_str(raw.get("signing_key"), field="git.signing_key", errors=errors),
        signing_method=as_choice(
            raw.get("signing_method"),
            field="git.signing_method",
            errors=errors,
            choices=("openpgp", "ssh", "x509"),
            default=defaults.signing_method,
        ),
        sign_off=as_bool(raw.get("sign_off"), field="git.sign_off", errors=errors, default=False),
        message_template=as_str(raw.get("message_template"), field="git.message_template", errors=errors),
    )


def _parse_write_batch(raw: dict[str, Any], errors: list[str]) -> WriteBatchSettings:
    defaults = WriteBatchSettings()
    return WriteBatchSettings(
        max_batch=_as_int(
            raw.get("max_batch"), field="write_batch.max_batch", errors=errors, default=defaults.max_batch, minimum=1
        ),
        flush_every=_as_duration(
            raw.get("flush_every"), field="write_batch.flush_every", errors=errors, default=defaults.flush_every
        ),
    )


def validate_config(config: UpdaterConfig) -> None:
    errors: list[str] = []
    if config.applications_api not in SUPPORTED_API_KINDS:
        errors.append(
            f"applications_api: application api kind {config.applications_api!r} is not supported "
            f"(expected one of: {', '.join(SUPPORTED_API_KINDS)})"
        )
    if config.applications_api == "inventory" and config.inventory_path is None:
        errors.append("inventory_path: required when applications_api = 'inventory'")
    if config.max_concurrency < 0:
        errors.append(f"max_concurrency: must be >= 0, got {config.max_concurrency}")
    if config.per_repo_cap < 0:
        errors.append(f"per_repo_cap: must be >= 0, got {config.per_repo_cap}")
    if config.schedule not in SCHEDULE_POLICIES:
        errors.append(f"schedule: expected one of {', '.join(SCHEDULE_POLICIES)}, got {config.schedule!r}")
    if config.mode not in UPDATE_MODES:
        errors.append(f"mode: expected one of {', '.join(UPDATE_MODES)}, got {config.mode!r}")
    if config.mode == "continuous":
        if config.write_batch.flush_every <= timedelta(0):
            errors.append("write_batch.flush_every: must be > 0 in continuous mode")
        if config.continuous_tick <= timedelta(0):
            errors.append("continuous_tick: must be > 0 in continuous mode")
    if config.write_batch.max_batch < 1:
        errors.append(f"write_batch.max_batch: must be >= 1, got {config.write_batch.max_batch}")
    if config.log_level.lower() not in LOG_LEVELS:
        errors.append(f"log_level: expected one of {', '.join(LOG_LEVELS)}, got {config.log_level!r}")
    if errors:
        raise UpdaterConfigError("Invalid config:\n- " + "\n- ".join(errors))


def parse_updater_config(data: Mapping[str, Any], *, base_dir: Path | None = None) -> UpdaterConfig:
    errors: list[str] = []
    defaults = UpdaterConfig()
    raw = data.get("updater", data)
    if not isinstance(raw, dict):
        raise UpdaterConfigError("Invalid config:\n- updater: expected table")

    inventory_path = None
    inventory_raw = as_str(raw.get("inventory_path"), field="inventory_path", errors=errors)
    if inventory_raw is not None:
        inventory_path = Path(inventory_raw).expanduser()
        if not inventory_path.is_absolute() and base_dir is not None:
            inventory_path = base_dir / inventory_path

    cache_dir = None
    cache_raw = as_str(raw.get("cache_dir"), field="cache_dir", errors=errors)
    if cache_raw is not None:
        cache_dir = Path(cache_raw).expanduser()

    config = UpdaterConfig(
        applications_api=as_str(raw.get("applications_api"), field="applications_api", errors=errors)
        or defaults.applications_api,
        inventory_path=inventory_path,
        dry_run=as_bool(raw.get("dry_run"), field="dry_run", errors=errors, default=defaults.dry_run),
        check_interval=_as_duration(
            raw.get("check_interval"), field="check_interval", errors=errors, default=defaults.check_interval
        ),
        max_concurrency=_as_int(
            raw.get("max_concurrency"), field="max_concurrency", errors=errors, default=defaults.max_concurrency
        ),
        schedule=as_choice(
            raw.get("schedule"), field="schedule", errors=errors, choices=SCHEDULE_POLICIES, default=defaults.schedule
        ),
        cooldown=_as_duration(raw.get("cooldown"), field="cooldown", errors=errors, default=defaults.cooldown),
        per_repo_cap=_as_int(raw.get("per_repo_cap"), field="per_repo_cap", errors=errors, default=0),
        mode=as_choice(  # type: ignore[arg-type]
            raw.get("mode"), field="mode", errors=errors, choices=UPDATE_MODES, default=defaults.mode
        ),
        warm_up=as_bool(raw.get("warm_up"), field="warm_up", errors=errors, default=False),
        continuous_tick=_as_duration(
            raw.get("continuous_tick"), field="continuous_tick", errors=errors, default=defaults.continuous_tick
        ),
        app_name_patterns=tuple(
            as_str_list(raw.get("app_name_patterns"), field="app_name_patterns", errors=errors) or ()
        ),
        app_label=as_str(raw.get("app_label"), field="app_label", errors=errors),
        log_level=as_choice(
            raw.get("log_level"), field="log_level", errors=errors, choices=LOG_LEVELS, default=defaults.log_level
        ),
        cache_dir=cache_dir,
        pass_log=as_bool(raw.get("pass_log"), field="pass_log", errors=errors, default=False),
        git=_parse_git(_table(raw.get("git"), field="git", errors=errors), errors),
        write_batch=_parse_write_batch(_table(raw.get("write_batch"), field="write_batch", errors=errors), errors),
    )
    if errors:
        raise UpdaterConfigError("Invalid config:\n- " + "\n- ".join(errors))
    validate_config(config)
    return config


def _env_int(environ: Mapping[str, str], name: str) -> int | None:
    value = environ.get(name)
    if value is None or not value.strip():
        return None
    try:
        return int(value)
    except ValueError as e:
        raise UpdaterConfigError(f"{name}: expected int, got {value!r}") from e


def apply_env_overrides(config: UpdaterConfig, environ: Mapping[str, str] | None = None) -> UpdaterConfig:
    if environ is None:
        environ = os.environ

    changes: dict[str, Any] = {}
    max_concurrency = _env_int(environ, "IMAGE_UPDATER_MAX_CONCURRENCY")
    if max_concurrency is not None:
        changes["max_concurrency"] = max_concurrency
    per_repo_cap = _env_int(environ, "IMAGE_UPDATER_PER_REPO_CAP")
    if per_repo_cap is not None:
        changes["per_repo_cap"] = per_repo_cap
    interval = environ.get("IMAGE_UPDATER_INTERVAL")
    if interval:
        try:
            changes["check_interval"] = parse_duration(interval)
        except UpdaterConfigError as e:
            raise UpdaterConfigError(f"IMAGE_UPDATER_INTERVAL: {e}") from e
    for env_name, field_name in (
        ("IMAGE_UPDATER_LOGLEVEL", "log_level"),
        ("IMAGE_UPDATER_SCHEDULE", "schedule"),
        ("IMAGE_UPDATER_MODE", "mode"),
    ):
        value = environ.get(env_name)
        if value:
            changes[field_name] = value.strip()
    dry_run = environ.get("IMAGE_UPDATER_DRY_RUN")
    if dry_run:
        changes["dry_run"] = dry_run.strip().lower() in ("1", "true", "yes", "on")

    git_changes: dict[str, Any] = {}
    if environ.get("GIT_COMMIT_USER"):
        git_changes["user"] = environ["GIT_COMMIT_USER"]
    if environ.get("GIT_COMMIT_EMAIL"):
        git_changes["email"] = environ["GIT_COMMIT_EMAIL"]
    if environ.get("GIT_COMMIT_SIGNING_KEY"):
        git_changes["signing_key"] = environ["GIT_COMMIT_SIGNING_KEY"]
    if git_changes:
        changes["git"] = replace(config.git, **git_changes)

    if not changes:
        return config
    updated = replace(config, **changes)
    validate_config(updated)
    return updated


def load_updater_config(path: Path, *, environ: Mapping[str, str] | None = None) -> UpdaterConfig:
    data = load_toml_table(path)
    config = parse_updater_config(data, base_dir=path.parent)
    return apply_env_overrides(config, environ)


def configure_logging(level: str) -> None:
    name = level.strip().lower()
    if name == "trace":
        name = "debug"
    elif name == "warn":
        name = "warning"
    numeric = logging.getLevelName(name.upper())
    if not isinstance(numeric, int):
        raise UpdaterConfigError(f"log_level: unknown level {level!r}")
    logging.basicConfig(format=LOG_FORMAT, level=numeric)
    logging.getLogger().setLevel(numeric)
