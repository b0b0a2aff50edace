from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def default_cache_dir() -> Path:
    override = os.environ.get("IMAGE_UPDATER_CACHE_DIR")
    if override:
        return Path(override).expanduser()

    xdg_cache_home = os.environ.get("XDG_CACHE_HOME")
    if xdg_cache_home:
        return Path(xdg_cache_home).expanduser() / "image-updater"

    return Path.home() / ".cache" / "image-updater"


@dataclass(frozen=True, slots=True)
class UpdaterPaths:
    cache_dir: Path

    @property
    def checkouts_dir(self) -> Path:
        return self.cache_dir / "checkouts"

    @property
    def pass_log_path(self) -> Path:
        return self.cache_dir / "passes.jsonl"
