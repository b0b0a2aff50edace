from __future__ import annotations

import json
import os
import tempfile
import threading
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any


class AuditTrailError(RuntimeError):
    pass


def write_text_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        delete=False,
        prefix=f".{path.name}.",
        suffix=".tmp",
    ) as f:
        f.write(content)
        if not content.endswith("\n"):
            f.write("\n")
        tmp_name = f.name
    os.replace(tmp_name, path)


def append_jsonl(path: Path, event: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(dict(event), sort_keys=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(payload + "\n")


def read_jsonl(path: Path) -> list[dict[str, Any]]:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        return []
    except OSError as e:
        raise AuditTrailError(f"Failed to read {path}: {e}") from e

    out: list[dict[str, Any]] = []
    for idx, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise AuditTrailError(f"{path}:{idx}: invalid JSON: {e}") from e
        if isinstance(data, dict):
            out.append(data)
    return out


def format_pass_record(
    *,
    mode: str,
    started_at: datetime,
    finished_at: datetime,
    counters: Mapping[str, int],
    skip_reasons: Mapping[str, int],
) -> dict[str, Any]:
    return {
        "schema_version": 1,
        "mode": mode,
        "started_at": started_at.isoformat(),
        "finished_at": finished_at.isoformat(),
        "duration_seconds": round((finished_at - started_at).total_seconds(), 3),
        "counters": dict(sorted(counters.items())),
        "skip_reasons": dict(sorted(skip_reasons.items())),
    }


class PassLog:
    """Appends one JSON line per finished pass."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def record(self, record: Mapping[str, Any]) -> None:
        with self._lock:
            append_jsonl(self.path, record)

    def records(self) -> list[dict[str, Any]]:
        with self._lock:
            return read_jsonl(self.path)
