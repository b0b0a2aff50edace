from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta
from typing import Literal

from image_updater.run_state import RunStats

SchedulePolicy = Literal["default", "lru", "fail-first"]

SCHEDULE_POLICIES: tuple[str, ...] = ("default", "lru", "fail-first")

FAIL_COUNT_WEIGHT = 1_000_000
COOLDOWN_PENALTY_MS = 1_000


class SchedulingError(ValueError):
    pass


def _millis(delta: timedelta) -> int:
    return int(delta.total_seconds() * 1000)


def _score(
    stats: RunStats | None,
    *,
    policy: SchedulePolicy,
    cooldown: timedelta,
    now: datetime,
) -> int:
    stats = stats or RunStats()
    score = 0
    if policy == "lru":
        if stats.last_success is not None:
            score = -_millis(now - stats.last_success)
    elif policy == "fail-first":
        score = stats.fail_count * FAIL_COUNT_WEIGHT
        if stats.last_attempt is not None:
            score -= _millis(now - stats.last_attempt)

    if (
        cooldown > timedelta(0)
        and stats.last_success is not None
        and now - stats.last_success < cooldown
    ):
        score -= COOLDOWN_PENALTY_MS
    return score


def order_applications(
    names: Sequence[str],
    stats: Mapping[str, RunStats],
    *,
    policy: str = "default",
    cooldown: timedelta = timedelta(0),
    now: datetime,
) -> list[str]:
    """Return ``names`` in dispatch order for ``policy``.

    ``default`` keeps the input order. ``lru`` and ``fail-first`` sort by
    descending score; equal scores fall back to the application name so the
    order is reproducible. Cooldown only ever lowers a score.
    """
    if policy not in SCHEDULE_POLICIES:
        raise SchedulingError(
            f"Unknown schedule {policy!r} (expected one of: {', '.join(SCHEDULE_POLICIES)})"
        )
    if policy == "default":
        return list(names)

    scored = [
        (_score(stats.get(name), policy=policy, cooldown=cooldown, now=now), name)  # type: ignore[arg-type]
        for name in names
    ]
    scored.sort(key=lambda item: (-item[0], item[1]))
    return [name for _, name in scored]


def is_due(stats: RunStats | None, *, now: datetime, check_interval: timedelta) -> bool:
    if stats is None or stats.last_attempt is None:
        return True
    return now - stats.last_attempt >= check_interval
