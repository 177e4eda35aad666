"""Competition boundary computation."""

from __future__ import annotations

import random
from datetime import UTC, datetime, time, timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from launchpad_indexer.storage.repos import CompetitionDTO


def next_utc_midnight(now: datetime) -> datetime:
    """Midnight (UTC) at the start of the day after `now`."""
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    tomorrow = now.astimezone(UTC).date() + timedelta(days=1)
    return datetime.combine(tomorrow, time.min, tzinfo=UTC)


def random_jitter(rng: random.Random, *, min_minutes: int, max_minutes: int) -> timedelta:
    """Uniform whole-minute offset in [min_minutes, max_minutes]."""
    if min_minutes < 0 or max_minutes < min_minutes:
        raise ValueError("jitter bounds must satisfy 0 <= min <= max")
    return timedelta(minutes=rng.randint(min_minutes, max_minutes))


def next_competition_boundary(
    now: datetime,
    latest: CompetitionDTO | None,
    *,
    interval_days: int,
    jitter: timedelta,
) -> datetime:
    """When the next competition should start.

    Tomorrow's midnight plus `jitter` if there is no competition yet, the
    latest one is already completed, or `interval_days` have passed since it
    started. Otherwise `interval_days` after the latest start, plus `jitter`.
    """
    if interval_days < 1:
        raise ValueError("interval_days must be >= 1")

    if latest is None or latest.is_completed:
        return next_utc_midnight(now) + jitter

    due = datetime.fromtimestamp(latest.timestamp_start, UTC) + timedelta(days=interval_days)
    if now >= due:
        return next_utc_midnight(now) + jitter
    return due + jitter
