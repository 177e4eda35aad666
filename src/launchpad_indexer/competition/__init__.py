"""Competition scheduling - boundary computation and on-chain rollover."""

from launchpad_indexer.competition.schedule import (
    next_competition_boundary,
    next_utc_midnight,
    random_jitter,
)
from launchpad_indexer.competition.scheduler import (
    CompetitionScheduler,
    SchedulerConfig,
    SchedulerState,
    SchedulerStats,
    SubmissionError,
)

__all__ = [
    "CompetitionScheduler",
    "SchedulerConfig",
    "SchedulerState",
    "SchedulerStats",
    "SubmissionError",
    "next_competition_boundary",
    "next_utc_midnight",
    "random_jitter",
]
