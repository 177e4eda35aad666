"""Indexer - sweep planning, log fetching, ordering and event application."""

from launchpad_indexer.indexer.fetcher import EventFetcher, FetchedLog
from launchpad_indexer.indexer.merger import merge_events
from launchpad_indexer.indexer.metadata import MetadataFetcher
from launchpad_indexer.indexer.planner import BlockRange, SweepPlan, plan_sweep
from launchpad_indexer.indexer.processor import (
    EventProcessor,
    FatalIndexerError,
    IndexerInconsistencyError,
    exchange_rate,
    market_cap,
)
from launchpad_indexer.indexer.sweep import (
    CursorMovedError,
    SweepCoordinator,
    SweepResult,
    SweepState,
    SweepStats,
)

__all__ = [
    "BlockRange",
    "CursorMovedError",
    "EventFetcher",
    "EventProcessor",
    "FatalIndexerError",
    "FetchedLog",
    "IndexerInconsistencyError",
    "MetadataFetcher",
    "SweepCoordinator",
    "SweepPlan",
    "SweepResult",
    "SweepState",
    "SweepStats",
    "exchange_rate",
    "market_cap",
    "merge_events",
    "plan_sweep",
]
