"""Sweep coordinator: plan, fetch, merge and apply one block window at a time.

Every sweep is one database transaction. Entity mutations and the cursor
advance commit together or not at all, so the loop can crash and restart at
any point without double-applying or skipping events.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from launchpad_indexer.indexer.merger import merge_events
from launchpad_indexer.indexer.planner import BlockRange, plan_sweep
from launchpad_indexer.indexer.processor import FatalIndexerError
from launchpad_indexer.storage.repos import CursorDTO, CursorRepository

if TYPE_CHECKING:
    from launchpad_indexer.chain.client import ChainClient
    from launchpad_indexer.chain.events import EventDecoder, EventKind
    from launchpad_indexer.config import SourceConfig
    from launchpad_indexer.indexer.fetcher import EventFetcher
    from launchpad_indexer.indexer.processor import EventProcessor
    from launchpad_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_MAX_WINDOW_BLOCKS = 1000
DEFAULT_MAX_SUB_RANGE_BLOCKS = 250
DEFAULT_IDLE_SLEEP_SECONDS = 5.0
DEFAULT_ERROR_BACKOFF_SECONDS = 30.0


class SweepState(str, Enum):
    """Sweep coordinator states."""

    IDLE = "idle"
    PLANNING = "planning"
    FETCHING = "fetching"
    MERGING = "merging"
    APPLYING = "applying"
    COMMITTED = "committed"
    BACKOFF = "backoff"
    STOPPED = "stopped"
    FAILED = "failed"


class CursorMovedError(RuntimeError):
    """The cursor changed between planning and applying a sweep."""


@dataclass
class SweepResult:
    """Outcome of one committed sweep."""

    source_address: str
    window: BlockRange
    chain_height: int
    event_counts: Counter[EventKind] = field(default_factory=Counter)

    @property
    def caught_up(self) -> bool:
        return self.window.to_block >= self.chain_height


@dataclass
class SweepStats:
    """Statistics for a sweep coordinator."""

    started_at: datetime | None = None
    sweeps_committed: int = 0
    blocks_indexed: int = 0
    events_applied: int = 0
    errors: int = 0
    last_indexed_block: int | None = None
    last_commit_at: datetime | None = None
    last_error: str | None = None


def _format_counts(counts: Counter[EventKind]) -> str:
    if not counts:
        return "no events"
    return ", ".join(f"{kind.value}={count}" for kind, count in sorted(counts.items(), key=lambda kv: kv[0].value))


class SweepCoordinator:
    """Indexes one token factory deployment.

    Example:
        ```python
        coordinator = SweepCoordinator(
            db, chain, fetcher, decoder, processor, source=SourceConfig("0x...", 1_000_000)
        )
        await coordinator.run(stop_event)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        chain: ChainClient,
        fetcher: EventFetcher,
        decoder: EventDecoder,
        processor: EventProcessor,
        *,
        source: SourceConfig,
        max_window_blocks: int = DEFAULT_MAX_WINDOW_BLOCKS,
        max_sub_range_blocks: int = DEFAULT_MAX_SUB_RANGE_BLOCKS,
        idle_sleep_seconds: float = DEFAULT_IDLE_SLEEP_SECONDS,
        error_backoff_seconds: float = DEFAULT_ERROR_BACKOFF_SECONDS,
    ) -> None:
        self._db = db
        self._chain = chain
        self._fetcher = fetcher
        self._decoder = decoder
        self._processor = processor
        self._source = source
        self._max_window_blocks = max_window_blocks
        self._max_sub_range_blocks = max_sub_range_blocks
        self._idle_sleep = idle_sleep_seconds
        self._error_backoff = error_backoff_seconds

        self._state = SweepState.IDLE
        self._stats = SweepStats()

    @property
    def state(self) -> SweepState:
        return self._state

    @property
    def stats(self) -> SweepStats:
        return self._stats

    @property
    def source_address(self) -> str:
        return self._source.address

    async def bootstrap(self) -> CursorDTO:
        """Ensure the cursor row exists so the configured start block is indexed first."""
        async with self._db.get_async_session() as session:
            cursor = await CursorRepository(session).bootstrap(
                self._source.address, start_block=self._source.start_block
            )
        self._stats.last_indexed_block = cursor.last_indexed_block
        return cursor

    async def sweep_once(self) -> SweepResult | None:
        """Run one sweep.

        Returns:
            The committed sweep, or None when there is no new block to index.

        Raises:
            FatalIndexerError: The event stream is inconsistent with stored state.
            Exception: Any other failure; nothing was committed.
        """
        source = self._source.address

        self._state = SweepState.PLANNING
        async with self._db.get_async_session() as session:
            cursor = await CursorRepository(session).get(source)
        if cursor is None:
            raise FatalIndexerError(f"No cursor for source {source}; bootstrap first")

        height = await self._chain.current_height()
        plan = plan_sweep(
            cursor.last_indexed_block,
            height,
            max_window_blocks=self._max_window_blocks,
            max_sub_range_blocks=self._max_sub_range_blocks,
        )
        if plan is None:
            self._state = SweepState.IDLE
            return None

        self._state = SweepState.FETCHING
        batches = await self._fetcher.fetch(source, plan.sub_ranges)

        self._state = SweepState.MERGING
        events = merge_events(batches, self._decoder)

        self._state = SweepState.APPLYING
        async with self._db.get_async_session() as session:
            cursors = CursorRepository(session)
            current = await cursors.get(source)
            if current is None or current.last_indexed_block != cursor.last_indexed_block:
                raise CursorMovedError(
                    f"Cursor for {source} moved from {cursor.last_indexed_block} to "
                    f"{current.last_indexed_block if current else None} during sweep"
                )
            counts = await self._processor.apply(session, events)
            await cursors.advance(source, block_number=plan.window.to_block)

        self._state = SweepState.COMMITTED
        result = SweepResult(
            source_address=source,
            window=plan.window,
            chain_height=height,
            event_counts=counts,
        )
        self._stats.sweeps_committed += 1
        self._stats.blocks_indexed += plan.window.size
        self._stats.events_applied += sum(counts.values())
        self._stats.last_indexed_block = plan.window.to_block
        self._stats.last_commit_at = datetime.now(UTC)

        logger.info(
            "Indexed %s [%d-%d] (%d blocks, head %d): %s",
            source,
            plan.window.from_block,
            plan.window.to_block,
            plan.window.size,
            height,
            _format_counts(counts),
        )
        return result

    async def _sleep(self, seconds: float, stop_event: asyncio.Event) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Index until `stop_event` is set.

        Transient failures, including those while creating the cursor, roll
        back the sweep, back off and retry from the same cursor.
        `FatalIndexerError` stops the loop and propagates.
        """
        stop_event = stop_event or asyncio.Event()
        self._stats.started_at = datetime.now(UTC)
        bootstrapped = False

        while not stop_event.is_set():
            try:
                if not bootstrapped:
                    await self.bootstrap()
                    bootstrapped = True
                    logger.info(
                        "Sweep loop started for %s at block %s",
                        self._source.address,
                        self._stats.last_indexed_block,
                    )
                result = await self.sweep_once()
            except FatalIndexerError as e:
                self._state = SweepState.FAILED
                self._stats.last_error = str(e)
                logger.critical("Fatal indexer error for %s: %s", self._source.address, e)
                raise
            except Exception as e:
                self._state = SweepState.BACKOFF
                self._stats.errors += 1
                self._stats.last_error = str(e)
                logger.error(
                    "Sweep for %s failed (%s), retrying in %.1fs: %s",
                    self._source.address,
                    type(e).__name__,
                    self._error_backoff,
                    e,
                )
                await self._sleep(self._error_backoff, stop_event)
                continue

            if result is None or result.caught_up:
                self._state = SweepState.IDLE
                await self._sleep(self._idle_sleep, stop_event)

        self._state = SweepState.STOPPED
        logger.info("Sweep loop stopped for %s", self._source.address)
