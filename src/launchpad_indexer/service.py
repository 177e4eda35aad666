"""Service orchestrator for the launchpad indexer.

This module provides the IndexerService class that wires together the chain
client, storage and the long-running loops (one sweep coordinator per tracked
token factory, plus an optional competition scheduler per factory).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from launchpad_indexer.chain.client import ChainClient
from launchpad_indexer.chain.events import EventDecoder
from launchpad_indexer.competition.scheduler import CompetitionScheduler, SchedulerConfig
from launchpad_indexer.config import Settings, get_settings
from launchpad_indexer.indexer.fetcher import EventFetcher
from launchpad_indexer.indexer.metadata import MetadataFetcher
from launchpad_indexer.indexer.processor import EventProcessor
from launchpad_indexer.indexer.sweep import SweepCoordinator
from launchpad_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStats:
    """Statistics for the service."""

    started_at: datetime | None = None
    last_error: str | None = None


class IndexerService:
    """Runs the sweep loops and the competition scheduler concurrently.

    The loops share nothing in memory; they coordinate only through the
    database. The first loop to fail fatally stops the whole service and its
    error is re-raised from `run()`.

    Example:
        ```python
        from launchpad_indexer.config import get_settings
        from launchpad_indexer.service import IndexerService

        service = IndexerService(get_settings())
        await service.run()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        run_indexer: bool = True,
        run_scheduler: bool | None = None,
        dry_run: bool | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            run_indexer: Start one sweep loop per configured source.
            run_scheduler: Start the competition scheduler. Defaults to
                settings.competition.enabled.
            dry_run: Log competition transactions instead of sending them.
                Overrides settings.dry_run.
        """
        self._settings = settings or get_settings()
        self._run_indexer = run_indexer
        self._run_scheduler = (
            run_scheduler if run_scheduler is not None else self._settings.competition.enabled
        )
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run

        self._state = ServiceState.STOPPED
        self._stats = ServiceStats()

        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._chain: ChainClient | None = None
        self._metadata: MetadataFetcher | None = None
        self._coordinators: list[SweepCoordinator] = []
        self._schedulers: list[CompetitionScheduler] = []

        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def stats(self) -> ServiceStats:
        return self._stats

    @property
    def coordinators(self) -> list[SweepCoordinator]:
        return list(self._coordinators)

    @property
    def schedulers(self) -> list[CompetitionScheduler]:
        return list(self._schedulers)

    async def start(self) -> None:
        """Initialize components and start the loops.

        Raises:
            RuntimeError: If the service is already running.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting indexer service...")

        try:
            self._initialize_components()
            if self._chain is not None and not await self._chain.health_check():
                logger.warning("Chain RPC is not answering; loops will retry with backoff")
            self._start_loops()
            self._stats.started_at = datetime.now(UTC)
            self._state = ServiceState.RUNNING
            logger.info(
                "Indexer service started (%d sweep loops, %d schedulers)",
                len(self._coordinators),
                len(self._schedulers),
            )
        except Exception as e:
            self._state = ServiceState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start indexer service: %s", e)
            await self._cleanup()
            raise

    def _initialize_components(self) -> None:
        settings = self._settings

        if settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        logger.debug("Initializing database manager...")
        self._db_manager = DatabaseManager.from_settings(settings.database)

        if not settings.chain.rpc_url:
            raise ValueError("CHAIN_RPC_URL is required")
        logger.debug("Initializing chain client...")
        self._chain = ChainClient(
            settings.chain.rpc_url,
            fallback_rpc_url=settings.chain.fallback_rpc_url,
            redis=self._redis,
            chain_id=settings.chain.chain_id,
            cache_ttl_seconds=settings.redis.cache_ttl_seconds,
            max_requests_per_second=settings.chain.max_requests_per_second,
            max_retries=settings.chain.max_retries,
            retry_delay_seconds=settings.chain.retry_delay_seconds,
            request_timeout_seconds=settings.chain.request_timeout_seconds,
        )

        sources = settings.indexer.sources

        if self._run_indexer:
            self._metadata = MetadataFetcher(
                timeout_seconds=settings.metadata.timeout_seconds,
                ipfs_gateway=settings.metadata.ipfs_gateway,
            )
            fetcher = EventFetcher(self._chain, concurrency=settings.indexer.fetch_concurrency)
            decoder = EventDecoder()
            processor = EventProcessor(
                self._chain,
                self._metadata,
                token_decimals=settings.indexer.token_decimals,
            )
            self._coordinators = [
                SweepCoordinator(
                    self._db_manager,
                    self._chain,
                    fetcher,
                    decoder,
                    processor,
                    source=source,
                    max_window_blocks=settings.indexer.max_window_blocks,
                    max_sub_range_blocks=settings.indexer.max_sub_range_blocks,
                    idle_sleep_seconds=settings.indexer.idle_sleep_seconds,
                    error_backoff_seconds=settings.indexer.error_backoff_seconds,
                )
                for source in sources
            ]

        if self._run_scheduler:
            competition = settings.competition
            private_key = (
                competition.manager_private_key.get_secret_value() if competition.manager_private_key else None
            )
            config = SchedulerConfig(
                interval_days=competition.interval_days,
                collateral_threshold=competition.collateral_threshold,
                check_interval_seconds=competition.check_interval_seconds,
                jitter_min_minutes=competition.jitter_min_minutes,
                jitter_max_minutes=competition.jitter_max_minutes,
                submit_max_attempts=competition.submit_max_attempts,
                submit_retry_delay_seconds=competition.submit_retry_delay_seconds,
                confirmation_timeout_seconds=competition.confirmation_timeout_seconds,
                observe_timeout_seconds=competition.observe_timeout_seconds,
                dry_run=self._dry_run,
            )
            self._schedulers = [
                CompetitionScheduler(
                    self._db_manager,
                    self._chain,
                    factory_address=source.address,
                    private_key=private_key,
                    config=config,
                )
                for source in sources
            ]

    def _start_loops(self) -> None:
        assert self._stop_event is not None
        for coordinator in self._coordinators:
            self._tasks.append(
                asyncio.create_task(
                    coordinator.run(self._stop_event),
                    name=f"sweep:{coordinator.source_address}",
                )
            )
        for scheduler in self._schedulers:
            self._tasks.append(asyncio.create_task(scheduler.run(self._stop_event), name="competition-scheduler"))

    def request_stop(self) -> None:
        """Ask every loop to finish its current step and exit."""
        if self._stop_event is not None:
            self._stop_event.set()

    async def wait(self) -> None:
        """Block until stop is requested or a loop exits.

        Raises:
            Exception: The error of the first loop that failed.
        """
        if self._stop_event is None:
            raise RuntimeError("Service is not started")

        stop_waiter = asyncio.create_task(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait([*self._tasks, stop_waiter], return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_waiter.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stop_waiter

        for task in done:
            if task is stop_waiter or task.cancelled():
                continue
            error = task.exception()
            if error is not None:
                self._state = ServiceState.ERROR
                self._stats.last_error = str(error)
                raise error

    async def stop(self) -> None:
        """Stop all loops and release resources."""
        if self._state == ServiceState.STOPPED:
            return

        failed = self._state == ServiceState.ERROR
        self._state = ServiceState.STOPPING
        logger.info("Stopping indexer service...")

        self.request_stop()
        for task in self._tasks:
            if not task.done():
                task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Loop %s ended with error: %s", task.get_name(), e)
        self._tasks = []

        await self._cleanup()
        self._state = ServiceState.STOPPED
        logger.info("Indexer service stopped%s", " after failure" if failed else "")

    async def _cleanup(self) -> None:
        if self._metadata:
            await self._metadata.aclose()
            self._metadata = None

        if self._chain:
            await self._chain.aclose()
            self._chain = None

        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the service and run until stopped or a loop fails."""
        await self.start()
        try:
            await self.wait()
        finally:
            await self.stop()

    async def __aenter__(self) -> IndexerService:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
