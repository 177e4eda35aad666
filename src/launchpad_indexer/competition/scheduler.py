"""Competition scheduler: rolls competitions over on-chain.

The scheduler never writes competition rows. It reads what the indexer has
materialized, submits `startNewCompetition` and then
`setWinnerByCompetitionId` for the competition being closed, and waits for
the indexer to observe the resulting events.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from web3 import Web3
from web3.exceptions import Web3Exception

from launchpad_indexer.chain.client import ChainClientError, TransactionRevertedError
from launchpad_indexer.chain.events import FACTORY_FUNCTION_ABIS
from launchpad_indexer.competition.schedule import next_competition_boundary, random_jitter
from launchpad_indexer.storage.repos import CompetitionDTO, CompetitionRepository, TokenRepository

if TYPE_CHECKING:
    from launchpad_indexer.chain.client import ChainClient
    from launchpad_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL_SECONDS = 60.0
DEFAULT_OBSERVE_POLL_SECONDS = 5.0

SUBMISSION_ERRORS: tuple[type[BaseException], ...] = (ChainClientError, Web3Exception, OSError, TimeoutError)


class SubmissionError(Exception):
    """A competition transaction could not be confirmed within the retry budget."""


class SubmissionRevertedError(SubmissionError):
    """A competition transaction was mined and reverted."""


class SchedulerState(str, Enum):
    """Competition scheduler states."""

    COMPUTING = "computing"
    WAITING = "waiting"
    CHECKING_THRESHOLD = "checking_threshold"
    SUBMITTING = "submitting"
    STOPPED = "stopped"


@dataclass(frozen=True)
class SchedulerConfig:
    """Competition scheduler tuning."""

    interval_days: int = 7
    collateral_threshold: int = 0
    check_interval_seconds: float = DEFAULT_CHECK_INTERVAL_SECONDS
    jitter_min_minutes: int = 1
    jitter_max_minutes: int = 59
    submit_max_attempts: int = 3
    submit_retry_delay_seconds: float = 15.0
    confirmation_timeout_seconds: float = 300.0
    observe_timeout_seconds: float = 600.0
    observe_poll_seconds: float = DEFAULT_OBSERVE_POLL_SECONDS
    dry_run: bool = False


@dataclass
class SchedulerStats:
    """Statistics for the competition scheduler."""

    checks: int = 0
    deferrals: int = 0
    competitions_started: int = 0
    winners_submitted: int = 0
    submission_failures: int = 0
    last_error: str | None = None


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CompetitionScheduler:
    """Timer loop that starts a new competition when one is due.

    Example:
        ```python
        scheduler = CompetitionScheduler(
            db, chain, factory_address="0x...", private_key=key, config=SchedulerConfig()
        )
        await scheduler.run(stop_event)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        chain: ChainClient,
        *,
        factory_address: str,
        private_key: str | None,
        config: SchedulerConfig | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = db
        self._chain = chain
        self._factory = factory_address.lower()
        self._private_key = private_key
        self._config = config or SchedulerConfig()
        self._rng = rng or random.Random()
        self._clock = clock

        if not self._config.dry_run and not private_key:
            raise ValueError("private_key is required unless dry_run is enabled")

        self._state = SchedulerState.COMPUTING
        self._stats = SchedulerStats()
        self._next_boundary: datetime | None = None
        # Latest competition id the boundary was computed from.
        self._boundary_basis: int | None = None
        # Broadcast transactions whose receipt has not been seen, keyed by call.
        self._in_flight: dict[str, str] = {}
        # Latest competition id at the last confirmed start; no rollover until the indexer moves past it.
        self._awaiting_after: int | None = None
        self._winners_settled: set[int] = set()

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def stats(self) -> SchedulerStats:
        return self._stats

    @property
    def next_boundary(self) -> datetime | None:
        return self._next_boundary

    async def _latest_competition(self) -> CompetitionDTO | None:
        async with self._db.get_async_session() as session:
            return await CompetitionRepository(session).get_latest(self._factory)

    async def compute_next_boundary(self) -> datetime:
        self._state = SchedulerState.COMPUTING
        latest = await self._latest_competition()
        jitter = random_jitter(
            self._rng,
            min_minutes=self._config.jitter_min_minutes,
            max_minutes=self._config.jitter_max_minutes,
        )
        boundary = next_competition_boundary(
            self._clock(),
            latest,
            interval_days=self._config.interval_days,
            jitter=jitter,
        )
        self._next_boundary = boundary
        self._boundary_basis = latest.competition_id if latest else None
        logger.info(
            "Next competition for %s due at %s (latest=%s)",
            self._factory,
            boundary.isoformat(),
            latest.competition_id if latest else None,
        )
        return boundary

    async def _tokens_at_threshold(self, open_competition: CompetitionDTO | None) -> list[tuple[str, int]]:
        competition_pk = open_competition.id if open_competition else None
        async with self._db.get_async_session() as session:
            tokens = await TokenRepository(session).list_by_competition(self._factory, competition_pk)

        qualified: list[tuple[str, int]] = []
        for token in tokens:
            collateral = int(
                await self._chain.call_view(
                    self._factory,
                    FACTORY_FUNCTION_ABIS,
                    "collateral",
                    Web3.to_checksum_address(token.address),
                )
            )
            if collateral >= self._config.collateral_threshold:
                qualified.append((token.address, collateral))
        logger.debug(
            "%d/%d tokens of %s reached collateral threshold %d",
            len(qualified),
            len(tokens),
            self._factory,
            self._config.collateral_threshold,
        )
        return qualified

    async def _is_dropped(self, tx_hash: str) -> bool:
        try:
            return await self._chain.get_transaction(tx_hash) is None
        except SUBMISSION_ERRORS as e:
            logger.warning("Could not look up pending tx %s: %s", tx_hash, e)
            return False

    async def _submit(self, function_name: str, args: list[Any]) -> str | None:
        """Send one transaction and wait until it is mined.

        A broadcast transaction is not sent again while its outcome is
        unknown: receipt timeouts keep polling the same hash, also on later
        checks. A new transaction is built only when the send itself failed or
        the node no longer knows the previous hash.

        Returns the transaction hash, or None in dry-run mode.

        Raises:
            SubmissionRevertedError: The transaction was mined and reverted.
            SubmissionError: No receipt within the retry budget.
        """
        if self._config.dry_run:
            logger.info("DRY RUN: would call %s%s on %s", function_name, tuple(args), self._factory)
            return None

        assert self._private_key is not None
        key = f"{function_name}{tuple(args)}"
        attempts = self._config.submit_max_attempts
        last_error: BaseException | None = None
        for attempt in range(1, attempts + 1):
            tx_hash = self._in_flight.get(key)
            try:
                if tx_hash is None:
                    tx_hash = await self._chain.submit_contract_call(
                        self._factory,
                        FACTORY_FUNCTION_ABIS,
                        function_name,
                        args,
                        private_key=self._private_key,
                    )
                    self._in_flight[key] = tx_hash
                else:
                    logger.info("Waiting for pending %s on %s: tx=%s", function_name, self._factory, tx_hash)
                await self._chain.wait_for_receipt(
                    tx_hash,
                    timeout_seconds=self._config.confirmation_timeout_seconds,
                )
            except TransactionRevertedError as e:
                self._in_flight.pop(key, None)
                self._stats.submission_failures += 1
                raise SubmissionRevertedError(f"{function_name} reverted (tx {tx_hash})") from e
            except SUBMISSION_ERRORS as e:
                last_error = e
                self._stats.submission_failures += 1
                logger.warning(
                    "Submitting %s failed (attempt %d/%d, tx=%s): %s",
                    function_name,
                    attempt,
                    attempts,
                    tx_hash,
                    e,
                )
                if key in self._in_flight and await self._is_dropped(self._in_flight[key]):
                    logger.warning("Pending %s tx %s was dropped; it will be rebuilt", function_name, tx_hash)
                    del self._in_flight[key]
                if attempt < attempts:
                    await asyncio.sleep(self._config.submit_retry_delay_seconds)
                continue

            self._in_flight.pop(key, None)
            logger.info("Confirmed %s on %s: tx=%s", function_name, self._factory, tx_hash)
            return tx_hash

        raise SubmissionError(f"{function_name} failed after {attempts} attempts: {last_error}")

    async def _wait_for_competition(self, after_id: int) -> bool:
        """Poll until the indexer has stored a competition newer than `after_id`."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.observe_timeout_seconds
        while True:
            latest = await self._latest_competition()
            if latest is not None and latest.competition_id > after_id:
                logger.info("Indexer observed competition %d of %s", latest.competition_id, self._factory)
                return True
            if loop.time() >= deadline:
                logger.warning(
                    "Competition after %d of %s not indexed within %.0fs",
                    after_id,
                    self._factory,
                    self._config.observe_timeout_seconds,
                )
                return False
            await asyncio.sleep(self._config.observe_poll_seconds)

    async def _closed_without_winner(self, latest: CompetitionDTO | None) -> int | None:
        """Id of the competition closed by the latest start if it still lacks a winner."""
        if latest is None or latest.is_completed or latest.competition_id <= 1:
            return None
        async with self._db.get_async_session() as session:
            previous = await CompetitionRepository(session).get_by_competition_id(
                self._factory, latest.competition_id - 1
            )
        if previous is None or not previous.is_completed or previous.winner_token_id is not None:
            return None
        if previous.competition_id in self._winners_settled:
            return None
        return previous.competition_id

    async def _submit_winner(self, competition_id: int) -> None:
        try:
            await self._submit("setWinnerByCompetitionId", [competition_id])
        except SubmissionRevertedError as e:
            # The factory rejects a second winner for the same competition.
            logger.warning("Winner for competition %d of %s not set: %s", competition_id, self._factory, e)
            self._winners_settled.add(competition_id)
            return
        self._winners_settled.add(competition_id)
        self._stats.winners_submitted += 1

    async def tick(self) -> None:
        """One scheduler check.

        Raises:
            SubmissionError: A transaction could not be confirmed; the
                rollover is retried on a later check.
        """
        self._stats.checks += 1
        latest = await self._latest_competition()

        if self._awaiting_after is not None:
            if latest is None or latest.competition_id <= self._awaiting_after:
                self._state = SchedulerState.WAITING
                logger.info(
                    "Competition after %d of %s not indexed yet; holding rollover",
                    self._awaiting_after,
                    self._factory,
                )
                return
            self._awaiting_after = None
            self._next_boundary = None

        pending_winner = await self._closed_without_winner(latest)
        if pending_winner is not None:
            self._state = SchedulerState.SUBMITTING
            logger.info("Competition %d of %s has no winner yet; submitting it", pending_winner, self._factory)
            await self._submit_winner(pending_winner)

        latest_id = latest.competition_id if latest else None
        if self._next_boundary is not None and latest_id != self._boundary_basis:
            # A competition started since the boundary was computed.
            self._in_flight.pop("startNewCompetition()", None)
            self._next_boundary = None
        if self._next_boundary is None:
            await self.compute_next_boundary()
        assert self._next_boundary is not None

        if self._clock() < self._next_boundary:
            self._state = SchedulerState.WAITING
            return

        self._state = SchedulerState.CHECKING_THRESHOLD
        open_competition = latest if latest is not None and not latest.is_completed else None
        qualified = await self._tokens_at_threshold(open_competition)
        if not qualified:
            self._stats.deferrals += 1
            self._state = SchedulerState.WAITING
            logger.info(
                "No token of %s reached collateral threshold %d; deferring competition rollover",
                self._factory,
                self._config.collateral_threshold,
            )
            return

        self._state = SchedulerState.SUBMITTING
        logger.info(
            "Starting new competition on %s (%d qualifying tokens, closing %s)",
            self._factory,
            len(qualified),
            open_competition.competition_id if open_competition else None,
        )
        await self._submit("startNewCompetition", [])
        self._stats.competitions_started += 1
        self._next_boundary = None
        if not self._config.dry_run:
            self._awaiting_after = latest.competition_id if latest else 0

        if open_competition is not None:
            await self._submit_winner(open_competition.competition_id)

        if self._awaiting_after is not None and await self._wait_for_competition(self._awaiting_after):
            self._awaiting_after = None
        self._state = SchedulerState.WAITING

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Check every `check_interval_seconds` until `stop_event` is set."""
        stop_event = stop_event or asyncio.Event()
        logger.info("Competition scheduler started for %s", self._factory)

        while not stop_event.is_set():
            try:
                await self.tick()
            except SubmissionError as e:
                self._stats.last_error = str(e)
                logger.error("Competition rollover for %s deferred: %s", self._factory, e)
            except Exception as e:
                self._stats.last_error = str(e)
                logger.error("Competition scheduler check for %s failed: %s", self._factory, e)

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=self._config.check_interval_seconds)

        self._state = SchedulerState.STOPPED
        logger.info("Competition scheduler stopped for %s", self._factory)
