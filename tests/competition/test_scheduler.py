"""Tests for the competition scheduler."""

import asyncio
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from launchpad_indexer.chain.client import RPCError, TransactionRevertedError
from launchpad_indexer.competition.scheduler import (
    CompetitionScheduler,
    SchedulerConfig,
    SchedulerState,
    SubmissionError,
    SubmissionRevertedError,
)
from launchpad_indexer.storage.database import DatabaseManager
from launchpad_indexer.storage.repos import (
    CompetitionDTO,
    CompetitionRepository,
    TokenDTO,
    TokenRepository,
    UserRepository,
)

FACTORY = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
TOKEN = "0x1111111111111111111111111111111111111111"
CREATOR = "0xcccccccccccccccccccccccccccccccccccccccc"
PRIVATE_KEY = "0x" + "11" * 32

NOW = datetime(2026, 3, 14, 12, 0, tzinfo=UTC)
TOMORROW = datetime(2026, 3, 15, tzinfo=UTC)

CONFIG = SchedulerConfig(
    interval_days=7,
    collateral_threshold=1_000,
    check_interval_seconds=0.0,
    jitter_min_minutes=0,
    jitter_max_minutes=0,
    submit_max_attempts=1,
    submit_retry_delay_seconds=0.0,
    confirmation_timeout_seconds=1.0,
    observe_timeout_seconds=0.0,
    observe_poll_seconds=0.0,
)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock(NOW)


@pytest.fixture
def chain() -> MagicMock:
    client = MagicMock()
    client.call_view = AsyncMock(return_value=5_000)
    client.submit_contract_call = AsyncMock(return_value="0x" + "ab" * 32)
    client.wait_for_receipt = AsyncMock(return_value={"status": 1})
    client.get_transaction = AsyncMock(return_value={"hash": "0x" + "ab" * 32})
    return client


async def seed_open_competition(db: DatabaseManager, *, started: datetime) -> None:
    async with db.get_async_session() as session:
        creator = await UserRepository(session).find_or_create(CREATOR)
        competition = await CompetitionRepository(session).insert(
            CompetitionDTO(
                source_address=FACTORY,
                competition_id=1,
                start_tx_hash="0x" + "01" * 32,
                start_block=10,
                timestamp_start=int(started.timestamp()),
            )
        )
        await TokenRepository(session).insert(
            TokenDTO(
                source_address=FACTORY,
                address=TOKEN,
                creation_tx_hash="0x" + "02" * 32,
                creation_block=11,
                name="Moon",
                symbol="MOON",
                metadata_uri="ipfs://bafy",
                metadata_snapshot=None,
                creator_id=creator.id,
                competition_id=competition.id,
                timestamp=int(started.timestamp()),
            )
        )


async def index_rollover(db: DatabaseManager, *, at: datetime) -> None:
    """Store what the indexer writes once competition 2 has started."""
    timestamp = int(at.timestamp())
    async with db.get_async_session() as session:
        repo = CompetitionRepository(session)
        previous = await repo.get_by_competition_id(FACTORY, 1)
        assert previous is not None and previous.id is not None
        await repo.complete(previous.id, timestamp_end=timestamp)
        await repo.insert(
            CompetitionDTO(
                source_address=FACTORY,
                competition_id=2,
                start_tx_hash="0x" + "03" * 32,
                start_block=20,
                timestamp_start=timestamp,
            )
        )


def make_scheduler(
    db: DatabaseManager, chain: MagicMock, clock: Clock, *, config: SchedulerConfig = CONFIG
) -> CompetitionScheduler:
    return CompetitionScheduler(
        db,
        chain,
        factory_address=FACTORY,
        private_key=PRIVATE_KEY,
        config=config,
        clock=clock,
    )


def submitted_functions(chain: MagicMock) -> list[tuple[str, list]]:
    return [(c.args[2], c.args[3]) for c in chain.submit_contract_call.await_args_list]


class TestCompetitionScheduler:
    @pytest.mark.asyncio
    async def test_requires_key_unless_dry_run(self, db_manager: DatabaseManager, chain: MagicMock) -> None:
        with pytest.raises(ValueError):
            CompetitionScheduler(db_manager, chain, factory_address=FACTORY, private_key=None, config=CONFIG)

        scheduler = CompetitionScheduler(
            db_manager,
            chain,
            factory_address=FACTORY,
            private_key=None,
            config=SchedulerConfig(dry_run=True),
        )
        assert scheduler.state is SchedulerState.COMPUTING

    @pytest.mark.asyncio
    async def test_first_competition_is_due_tomorrow(
        self, db_manager: DatabaseManager, chain: MagicMock, clock: Clock
    ) -> None:
        scheduler = make_scheduler(db_manager, chain, clock)

        boundary = await scheduler.compute_next_boundary()

        assert boundary == TOMORROW

    @pytest.mark.asyncio
    async def test_waits_before_boundary(self, db_manager: DatabaseManager, chain: MagicMock, clock: Clock) -> None:
        scheduler = make_scheduler(db_manager, chain, clock)

        await scheduler.tick()

        assert scheduler.state is SchedulerState.WAITING
        assert scheduler.next_boundary == TOMORROW
        chain.submit_contract_call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_defers_when_no_token_reaches_threshold(
        self, db_manager: DatabaseManager, chain: MagicMock, clock: Clock
    ) -> None:
        await seed_open_competition(db_manager, started=NOW - timedelta(days=8))
        chain.call_view.return_value = 999
        scheduler = make_scheduler(db_manager, chain, clock)
        await scheduler.tick()

        clock.now = TOMORROW + timedelta(minutes=1)
        await scheduler.tick()

        assert scheduler.stats.deferrals == 1
        assert scheduler.state is SchedulerState.WAITING
        chain.call_view.assert_awaited_once()
        assert chain.call_view.await_args.args[2] == "collateral"
        chain.submit_contract_call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rolls_over_and_sets_winner(
        self, db_manager: DatabaseManager, chain: MagicMock, clock: Clock
    ) -> None:
        await seed_open_competition(db_manager, started=NOW - timedelta(days=8))
        scheduler = make_scheduler(db_manager, chain, clock)
        await scheduler.tick()

        clock.now = TOMORROW + timedelta(minutes=1)
        await scheduler.tick()

        assert submitted_functions(chain) == [
            ("startNewCompetition", []),
            ("setWinnerByCompetitionId", [1]),
        ]
        assert chain.submit_contract_call.await_args.kwargs["private_key"] == PRIVATE_KEY
        assert chain.wait_for_receipt.await_count == 2
        assert scheduler.stats.competitions_started == 1
        assert scheduler.stats.winners_submitted == 1
        assert scheduler.next_boundary is None

    @pytest.mark.asyncio
    async def test_first_competition_waits_for_tokens(
        self, db_manager: DatabaseManager, chain: MagicMock, clock: Clock
    ) -> None:
        scheduler = make_scheduler(db_manager, chain, clock)
        await scheduler.tick()
        clock.now = TOMORROW + timedelta(minutes=1)

        await scheduler.tick()

        assert scheduler.stats.deferrals == 1
        chain.submit_contract_call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_winner_is_retried_without_restarting(
        self, db_manager: DatabaseManager, chain: MagicMock, clock: Clock
    ) -> None:
        await seed_open_competition(db_manager, started=NOW - timedelta(days=8))
        chain.submit_contract_call.side_effect = ["0x" + "aa" * 32, RPCError("nonce too low"), "0x" + "bb" * 32]
        scheduler = make_scheduler(db_manager, chain, clock)
        await scheduler.tick()
        clock.now = TOMORROW + timedelta(minutes=1)

        with pytest.raises(SubmissionError):
            await scheduler.tick()
        await scheduler.tick()
        assert len(submitted_functions(chain)) == 2

        await index_rollover(db_manager, at=clock.now)
        await scheduler.tick()

        assert submitted_functions(chain) == [
            ("startNewCompetition", []),
            ("setWinnerByCompetitionId", [1]),
            ("setWinnerByCompetitionId", [1]),
        ]
        assert scheduler.stats.competitions_started == 1
        assert scheduler.stats.winners_submitted == 1
        assert scheduler.stats.submission_failures == 1

    @pytest.mark.asyncio
    async def test_receipt_timeout_polls_same_transaction(
        self, db_manager: DatabaseManager, chain: MagicMock, clock: Clock
    ) -> None:
        await seed_open_competition(db_manager, started=NOW - timedelta(days=8))
        chain.wait_for_receipt.side_effect = [RPCError("not mined within 300s"), {"status": 1}, {"status": 1}]
        config = replace(CONFIG, submit_max_attempts=3)
        scheduler = make_scheduler(db_manager, chain, clock, config=config)
        await scheduler.tick()
        clock.now = TOMORROW + timedelta(minutes=1)

        await scheduler.tick()

        assert submitted_functions(chain) == [
            ("startNewCompetition", []),
            ("setWinnerByCompetitionId", [1]),
        ]
        waited = [c.args[0] for c in chain.wait_for_receipt.await_args_list]
        assert waited[0] == waited[1] == "0x" + "ab" * 32
        chain.get_transaction.assert_awaited_once_with("0x" + "ab" * 32)
        assert scheduler.stats.competitions_started == 1
        assert scheduler.stats.submission_failures == 1

    @pytest.mark.asyncio
    async def test_unconfirmed_start_is_not_resent_on_next_check(
        self, db_manager: DatabaseManager, chain: MagicMock, clock: Clock
    ) -> None:
        await seed_open_competition(db_manager, started=NOW - timedelta(days=8))
        chain.wait_for_receipt.side_effect = [RPCError("not mined within 300s"), {"status": 1}, {"status": 1}]
        scheduler = make_scheduler(db_manager, chain, clock)
        await scheduler.tick()
        clock.now = TOMORROW + timedelta(minutes=1)

        with pytest.raises(SubmissionError):
            await scheduler.tick()
        await scheduler.tick()

        assert submitted_functions(chain) == [
            ("startNewCompetition", []),
            ("setWinnerByCompetitionId", [1]),
        ]
        assert chain.wait_for_receipt.await_count == 3
        assert scheduler.stats.competitions_started == 1

    @pytest.mark.asyncio
    async def test_dropped_transaction_is_sent_again(
        self, db_manager: DatabaseManager, chain: MagicMock, clock: Clock
    ) -> None:
        await seed_open_competition(db_manager, started=NOW - timedelta(days=8))
        hashes = ["0x" + "a1" * 32, "0x" + "a2" * 32, "0x" + "a3" * 32]
        chain.submit_contract_call.side_effect = hashes
        chain.wait_for_receipt.side_effect = [RPCError("not mined within 300s"), {"status": 1}, {"status": 1}]
        chain.get_transaction.return_value = None
        config = replace(CONFIG, submit_max_attempts=2)
        scheduler = make_scheduler(db_manager, chain, clock, config=config)
        await scheduler.tick()
        clock.now = TOMORROW + timedelta(minutes=1)

        await scheduler.tick()

        assert submitted_functions(chain) == [
            ("startNewCompetition", []),
            ("startNewCompetition", []),
            ("setWinnerByCompetitionId", [1]),
        ]
        assert [c.args[0] for c in chain.wait_for_receipt.await_args_list] == hashes

    @pytest.mark.asyncio
    async def test_reverted_start_is_not_retried(
        self, db_manager: DatabaseManager, chain: MagicMock, clock: Clock
    ) -> None:
        await seed_open_competition(db_manager, started=NOW - timedelta(days=8))
        chain.wait_for_receipt.side_effect = TransactionRevertedError("Transaction reverted")
        config = replace(CONFIG, submit_max_attempts=3)
        scheduler = make_scheduler(db_manager, chain, clock, config=config)
        await scheduler.tick()
        clock.now = TOMORROW + timedelta(minutes=1)

        with pytest.raises(SubmissionRevertedError):
            await scheduler.tick()

        assert submitted_functions(chain) == [("startNewCompetition", [])]
        assert scheduler.stats.competitions_started == 0

    @pytest.mark.asyncio
    async def test_start_indexed_before_its_receipt_is_not_repeated(
        self, db_manager: DatabaseManager, chain: MagicMock, clock: Clock
    ) -> None:
        await seed_open_competition(db_manager, started=NOW - timedelta(days=8))
        chain.wait_for_receipt.side_effect = [RPCError("not mined within 300s"), {"status": 1}]
        scheduler = make_scheduler(db_manager, chain, clock)
        await scheduler.tick()
        clock.now = TOMORROW + timedelta(minutes=1)
        with pytest.raises(SubmissionError):
            await scheduler.tick()

        await index_rollover(db_manager, at=clock.now)
        await scheduler.tick()

        assert submitted_functions(chain) == [
            ("startNewCompetition", []),
            ("setWinnerByCompetitionId", [1]),
        ]
        assert scheduler.next_boundary is not None and scheduler.next_boundary > clock.now

    @pytest.mark.asyncio
    async def test_winner_missing_after_restart_is_submitted(
        self, db_manager: DatabaseManager, chain: MagicMock, clock: Clock
    ) -> None:
        await seed_open_competition(db_manager, started=NOW - timedelta(days=8))
        await index_rollover(db_manager, at=NOW - timedelta(hours=1))
        scheduler = make_scheduler(db_manager, chain, clock)

        await scheduler.tick()
        await scheduler.tick()

        assert submitted_functions(chain) == [("setWinnerByCompetitionId", [1])]
        assert scheduler.stats.winners_submitted == 1
        assert scheduler.state is SchedulerState.WAITING

    @pytest.mark.asyncio
    async def test_recorded_winner_is_not_submitted_again(
        self, db_manager: DatabaseManager, chain: MagicMock, clock: Clock
    ) -> None:
        await seed_open_competition(db_manager, started=NOW - timedelta(days=8))
        await index_rollover(db_manager, at=NOW - timedelta(hours=1))
        async with db_manager.get_async_session() as session:
            repo = CompetitionRepository(session)
            first = await repo.get_by_competition_id(FACTORY, 1)
            assert first is not None and first.id is not None
            await repo.set_winner(first.id, token_id=1)
        scheduler = make_scheduler(db_manager, chain, clock)

        await scheduler.tick()

        chain.submit_contract_call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reverted_winner_is_not_retried(
        self, db_manager: DatabaseManager, chain: MagicMock, clock: Clock
    ) -> None:
        await seed_open_competition(db_manager, started=NOW - timedelta(days=8))
        await index_rollover(db_manager, at=NOW - timedelta(hours=1))
        chain.wait_for_receipt.side_effect = TransactionRevertedError("Transaction reverted")
        scheduler = make_scheduler(db_manager, chain, clock)

        await scheduler.tick()
        await scheduler.tick()

        assert submitted_functions(chain) == [("setWinnerByCompetitionId", [1])]
        assert scheduler.stats.winners_submitted == 0

    @pytest.mark.asyncio
    async def test_dry_run_submits_nothing(self, db_manager: DatabaseManager, chain: MagicMock, clock: Clock) -> None:
        await seed_open_competition(db_manager, started=NOW - timedelta(days=8))
        config = SchedulerConfig(
            collateral_threshold=0,
            jitter_min_minutes=0,
            jitter_max_minutes=0,
            dry_run=True,
        )
        scheduler = CompetitionScheduler(
            db_manager, chain, factory_address=FACTORY, private_key=None, config=config, clock=clock
        )
        await scheduler.tick()
        clock.now = TOMORROW + timedelta(minutes=1)

        await scheduler.tick()

        chain.submit_contract_call.assert_not_awaited()
        assert scheduler.stats.competitions_started == 1
        assert scheduler.stats.winners_submitted == 1

    @pytest.mark.asyncio
    async def test_run_survives_submission_errors(
        self, db_manager: DatabaseManager, chain: MagicMock, clock: Clock
    ) -> None:
        scheduler = make_scheduler(db_manager, chain, clock)
        stop_event = asyncio.Event()

        async def failing_tick() -> None:
            stop_event.set()
            raise SubmissionError("startNewCompetition failed")

        scheduler.tick = failing_tick  # type: ignore[method-assign]

        await scheduler.run(stop_event)

        assert scheduler.state is SchedulerState.STOPPED
        assert scheduler.stats.last_error == "startNewCompetition failed"
