"""Tests for storage repositories."""

from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from launchpad_indexer.storage.repos import (
    CompetitionDTO,
    CompetitionRepository,
    CursorRepository,
    TokenBalanceRepository,
    TokenDTO,
    TokenRepository,
    TradeDTO,
    TradeRepository,
    UserRepository,
)

FACTORY = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
TOKEN = "0x1111111111111111111111111111111111111111"
CREATOR = "0xCcCCccccCCCCcCCCCCCcCcCccCcCCCcCcccccccC"

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def creator_id(async_session: AsyncSession) -> int:
    user = await UserRepository(async_session).find_or_create(CREATOR)
    return user.id


def make_token(creator_id: int, *, address: str = TOKEN, competition_id: int | None = None) -> TokenDTO:
    return TokenDTO(
        source_address=FACTORY,
        address=address,
        creation_tx_hash="0x" + address[2:].rjust(64, "0"),
        creation_block=100,
        name="Test Token",
        symbol="TT",
        metadata_uri="ipfs://bafy",
        metadata_snapshot={"description": "a token"},
        creator_id=creator_id,
        competition_id=competition_id,
        timestamp=1_700_000_000,
    )


def make_competition(competition_id: int, *, timestamp_start: int = 1_700_000_000) -> CompetitionDTO:
    return CompetitionDTO(
        source_address=FACTORY,
        competition_id=competition_id,
        start_tx_hash="0x" + f"{competition_id:064x}",
        start_block=10 * competition_id,
        timestamp_start=timestamp_start,
    )


# ============================================================================
# Cursor Tests
# ============================================================================


class TestCursorRepository:
    @pytest.mark.asyncio
    async def test_bootstrap_positions_before_start_block(self, async_session: AsyncSession) -> None:
        repo = CursorRepository(async_session)

        cursor = await repo.bootstrap(FACTORY, start_block=500)

        assert cursor.source_address == FACTORY.lower()
        assert cursor.last_indexed_block == 499

    @pytest.mark.asyncio
    async def test_bootstrap_keeps_existing_cursor(self, async_session: AsyncSession) -> None:
        repo = CursorRepository(async_session)
        await repo.bootstrap(FACTORY, start_block=500)
        await repo.advance(FACTORY, block_number=900)

        cursor = await repo.bootstrap(FACTORY, start_block=500)

        assert cursor.last_indexed_block == 900

    @pytest.mark.asyncio
    async def test_bootstrap_rejects_negative_start(self, async_session: AsyncSession) -> None:
        with pytest.raises(ValueError):
            await CursorRepository(async_session).bootstrap(FACTORY, start_block=-1)

    @pytest.mark.asyncio
    async def test_get_is_case_insensitive(self, async_session: AsyncSession) -> None:
        repo = CursorRepository(async_session)
        await repo.bootstrap(FACTORY.lower(), start_block=0)

        cursor = await repo.get(FACTORY.upper().replace("0X", "0x"))

        assert cursor is not None
        assert cursor.last_indexed_block == -1

    @pytest.mark.asyncio
    async def test_advance_without_cursor_fails(self, async_session: AsyncSession) -> None:
        with pytest.raises(LookupError):
            await CursorRepository(async_session).advance(FACTORY, block_number=10)


# ============================================================================
# User Tests
# ============================================================================


class TestUserRepository:
    @pytest.mark.asyncio
    async def test_find_or_create_is_idempotent(self, async_session: AsyncSession) -> None:
        repo = UserRepository(async_session)

        first = await repo.find_or_create(CREATOR)
        second = await repo.find_or_create(CREATOR.lower())

        assert first.id == second.id
        assert first.address == CREATOR.lower()

    @pytest.mark.asyncio
    async def test_get_by_address_not_found(self, async_session: AsyncSession) -> None:
        assert await UserRepository(async_session).get_by_address(CREATOR) is None


# ============================================================================
# Token Tests
# ============================================================================


class TestTokenRepository:
    @pytest.mark.asyncio
    async def test_insert_and_get(self, async_session: AsyncSession, creator_id: int) -> None:
        repo = TokenRepository(async_session)

        inserted = await repo.insert(make_token(creator_id))
        loaded = await repo.get_by_address(TOKEN.upper().replace("0X", "0x"))

        assert inserted.id is not None
        assert loaded is not None
        assert loaded.id == inserted.id
        assert loaded.source_address == FACTORY.lower()
        assert loaded.total_supply == Decimal(0)
        assert loaded.price == Decimal(0)
        assert loaded.is_enabled is True
        assert loaded.is_winner is False
        assert loaded.metadata_snapshot == {"description": "a token"}

    @pytest.mark.asyncio
    async def test_update_aggregates_keeps_uint256_precision(
        self, async_session: AsyncSession, creator_id: int
    ) -> None:
        repo = TokenRepository(async_session)
        token = await repo.insert(make_token(creator_id))
        assert token.id is not None
        huge = Decimal(2**256 - 1)

        await repo.update_aggregates(
            token.id,
            total_supply=huge,
            price=Decimal("1.2345678901"),
            market_cap=Decimal("98765432109876543210.0123456789"),
        )
        async_session.expire_all()
        loaded = await repo.get_by_address(TOKEN)

        assert loaded is not None
        assert loaded.total_supply == huge
        assert loaded.price == Decimal("1.2345678901")
        assert loaded.market_cap == Decimal("98765432109876543210.0123456789")

    @pytest.mark.asyncio
    async def test_mark_winner(self, async_session: AsyncSession, creator_id: int) -> None:
        repo = TokenRepository(async_session)
        token = await repo.insert(make_token(creator_id))
        assert token.id is not None

        await repo.mark_winner(token.id)
        async_session.expire_all()
        loaded = await repo.get_by_address(TOKEN)

        assert loaded is not None
        assert loaded.is_winner is True

    @pytest.mark.asyncio
    async def test_list_by_competition(self, async_session: AsyncSession, creator_id: int) -> None:
        tokens = TokenRepository(async_session)
        competition = await CompetitionRepository(async_session).insert(make_competition(1))
        other = "0x3333333333333333333333333333333333333333"

        await tokens.insert(make_token(creator_id, competition_id=competition.id))
        await tokens.insert(make_token(creator_id, address=other))

        in_competition = await tokens.list_by_competition(FACTORY, competition.id)
        outside = await tokens.list_by_competition(FACTORY, None)

        assert [t.address for t in in_competition] == [TOKEN]
        assert [t.address for t in outside] == [other]


# ============================================================================
# Trade and Balance Tests
# ============================================================================


class TestTradeRepository:
    @pytest.mark.asyncio
    async def test_insert_and_list_in_order(self, async_session: AsyncSession, creator_id: int) -> None:
        token = await TokenRepository(async_session).insert(make_token(creator_id))
        assert token.id is not None
        repo = TradeRepository(async_session)

        for log_index, trade_type in enumerate(("buy", "sell")):
            await repo.insert(
                TradeDTO(
                    tx_hash="0x" + "AB" * 32,
                    log_index=log_index,
                    block_number=200,
                    trade_type=trade_type,
                    user_id=creator_id,
                    token_id=token.id,
                    amount_in=Decimal(100),
                    amount_out=Decimal(50),
                    price=Decimal(2),
                    fee=Decimal(1),
                    timestamp=1_700_000_100,
                )
            )

        trades = await repo.list_by_token(token.id)

        assert [t.trade_type for t in trades] == ["buy", "sell"]
        assert trades[0].tx_hash == "0x" + "ab" * 32


class TestTokenBalanceRepository:
    @pytest.mark.asyncio
    async def test_create_and_set_balance(self, async_session: AsyncSession, creator_id: int) -> None:
        token = await TokenRepository(async_session).insert(make_token(creator_id))
        assert token.id is not None
        repo = TokenBalanceRepository(async_session)

        assert await repo.get(user_id=creator_id, token_id=token.id) is None
        created = await repo.create(user_id=creator_id, token_id=token.id)
        await repo.set_balance(created.id, balance=Decimal(42))
        async_session.expire_all()
        loaded = await repo.get(user_id=creator_id, token_id=token.id)

        assert created.balance == Decimal(0)
        assert loaded is not None
        assert loaded.balance == Decimal(42)


# ============================================================================
# Competition Tests
# ============================================================================


class TestCompetitionRepository:
    @pytest.mark.asyncio
    async def test_open_and_latest(self, async_session: AsyncSession) -> None:
        repo = CompetitionRepository(async_session)
        first = await repo.insert(make_competition(1))
        await repo.insert(make_competition(2, timestamp_start=1_700_100_000))
        assert first.id is not None

        await repo.complete(first.id, timestamp_end=1_700_100_000)
        async_session.expire_all()

        open_competition = await repo.get_open(FACTORY)
        latest = await repo.get_latest(FACTORY)
        closed = await repo.get_by_competition_id(FACTORY, 1)

        assert open_competition is not None and open_competition.competition_id == 2
        assert latest is not None and latest.competition_id == 2
        assert closed is not None
        assert closed.is_completed is True
        assert closed.timestamp_end == 1_700_100_000

    @pytest.mark.asyncio
    async def test_no_competitions(self, async_session: AsyncSession) -> None:
        repo = CompetitionRepository(async_session)

        assert await repo.get_open(FACTORY) is None
        assert await repo.get_latest(FACTORY) is None

    @pytest.mark.asyncio
    async def test_set_winner(self, async_session: AsyncSession, creator_id: int) -> None:
        repo = CompetitionRepository(async_session)
        competition = await repo.insert(make_competition(1))
        token = await TokenRepository(async_session).insert(make_token(creator_id, competition_id=competition.id))
        assert competition.id is not None and token.id is not None

        await repo.set_winner(competition.id, token_id=token.id)
        async_session.expire_all()
        loaded = await repo.get_by_competition_id(FACTORY, 1)

        assert loaded is not None
        assert loaded.winner_token_id == token.id
