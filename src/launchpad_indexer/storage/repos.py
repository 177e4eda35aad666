"""Repository pattern implementations for data access.

This module provides clean data access abstractions for the indexing cursor,
users, tokens, trades, balances, competitions, burns and liquidity
provisions. Repositories never commit: the caller owns the transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update

from launchpad_indexer.storage.models import (
    CompetitionModel,
    IndexerStateModel,
    LiquidityProvisionModel,
    TokenBalanceModel,
    TokenBurnModel,
    TokenModel,
    TradeModel,
    UserModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


@dataclass
class CursorDTO:
    """Data transfer object for the per-source indexing cursor."""

    source_address: str
    last_indexed_block: int
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: IndexerStateModel) -> CursorDTO:
        return cls(
            source_address=model.source_address,
            last_indexed_block=model.last_indexed_block,
            updated_at=model.updated_at,
        )


class CursorRepository:
    """Repository for the last indexed block of each tracked source."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, source_address: str) -> CursorDTO | None:
        result = await self.session.execute(
            select(IndexerStateModel).where(IndexerStateModel.source_address == source_address.lower())
        )
        model = result.scalar_one_or_none()
        return CursorDTO.from_model(model) if model else None

    async def bootstrap(self, source_address: str, *, start_block: int) -> CursorDTO:
        """Create the cursor row if missing so that `start_block` is indexed first.

        An existing cursor is returned untouched.
        """
        if start_block < 0:
            raise ValueError("start_block must be >= 0")
        existing = await self.get(source_address)
        if existing is not None:
            return existing

        model = IndexerStateModel(
            source_address=source_address.lower(),
            last_indexed_block=start_block - 1,
        )
        self.session.add(model)
        await self.session.flush()
        logger.info(
            "Bootstrapped cursor: source=%s, last_indexed_block=%d",
            model.source_address,
            model.last_indexed_block,
        )
        return CursorDTO.from_model(model)

    async def advance(self, source_address: str, *, block_number: int) -> None:
        result = await self.session.execute(
            update(IndexerStateModel)
            .where(IndexerStateModel.source_address == source_address.lower())
            .values(last_indexed_block=block_number)
        )
        if result.rowcount != 1:
            raise LookupError(f"No cursor row for source {source_address}")
        await self.session.flush()


@dataclass
class UserDTO:
    """Data transfer object for users."""

    id: int
    address: str

    @classmethod
    def from_model(cls, model: UserModel) -> UserDTO:
        return cls(id=model.id, address=model.address)


class UserRepository:
    """Repository for wallet users."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_address(self, address: str) -> UserDTO | None:
        result = await self.session.execute(select(UserModel).where(UserModel.address == address.lower()))
        model = result.scalar_one_or_none()
        return UserDTO.from_model(model) if model else None

    async def find_or_create(self, address: str) -> UserDTO:
        """Return the user for `address`, creating it on first sight.

        Calling this any number of times for the same address yields the same
        row.
        """
        existing = await self.get_by_address(address)
        if existing is not None:
            return existing

        model = UserModel(address=address.lower())
        self.session.add(model)
        await self.session.flush()
        logger.info("Created user: address=%s", model.address)
        return UserDTO.from_model(model)


@dataclass
class TokenDTO:
    """Data transfer object for tokens."""

    source_address: str
    address: str
    creation_tx_hash: str
    creation_block: int
    name: str
    symbol: str
    metadata_uri: str
    metadata_snapshot: dict[str, Any] | None
    creator_id: int
    competition_id: int | None
    timestamp: int
    total_supply: Decimal = Decimal(0)
    price: Decimal = Decimal(0)
    market_cap: Decimal = Decimal(0)
    is_winner: bool = False
    is_enabled: bool = True
    id: int | None = None

    @classmethod
    def from_model(cls, model: TokenModel) -> TokenDTO:
        return cls(
            id=model.id,
            source_address=model.source_address,
            address=model.address,
            creation_tx_hash=model.creation_tx_hash,
            creation_block=model.creation_block,
            name=model.name,
            symbol=model.symbol,
            metadata_uri=model.metadata_uri,
            metadata_snapshot=model.metadata_snapshot,
            creator_id=model.creator_id,
            competition_id=model.competition_id,
            timestamp=model.timestamp,
            total_supply=model.total_supply,
            price=model.price,
            market_cap=model.market_cap,
            is_winner=model.is_winner,
            is_enabled=model.is_enabled,
        )


class TokenRepository:
    """Repository for launched tokens and their derived aggregates."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_address(self, address: str) -> TokenDTO | None:
        result = await self.session.execute(select(TokenModel).where(TokenModel.address == address.lower()))
        model = result.scalar_one_or_none()
        return TokenDTO.from_model(model) if model else None

    async def insert(self, dto: TokenDTO) -> TokenDTO:
        model = TokenModel(
            source_address=dto.source_address.lower(),
            address=dto.address.lower(),
            creation_tx_hash=dto.creation_tx_hash.lower(),
            creation_block=dto.creation_block,
            name=dto.name,
            symbol=dto.symbol,
            metadata_uri=dto.metadata_uri,
            metadata_snapshot=dto.metadata_snapshot,
            creator_id=dto.creator_id,
            competition_id=dto.competition_id,
            timestamp=dto.timestamp,
            total_supply=dto.total_supply,
            price=dto.price,
            market_cap=dto.market_cap,
            is_winner=dto.is_winner,
            is_enabled=dto.is_enabled,
        )
        self.session.add(model)
        await self.session.flush()
        return TokenDTO.from_model(model)

    async def update_aggregates(
        self,
        token_id: int,
        *,
        total_supply: Decimal,
        price: Decimal,
        market_cap: Decimal,
    ) -> None:
        await self.session.execute(
            update(TokenModel)
            .where(TokenModel.id == token_id)
            .values(total_supply=total_supply, price=price, market_cap=market_cap)
        )
        await self.session.flush()

    async def mark_winner(self, token_id: int) -> None:
        await self.session.execute(update(TokenModel).where(TokenModel.id == token_id).values(is_winner=True))
        await self.session.flush()

    async def list_by_competition(
        self,
        source_address: str,
        competition_pk: int | None,
        *,
        enabled_only: bool = True,
    ) -> list[TokenDTO]:
        """Tokens of one competition, or tokens outside any competition when `competition_pk` is None."""
        stmt = select(TokenModel).where(TokenModel.source_address == source_address.lower())
        if competition_pk is None:
            stmt = stmt.where(TokenModel.competition_id.is_(None))
        else:
            stmt = stmt.where(TokenModel.competition_id == competition_pk)
        if enabled_only:
            stmt = stmt.where(TokenModel.is_enabled.is_(True))
        result = await self.session.execute(stmt.order_by(TokenModel.id))
        return [TokenDTO.from_model(m) for m in result.scalars().all()]


@dataclass
class TradeDTO:
    """Data transfer object for trades."""

    tx_hash: str
    log_index: int
    block_number: int
    trade_type: str
    user_id: int
    token_id: int
    amount_in: Decimal
    amount_out: Decimal
    price: Decimal
    fee: Decimal
    timestamp: int
    id: int | None = None

    @classmethod
    def from_model(cls, model: TradeModel) -> TradeDTO:
        return cls(
            id=model.id,
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            block_number=model.block_number,
            trade_type=model.trade_type,
            user_id=model.user_id,
            token_id=model.token_id,
            amount_in=model.amount_in,
            amount_out=model.amount_out,
            price=model.price,
            fee=model.fee,
            timestamp=model.timestamp,
        )


class TradeRepository:
    """Repository for persisted trades."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: TradeDTO) -> TradeDTO:
        model = TradeModel(
            tx_hash=dto.tx_hash.lower(),
            log_index=dto.log_index,
            block_number=dto.block_number,
            trade_type=dto.trade_type,
            user_id=dto.user_id,
            token_id=dto.token_id,
            amount_in=dto.amount_in,
            amount_out=dto.amount_out,
            price=dto.price,
            fee=dto.fee,
            timestamp=dto.timestamp,
        )
        self.session.add(model)
        await self.session.flush()
        return TradeDTO.from_model(model)

    async def list_by_token(self, token_id: int) -> list[TradeDTO]:
        """Trades for a token in insertion (chain) order."""
        result = await self.session.execute(
            select(TradeModel).where(TradeModel.token_id == token_id).order_by(TradeModel.id)
        )
        return [TradeDTO.from_model(m) for m in result.scalars().all()]


@dataclass
class TokenBalanceDTO:
    """Data transfer object for token balances."""

    id: int
    user_id: int
    token_id: int
    balance: Decimal

    @classmethod
    def from_model(cls, model: TokenBalanceModel) -> TokenBalanceDTO:
        return cls(
            id=model.id,
            user_id=model.user_id,
            token_id=model.token_id,
            balance=model.balance,
        )


class TokenBalanceRepository:
    """Repository for per-(user, token) balances."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, *, user_id: int, token_id: int) -> TokenBalanceDTO | None:
        result = await self.session.execute(
            select(TokenBalanceModel).where(
                (TokenBalanceModel.user_id == user_id) & (TokenBalanceModel.token_id == token_id)
            )
        )
        model = result.scalar_one_or_none()
        return TokenBalanceDTO.from_model(model) if model else None

    async def create(self, *, user_id: int, token_id: int) -> TokenBalanceDTO:
        model = TokenBalanceModel(user_id=user_id, token_id=token_id, balance=Decimal(0))
        self.session.add(model)
        await self.session.flush()
        return TokenBalanceDTO.from_model(model)

    async def set_balance(self, balance_id: int, *, balance: Decimal) -> None:
        await self.session.execute(
            update(TokenBalanceModel).where(TokenBalanceModel.id == balance_id).values(balance=balance)
        )
        await self.session.flush()


@dataclass
class CompetitionDTO:
    """Data transfer object for competitions."""

    source_address: str
    competition_id: int
    start_tx_hash: str
    start_block: int
    timestamp_start: int
    timestamp_end: int | None = None
    is_completed: bool = False
    winner_token_id: int | None = None
    id: int | None = None

    @classmethod
    def from_model(cls, model: CompetitionModel) -> CompetitionDTO:
        return cls(
            id=model.id,
            source_address=model.source_address,
            competition_id=model.competition_id,
            start_tx_hash=model.start_tx_hash,
            start_block=model.start_block,
            timestamp_start=model.timestamp_start,
            timestamp_end=model.timestamp_end,
            is_completed=model.is_completed,
            winner_token_id=model.winner_token_id,
        )


class CompetitionRepository:
    """Repository for competition epochs of a token factory."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_competition_id(self, source_address: str, competition_id: int) -> CompetitionDTO | None:
        result = await self.session.execute(
            select(CompetitionModel).where(
                (CompetitionModel.source_address == source_address.lower())
                & (CompetitionModel.competition_id == competition_id)
            )
        )
        model = result.scalar_one_or_none()
        return CompetitionDTO.from_model(model) if model else None

    async def get_open(self, source_address: str) -> CompetitionDTO | None:
        """Most recent (by competition id) competition that is not completed."""
        result = await self.session.execute(
            select(CompetitionModel)
            .where(
                (CompetitionModel.source_address == source_address.lower())
                & (CompetitionModel.is_completed.is_(False))
            )
            .order_by(CompetitionModel.competition_id.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return CompetitionDTO.from_model(model) if model else None

    async def get_latest(self, source_address: str) -> CompetitionDTO | None:
        result = await self.session.execute(
            select(CompetitionModel)
            .where(CompetitionModel.source_address == source_address.lower())
            .order_by(CompetitionModel.competition_id.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return CompetitionDTO.from_model(model) if model else None

    async def insert(self, dto: CompetitionDTO) -> CompetitionDTO:
        model = CompetitionModel(
            source_address=dto.source_address.lower(),
            competition_id=dto.competition_id,
            start_tx_hash=dto.start_tx_hash.lower(),
            start_block=dto.start_block,
            timestamp_start=dto.timestamp_start,
            timestamp_end=dto.timestamp_end,
            is_completed=dto.is_completed,
            winner_token_id=dto.winner_token_id,
        )
        self.session.add(model)
        await self.session.flush()
        return CompetitionDTO.from_model(model)

    async def complete(self, competition_pk: int, *, timestamp_end: int) -> None:
        await self.session.execute(
            update(CompetitionModel)
            .where(CompetitionModel.id == competition_pk)
            .values(is_completed=True, timestamp_end=timestamp_end)
        )
        await self.session.flush()

    async def set_winner(self, competition_pk: int, *, token_id: int) -> None:
        await self.session.execute(
            update(CompetitionModel).where(CompetitionModel.id == competition_pk).values(winner_token_id=token_id)
        )
        await self.session.flush()


@dataclass
class TokenBurnDTO:
    """Data transfer object for token burns."""

    tx_hash: str
    log_index: int
    block_number: int
    sender_id: int
    token_id: int
    winner_token_id: int
    burned_amount: Decimal
    fee: Decimal
    minted_amount: Decimal
    timestamp: int


class TokenBurnRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: TokenBurnDTO) -> None:
        self.session.add(
            TokenBurnModel(
                tx_hash=dto.tx_hash.lower(),
                log_index=dto.log_index,
                block_number=dto.block_number,
                sender_id=dto.sender_id,
                token_id=dto.token_id,
                winner_token_id=dto.winner_token_id,
                burned_amount=dto.burned_amount,
                fee=dto.fee,
                minted_amount=dto.minted_amount,
                timestamp=dto.timestamp,
            )
        )
        await self.session.flush()


@dataclass
class LiquidityProvisionDTO:
    """Data transfer object for winner liquidity provisions."""

    tx_hash: str
    log_index: int
    block_number: int
    token_id: int
    token_creator_id: int
    pool: str
    sender: str
    position_token_id: Decimal
    liquidity: Decimal
    actual_token_amount: Decimal
    actual_asset_amount: Decimal
    timestamp: int


class LiquidityProvisionRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: LiquidityProvisionDTO) -> None:
        self.session.add(
            LiquidityProvisionModel(
                tx_hash=dto.tx_hash.lower(),
                log_index=dto.log_index,
                block_number=dto.block_number,
                token_id=dto.token_id,
                token_creator_id=dto.token_creator_id,
                pool=dto.pool.lower(),
                sender=dto.sender.lower(),
                position_token_id=dto.position_token_id,
                liquidity=dto.liquidity,
                actual_token_amount=dto.actual_token_amount,
                actual_asset_amount=dto.actual_asset_amount,
                timestamp=dto.timestamp,
            )
        )
        await self.session.flush()
