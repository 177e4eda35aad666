"""SQLAlchemy models for persistent storage.

This module defines the relational state materialized from the token-launch
protocol's event log: users, tokens, trades, balances, competitions, burns,
liquidity provisions and the per-source indexing cursor.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from launchpad_indexer.storage.types import BigNumeric

# Fractional digits kept for prices and market caps.
PRICE_SCALE = 10


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class IndexerStateModel(Base):
    """Last fully-applied block per tracked contract source."""

    __tablename__ = "indexer_state"

    source_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    last_indexed_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class UserModel(Base):
    """Wallet addresses seen in protocol events."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(42), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class CompetitionModel(Base):
    """Competition epochs, one row per (source, competition_id)."""

    __tablename__ = "competitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_address: Mapped[str] = mapped_column(String(42), nullable=False)
    competition_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    start_tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    start_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    timestamp_start: Mapped[int] = mapped_column(BigInteger, nullable=False)
    timestamp_end: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # tokens.competition_id points back here, so this edge is added after both tables exist.
    winner_token_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("tokens.id", use_alter=True, name="fk_competitions_winner_token_id"),
        nullable=True,
        unique=True,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("source_address", "competition_id", name="uq_competitions_source_competition"),
        Index("idx_competitions_source_completed", "source_address", "is_completed"),
    )


class TokenModel(Base):
    """Tokens launched through a token factory."""

    __tablename__ = "tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_address: Mapped[str] = mapped_column(String(42), nullable=False)
    address: Mapped[str] = mapped_column(String(42), nullable=False, unique=True)
    creation_tx_hash: Mapped[str] = mapped_column(String(66), nullable=False, unique=True)
    creation_block: Mapped[int] = mapped_column(BigInteger, nullable=False)

    name: Mapped[str] = mapped_column(String(256), nullable=False)
    symbol: Mapped[str] = mapped_column(String(64), nullable=False)
    metadata_uri: Mapped[str] = mapped_column(String(2048), nullable=False)
    metadata_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    creator_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    competition_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("competitions.id"), nullable=True
    )

    total_supply: Mapped[Decimal] = mapped_column(BigNumeric(), nullable=False, default=Decimal(0))
    price: Mapped[Decimal] = mapped_column(BigNumeric(78, PRICE_SCALE), nullable=False, default=Decimal(0))
    market_cap: Mapped[Decimal] = mapped_column(
        BigNumeric(78, PRICE_SCALE), nullable=False, default=Decimal(0)
    )

    is_winner: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_tokens_competition", "competition_id"),
        Index("idx_tokens_creator", "creator_id"),
        Index("idx_tokens_timestamp", "timestamp"),
    )


class TradeModel(Base):
    """Buy/sell events, immutable once inserted."""

    __tablename__ = "trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)

    trade_type: Mapped[str] = mapped_column(String(4), nullable=False)  # buy/sell
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    token_id: Mapped[int] = mapped_column(Integer, ForeignKey("tokens.id"), nullable=False)

    amount_in: Mapped[Decimal] = mapped_column(BigNumeric(), nullable=False)
    amount_out: Mapped[Decimal] = mapped_column(BigNumeric(), nullable=False)
    price: Mapped[Decimal] = mapped_column(BigNumeric(78, PRICE_SCALE), nullable=False)
    fee: Mapped[Decimal] = mapped_column(BigNumeric(), nullable=False)

    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_trades_event"),
        Index("idx_trades_token_ts", "token_id", "timestamp"),
        Index("idx_trades_user_ts", "user_id", "timestamp"),
    )


class TokenBalanceModel(Base):
    """Running balance per (user, token) pair."""

    __tablename__ = "token_balances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    token_id: Mapped[int] = mapped_column(Integer, ForeignKey("tokens.id"), nullable=False)
    balance: Mapped[Decimal] = mapped_column(BigNumeric(), nullable=False, default=Decimal(0))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("user_id", "token_id", name="uq_token_balances_user_token"),
        Index("idx_token_balances_token", "token_id"),
    )


class TokenBurnModel(Base):
    """Losing-token burns that minted the competition winner."""

    __tablename__ = "token_burns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)

    sender_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    token_id: Mapped[int] = mapped_column(Integer, ForeignKey("tokens.id"), nullable=False)
    winner_token_id: Mapped[int] = mapped_column(Integer, ForeignKey("tokens.id"), nullable=False)

    burned_amount: Mapped[Decimal] = mapped_column(BigNumeric(), nullable=False)
    fee: Mapped[Decimal] = mapped_column(BigNumeric(), nullable=False)
    minted_amount: Mapped[Decimal] = mapped_column(BigNumeric(), nullable=False)

    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_token_burns_event"),
        Index("idx_token_burns_token", "token_id"),
    )


class LiquidityProvisionModel(Base):
    """Liquidity added to a DEX pool for a competition winner."""

    __tablename__ = "liquidity_provisions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)

    token_id: Mapped[int] = mapped_column(Integer, ForeignKey("tokens.id"), nullable=False)
    token_creator_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    pool: Mapped[str] = mapped_column(String(42), nullable=False)
    sender: Mapped[str] = mapped_column(String(42), nullable=False)

    position_token_id: Mapped[Decimal] = mapped_column(BigNumeric(), nullable=False)
    liquidity: Mapped[Decimal] = mapped_column(BigNumeric(), nullable=False)
    actual_token_amount: Mapped[Decimal] = mapped_column(BigNumeric(), nullable=False)
    actual_asset_amount: Mapped[Decimal] = mapped_column(BigNumeric(), nullable=False)

    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_liquidity_provisions_event"),
        Index("idx_liquidity_provisions_token", "token_id"),
    )
