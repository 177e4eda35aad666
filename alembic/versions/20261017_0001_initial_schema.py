"""Initial schema for indexed launchpad state.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UINT256 = sa.Numeric(78, 0)
PRICE = sa.Numeric(78, 10)


def upgrade() -> None:
    # Per-source cursor
    op.create_table(
        "indexer_state",
        sa.Column("source_address", sa.String(42), nullable=False),
        sa.Column("last_indexed_block", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("source_address"),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("address"),
    )

    # Competitions; winner_token_id FK is added once tokens exists
    op.create_table(
        "competitions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("source_address", sa.String(42), nullable=False),
        sa.Column("competition_id", sa.BigInteger(), nullable=False),
        sa.Column("start_tx_hash", sa.String(66), nullable=False),
        sa.Column("start_block", sa.BigInteger(), nullable=False),
        sa.Column("timestamp_start", sa.BigInteger(), nullable=False),
        sa.Column("timestamp_end", sa.BigInteger(), nullable=True),
        sa.Column("is_completed", sa.Boolean(), nullable=False),
        sa.Column("winner_token_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("winner_token_id"),
        sa.UniqueConstraint(
            "source_address", "competition_id", name="uq_competitions_source_competition"
        ),
    )
    op.create_index(
        "idx_competitions_source_completed", "competitions", ["source_address", "is_completed"]
    )

    op.create_table(
        "tokens",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("source_address", sa.String(42), nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("creation_tx_hash", sa.String(66), nullable=False),
        sa.Column("creation_block", sa.BigInteger(), nullable=False),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("symbol", sa.String(64), nullable=False),
        sa.Column("metadata_uri", sa.String(2048), nullable=False),
        sa.Column("metadata_snapshot", sa.JSON(), nullable=True),
        sa.Column("creator_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("competition_id", sa.Integer(), sa.ForeignKey("competitions.id"), nullable=True),
        sa.Column("total_supply", UINT256, nullable=False),
        sa.Column("price", PRICE, nullable=False),
        sa.Column("market_cap", PRICE, nullable=False),
        sa.Column("is_winner", sa.Boolean(), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("address"),
        sa.UniqueConstraint("creation_tx_hash"),
    )
    op.create_index("idx_tokens_competition", "tokens", ["competition_id"])
    op.create_index("idx_tokens_creator", "tokens", ["creator_id"])
    op.create_index("idx_tokens_timestamp", "tokens", ["timestamp"])

    with op.batch_alter_table("competitions") as batch:
        batch.create_foreign_key("fk_competitions_winner_token_id", "tokens", ["winner_token_id"], ["id"])

    op.create_table(
        "trades",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("trade_type", sa.String(4), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("token_id", sa.Integer(), sa.ForeignKey("tokens.id"), nullable=False),
        sa.Column("amount_in", UINT256, nullable=False),
        sa.Column("amount_out", UINT256, nullable=False),
        sa.Column("price", PRICE, nullable=False),
        sa.Column("fee", UINT256, nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash", "log_index", name="uq_trades_event"),
    )
    op.create_index("idx_trades_token_ts", "trades", ["token_id", "timestamp"])
    op.create_index("idx_trades_user_ts", "trades", ["user_id", "timestamp"])

    op.create_table(
        "token_balances",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("token_id", sa.Integer(), sa.ForeignKey("tokens.id"), nullable=False),
        sa.Column("balance", UINT256, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "token_id", name="uq_token_balances_user_token"),
    )
    op.create_index("idx_token_balances_token", "token_balances", ["token_id"])

    op.create_table(
        "token_burns",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("sender_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("token_id", sa.Integer(), sa.ForeignKey("tokens.id"), nullable=False),
        sa.Column("winner_token_id", sa.Integer(), sa.ForeignKey("tokens.id"), nullable=False),
        sa.Column("burned_amount", UINT256, nullable=False),
        sa.Column("fee", UINT256, nullable=False),
        sa.Column("minted_amount", UINT256, nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash", "log_index", name="uq_token_burns_event"),
    )
    op.create_index("idx_token_burns_token", "token_burns", ["token_id"])

    op.create_table(
        "liquidity_provisions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("token_id", sa.Integer(), sa.ForeignKey("tokens.id"), nullable=False),
        sa.Column("token_creator_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("pool", sa.String(42), nullable=False),
        sa.Column("sender", sa.String(42), nullable=False),
        sa.Column("position_token_id", UINT256, nullable=False),
        sa.Column("liquidity", UINT256, nullable=False),
        sa.Column("actual_token_amount", UINT256, nullable=False),
        sa.Column("actual_asset_amount", UINT256, nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash", "log_index", name="uq_liquidity_provisions_event"),
    )
    op.create_index("idx_liquidity_provisions_token", "liquidity_provisions", ["token_id"])


def downgrade() -> None:
    op.drop_index("idx_liquidity_provisions_token", table_name="liquidity_provisions")
    op.drop_table("liquidity_provisions")
    op.drop_index("idx_token_burns_token", table_name="token_burns")
    op.drop_table("token_burns")
    op.drop_index("idx_token_balances_token", table_name="token_balances")
    op.drop_table("token_balances")
    op.drop_index("idx_trades_user_ts", table_name="trades")
    op.drop_index("idx_trades_token_ts", table_name="trades")
    op.drop_table("trades")
    with op.batch_alter_table("competitions") as batch:
        batch.drop_constraint("fk_competitions_winner_token_id", type_="foreignkey")
    op.drop_index("idx_tokens_timestamp", table_name="tokens")
    op.drop_index("idx_tokens_creator", table_name="tokens")
    op.drop_index("idx_tokens_competition", table_name="tokens")
    op.drop_table("tokens")
    op.drop_index("idx_competitions_source_completed", table_name="competitions")
    op.drop_table("competitions")
    op.drop_table("users")
    op.drop_table("indexer_state")
