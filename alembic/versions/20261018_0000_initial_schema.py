"""Initial schema: assets, transfers, holder balances and trend snapshots.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "assets",
        sa.Column("id", sa.String(42), nullable=False),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("symbol", sa.String(64), nullable=False),
        sa.Column("total_supply", sa.String(80), nullable=False),
        sa.Column("decimals", sa.Integer(), nullable=False, server_default="18"),
        sa.Column("first_seen", sa.BigInteger(), nullable=False),
        sa.Column("last_updated", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_assets_last_updated", "assets", ["last_updated"])

    op.create_table(
        "transfers",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("asset_id", sa.String(42), nullable=False),
        sa.Column("sender", sa.String(42), nullable=False),
        sa.Column("recipient", sa.String(42), nullable=False),
        sa.Column("amount", sa.String(80), nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["asset_id"], ["assets.id"]),
    )
    op.create_index("idx_transfers_asset_ts", "transfers", ["asset_id", "timestamp"])
    op.create_index("idx_transfers_ts", "transfers", ["timestamp"])

    op.create_table(
        "holder_balances",
        sa.Column("holder", sa.String(42), nullable=False),
        sa.Column("asset_id", sa.String(42), nullable=False),
        sa.Column("balance", sa.String(80), nullable=False),
        sa.Column("last_updated", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("holder", "asset_id"),
        sa.ForeignKeyConstraint(["asset_id"], ["assets.id"]),
    )
    op.create_index("idx_holder_balances_asset", "holder_balances", ["asset_id", "last_updated"])

    op.create_table(
        "trend_snapshots",
        sa.Column("asset_id", sa.String(42), nullable=False),
        sa.Column("velocity", sa.Float(), nullable=False),
        sa.Column("unique_holders", sa.Integer(), nullable=False),
        sa.Column("large_transactions", sa.Integer(), nullable=False),
        sa.Column("growth_rate", sa.Float(), nullable=False),
        sa.Column("whale_concentration", sa.Float(), nullable=False),
        sa.Column("trend_score", sa.Float(), nullable=False),
        sa.Column("last_calculated", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("asset_id"),
        sa.ForeignKeyConstraint(["asset_id"], ["assets.id"]),
    )
    op.create_index("idx_trend_snapshots_score", "trend_snapshots", ["trend_score"])
    op.create_index("idx_trend_snapshots_last_calculated", "trend_snapshots", ["last_calculated"])


def downgrade() -> None:
    op.drop_index("idx_trend_snapshots_last_calculated", table_name="trend_snapshots")
    op.drop_index("idx_trend_snapshots_score", table_name="trend_snapshots")
    op.drop_table("trend_snapshots")
    op.drop_index("idx_holder_balances_asset", table_name="holder_balances")
    op.drop_table("holder_balances")
    op.drop_index("idx_transfers_ts", table_name="transfers")
    op.drop_index("idx_transfers_asset_ts", table_name="transfers")
    op.drop_table("transfers")
    op.drop_index("idx_assets_last_updated", table_name="assets")
    op.drop_table("assets")
