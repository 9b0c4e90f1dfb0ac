"""Initial schema — users, listings, sales_history, tokens, traits, owners

Revision ID: 001_initial_schema
Revises: None
Create Date: 2026-10-17

Adds:
  - users (system actor lives here)
  - listings with a partial unique index: one active row per (ticker, token_id)
  - sales_history keyed by the marketplace order id
  - tokens, trait_categories, trait_data
  - owners, collection_stats
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- users ---
    op.create_table(
        "users",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("role", sa.String(), server_default="user", nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # --- listings ---
    op.create_table(
        "listings",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("external_order_id", sa.String(), nullable=True, comment="Marketplace order id"),
        sa.Column("ticker", sa.String(), nullable=False),
        sa.Column("token_id", sa.INTEGER(), nullable=False),
        sa.Column("total_price", sa.NUMERIC(20, 8), nullable=False),
        sa.Column("seller_address", sa.String(), nullable=True),
        sa.Column("rarity_rank", sa.INTEGER(), nullable=True),
        sa.Column("required_payment", sa.NUMERIC(20, 8), nullable=True),
        sa.Column("is_owner", sa.BOOLEAN(), server_default="false", nullable=False),
        sa.Column("source", sa.String(), server_default="external-api", nullable=False),
        sa.Column("status", sa.String(), server_default="active", nullable=False),
        sa.Column("listed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("deactivated_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "deactivated_by",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", name="fk_listings_deactivated_by_users"),
            nullable=True,
        ),
        sa.CheckConstraint(
            "status IN ('active', 'sold', 'cancelled', 'expired', 'manually_removed', "
            "'api_sync_removed', 'price_changed', 'manually_updated', 'unknown')",
            name="ck_listings_status",
        ),
    )
    op.create_index(
        "uq_listings_active_token",
        "listings",
        ["ticker", "token_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )
    op.create_index("ix_listings_ticker_status", "listings", ["ticker", "status"])
    op.create_index("ix_listings_external_order_id", "listings", ["external_order_id"])

    # --- sales_history (append-only) ---
    op.create_table(
        "sales_history",
        sa.Column("id", sa.String(), primary_key=True, comment="Marketplace order id"),
        sa.Column("ticker", sa.String(), nullable=False),
        sa.Column("token_id", sa.INTEGER(), nullable=False),
        sa.Column("sale_price", sa.NUMERIC(20, 8), nullable=False),
        sa.Column("sale_date", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "recorded_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_sales_history_ticker_token", "sales_history", ["ticker", "token_id"])

    # --- tokens ---
    op.create_table(
        "tokens",
        sa.Column("ticker", sa.String(), nullable=False),
        sa.Column("token_id", sa.INTEGER(), nullable=False),
        sa.Column("rarity_rank", sa.INTEGER(), nullable=True),
        sa.Column("is_legendary", sa.BOOLEAN(), server_default="false", nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("ticker", "token_id"),
    )

    # --- trait_categories / trait_data (write-once per token) ---
    op.create_table(
        "trait_categories",
        sa.Column("id", sa.INTEGER(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("display_order", sa.INTEGER(), nullable=False),
        sa.UniqueConstraint("name", name="uq_trait_categories_name"),
    )
    op.create_table(
        "trait_data",
        sa.Column("id", sa.INTEGER(), primary_key=True, autoincrement=True),
        sa.Column("ticker", sa.String(), nullable=False),
        sa.Column("token_id", sa.INTEGER(), nullable=False),
        sa.Column("trait_name", sa.String(), nullable=False),
        sa.Column("trait_value", sa.String(), nullable=False),
        sa.Column("rarity", sa.NUMERIC(10, 4), nullable=True),
        sa.Column(
            "category_id",
            sa.INTEGER(),
            sa.ForeignKey("trait_categories.id", name="fk_trait_data_category"),
            nullable=False,
        ),
        sa.UniqueConstraint("ticker", "token_id", "trait_name", name="uq_trait_data_token_trait"),
    )

    # --- owners / collection_stats ---
    op.create_table(
        "owners",
        sa.Column("ticker", sa.String(), nullable=False),
        sa.Column("wallet_address", sa.String(), nullable=False),
        sa.Column("token_count", sa.INTEGER(), nullable=False),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("ticker", "wallet_address"),
    )
    op.create_table(
        "collection_stats",
        sa.Column("ticker", sa.String(), primary_key=True),
        sa.Column("total_supply", sa.INTEGER(), nullable=False),
        sa.Column("total_minted", sa.INTEGER(), nullable=False),
        sa.Column("total_holders", sa.INTEGER(), nullable=False),
        sa.Column("average_holding", sa.NUMERIC(10, 2), nullable=False),
        sa.Column("last_synced_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("collection_stats")
    op.drop_table("owners")
    op.drop_table("trait_data")
    op.drop_table("trait_categories")
    op.drop_table("tokens")
    op.drop_index("ix_sales_history_ticker_token", table_name="sales_history")
    op.drop_table("sales_history")
    op.drop_index("ix_listings_external_order_id", table_name="listings")
    op.drop_index("ix_listings_ticker_status", table_name="listings")
    op.drop_index("uq_listings_active_token", table_name="listings")
    op.drop_table("listings")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
