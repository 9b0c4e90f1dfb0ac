"""Add token_ownership: the current owner wallet of every token

Revision ID: 002_token_ownership
Revises: 001_initial_schema
Create Date: 2026-10-17

Adds:
  - token_ownership keyed by (ticker, token_id), one row per token
  - ix_token_ownership_wallet_address for wallet -> tokens lookups
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = "002_token_ownership"
down_revision: Union[str, None] = "001_initial_schema"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "token_ownership",
        sa.Column("ticker", sa.String(), primary_key=True),
        sa.Column("token_id", sa.INTEGER(), primary_key=True),
        sa.Column("wallet_address", sa.String(), nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_token_ownership_wallet_address",
        "token_ownership",
        ["wallet_address"],
    )


def downgrade() -> None:
    op.drop_index("ix_token_ownership_wallet_address", table_name="token_ownership")
    op.drop_table("token_ownership")
