"""
NFT Mirror — Holder Snapshot Models

owners maps a wallet to the number of tokens it holds.
collection_stats keeps one aggregate row per ticker.
token_ownership maps each token to the wallet that holds it.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import INTEGER, NUMERIC, TIMESTAMP, String, func
from sqlalchemy.orm import Mapped, mapped_column

from nftmirror.models.base import Base


class Owner(Base):
    __tablename__ = "owners"

    ticker: Mapped[str] = mapped_column(String, primary_key=True)
    wallet_address: Mapped[str] = mapped_column(String, primary_key=True)
    token_count: Mapped[int] = mapped_column(INTEGER, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Owner wallet={self.wallet_address!r} count={self.token_count!r}>"


class CollectionStats(Base):
    __tablename__ = "collection_stats"

    ticker: Mapped[str] = mapped_column(String, primary_key=True)
    total_supply: Mapped[int] = mapped_column(INTEGER, nullable=False)
    total_minted: Mapped[int] = mapped_column(INTEGER, nullable=False)
    total_holders: Mapped[int] = mapped_column(INTEGER, nullable=False)
    average_holding: Mapped[Decimal] = mapped_column(
        NUMERIC(10, 2), nullable=False, comment="total_minted / total_holders"
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return (
            f"<CollectionStats ticker={self.ticker!r} holders={self.total_holders!r} "
            f"minted={self.total_minted!r}>"
        )


class TokenOwnership(Base):
    """Current owner wallet of each token. Wallets are stored trimmed and lowercased."""

    __tablename__ = "token_ownership"

    ticker: Mapped[str] = mapped_column(String, primary_key=True)
    token_id: Mapped[int] = mapped_column(INTEGER, primary_key=True)
    wallet_address: Mapped[str] = mapped_column(String, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<TokenOwnership token_id={self.token_id!r} wallet={self.wallet_address!r}>"
