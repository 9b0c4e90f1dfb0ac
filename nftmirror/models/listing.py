"""
NFT Mirror — Listing Model

One unit of sale intent mirrored from the marketplace order book.

Rows are never deleted. When reconciliation stops seeing an order the row is
soft-deleted by moving status to 'api_sync_removed'. At most one row per
(ticker, token_id) may be 'active' at any time, enforced by a partial unique
index.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BOOLEAN,
    INTEGER,
    NUMERIC,
    TIMESTAMP,
    ForeignKey,
    Index,
    String,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from nftmirror.config import ListingSource, ListingStatus
from nftmirror.models.base import Base

ACTIVE_ONLY = text("status = 'active'")


class Listing(Base):
    """
    Mirrored marketplace listing.

    external_order_id is the correlation key for full reconciliation.
    (ticker, token_id) is the correlation key for single-token sync.
    """

    __tablename__ = "listings"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        comment="Local primary key",
    )
    external_order_id: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="Opaque order id assigned by the marketplace"
    )
    ticker: Mapped[str] = mapped_column(String, nullable=False, comment="Collection ticker")
    token_id: Mapped[int] = mapped_column(INTEGER, nullable=False, comment="Token number")
    total_price: Mapped[Decimal] = mapped_column(
        NUMERIC(20, 8), nullable=False, comment="Asking price"
    )
    seller_address: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="Seller wallet address"
    )
    rarity_rank: Mapped[int | None] = mapped_column(
        INTEGER, nullable=True, comment="Rarity rank reported with the order"
    )
    required_payment: Mapped[Decimal | None] = mapped_column(
        NUMERIC(20, 8), nullable=True, comment="Required payment amount reported with the order"
    )
    is_owner: Mapped[bool] = mapped_column(
        BOOLEAN, default=False, server_default="false", comment="Ownership flag"
    )
    source: Mapped[str] = mapped_column(
        String,
        default=ListingSource.EXTERNAL_API.value,
        server_default=ListingSource.EXTERNAL_API.value,
        comment="'external-api' or 'manual'",
    )
    status: Mapped[str] = mapped_column(
        String,
        default=ListingStatus.ACTIVE.value,
        server_default=ListingStatus.ACTIVE.value,
        comment="Lifecycle state, see ListingStatus",
    )
    listed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, comment="Order creation time at the marketplace"
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), comment="Row creation time"
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, comment="Last in-place mutation"
    )
    deactivated_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, comment="Set when the row leaves 'active'"
    )
    deactivated_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("users.id"),
        nullable=True,
        comment="Actor that deactivated the row (system actor for sync removals)",
    )

    __table_args__ = (
        Index(
            "uq_listings_active_token",
            "ticker",
            "token_id",
            unique=True,
            postgresql_where=ACTIVE_ONLY,
            sqlite_where=ACTIVE_ONLY,
        ),
        Index("ix_listings_ticker_status", "ticker", "status"),
        Index("ix_listings_external_order_id", "external_order_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Listing ticker={self.ticker!r} token_id={self.token_id!r} "
            f"order={self.external_order_id!r} price={self.total_price} status={self.status!r}>"
        )
