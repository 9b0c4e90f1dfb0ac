"""
NFT Mirror — Sales History Model

Immutable event log of completed sales. The marketplace-assigned id is the
only idempotency key; rows are never updated or deleted.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import INTEGER, NUMERIC, TIMESTAMP, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from nftmirror.models.base import Base


class SalesRecord(Base):
    """One completed sale."""

    __tablename__ = "sales_history"

    id: Mapped[str] = mapped_column(
        String, primary_key=True, comment="Marketplace-assigned order id (global dedup key)"
    )
    ticker: Mapped[str] = mapped_column(String, nullable=False, comment="Collection ticker")
    token_id: Mapped[int] = mapped_column(INTEGER, nullable=False)
    sale_price: Mapped[Decimal] = mapped_column(NUMERIC(20, 8), nullable=False)
    sale_date: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, comment="Fulfillment time at the marketplace"
    )
    recorded_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), comment="Local insert time"
    )

    __table_args__ = (
        Index("ix_sales_history_ticker_token", "ticker", "token_id"),
    )

    def __repr__(self) -> str:
        return f"<SalesRecord id={self.id!r} token_id={self.token_id!r} price={self.sale_price}>"
