"""
NFT Mirror — Token Model

Token dimension table, seeded lazily the first time the single-token syncer
sees a token. Existing rows are never re-fetched.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BOOLEAN, INTEGER, TIMESTAMP, String, func
from sqlalchemy.orm import Mapped, mapped_column

from nftmirror.models.base import Base


class Token(Base):
    __tablename__ = "tokens"

    ticker: Mapped[str] = mapped_column(String, primary_key=True)
    token_id: Mapped[int] = mapped_column(INTEGER, primary_key=True)
    rarity_rank: Mapped[int | None] = mapped_column(INTEGER, nullable=True)
    is_legendary: Mapped[bool] = mapped_column(BOOLEAN, default=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Token ticker={self.ticker!r} token_id={self.token_id!r} rank={self.rarity_rank!r}>"
