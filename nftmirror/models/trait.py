"""
NFT Mirror — Trait Models

trait_categories is a dictionary grown lazily in first-seen order.
trait_data holds one (token, trait name) fact and is write-once per token.
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import INTEGER, NUMERIC, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from nftmirror.models.base import Base


class TraitCategory(Base):
    """Trait category, named by the lower-cased trait name."""

    __tablename__ = "trait_categories"

    id: Mapped[int] = mapped_column(INTEGER, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    display_order: Mapped[int] = mapped_column(
        INTEGER, nullable=False, comment="First-seen order, 1-based"
    )

    def __repr__(self) -> str:
        return f"<TraitCategory name={self.name!r} order={self.display_order!r}>"


class TraitRecord(Base):
    """One trait value of one token."""

    __tablename__ = "trait_data"

    id: Mapped[int] = mapped_column(INTEGER, primary_key=True, autoincrement=True)
    ticker: Mapped[str] = mapped_column(String, nullable=False)
    token_id: Mapped[int] = mapped_column(INTEGER, nullable=False)
    trait_name: Mapped[str] = mapped_column(String, nullable=False)
    trait_value: Mapped[str] = mapped_column(String, nullable=False)
    rarity: Mapped[Decimal | None] = mapped_column(NUMERIC(10, 4), nullable=True)
    category_id: Mapped[int] = mapped_column(
        INTEGER, ForeignKey("trait_categories.id"), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("ticker", "token_id", "trait_name", name="uq_trait_data_token_trait"),
    )

    def __repr__(self) -> str:
        return (
            f"<TraitRecord token_id={self.token_id!r} {self.trait_name!r}={self.trait_value!r}>"
        )
