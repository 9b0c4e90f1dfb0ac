"""
NFT Mirror — User Model

Only the synthetic system actor is managed by the sync engine. Human accounts
belong to the dashboard's auth layer and share this table.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import TIMESTAMP, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from nftmirror.models.base import Base


class User(Base):
    """
    User identity record.

    listings.deactivated_by references this table so automated removals are
    attributed to the system actor rather than to an administrator.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        comment="Primary key",
    )
    email: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    role: Mapped[str] = mapped_column(
        String, default="user", server_default="user", comment="'user' or 'admin'"
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        comment="Account creation timestamp",
    )

    def __repr__(self) -> str:
        return f"<User id={self.id!r} email={self.email!r} role={self.role!r}>"
