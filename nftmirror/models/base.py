"""
SQLAlchemy 2.0 async DeclarativeBase for NFT Mirror.

All models inherit from this Base.
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all NFT Mirror database models."""
    pass
