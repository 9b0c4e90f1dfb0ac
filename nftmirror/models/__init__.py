"""
Models package — export all SQLAlchemy models.
"""

from nftmirror.models.base import Base
from nftmirror.models.listing import Listing
from nftmirror.models.owner import CollectionStats, Owner, TokenOwnership
from nftmirror.models.sales_record import SalesRecord
from nftmirror.models.token import Token
from nftmirror.models.trait import TraitCategory, TraitRecord
from nftmirror.models.user import User

__all__ = [
    "Base",
    "CollectionStats",
    "Listing",
    "Owner",
    "SalesRecord",
    "Token",
    "TokenOwnership",
    "TraitCategory",
    "TraitRecord",
    "User",
]
