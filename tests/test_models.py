"""Tests for the mirror models and listing lifecycle rules."""

from __future__ import annotations

import uuid
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from nftmirror.config import ListingStatus
from nftmirror.errors import is_unique_violation
from nftmirror.models import Listing, User
from tests.conftest import TICKER


class TestListingStatus:
    def test_only_active_is_non_terminal(self) -> None:
        assert not ListingStatus.ACTIVE.is_terminal
        assert all(s.is_terminal for s in ListingStatus if s is not ListingStatus.ACTIVE)

    def test_engine_transition_is_active_to_api_sync_removed(self) -> None:
        assert ListingStatus.ACTIVE.can_transition(ListingStatus.API_SYNC_REMOVED)
        assert not ListingStatus.ACTIVE.can_transition(ListingStatus.SOLD)
        assert not ListingStatus.MANUALLY_REMOVED.can_transition(ListingStatus.API_SYNC_REMOVED)
        assert not ListingStatus.API_SYNC_REMOVED.can_transition(ListingStatus.ACTIVE)


class TestUserModel:
    def test_instantiation_with_explicit_id(self) -> None:
        uid = uuid.uuid4()
        user = User(id=uid, email="system@nftmirror.internal", role="admin")
        assert user.id == uid

    def test_repr_contains_key_info(self) -> None:
        r = repr(User(email="system@nftmirror.internal", role="admin"))
        assert "User" in r
        assert "email=" in r
        assert "role=" in r


class TestListingModel:
    def test_repr_contains_key_info(self) -> None:
        listing = Listing(
            ticker=TICKER,
            token_id=42,
            external_order_id="o1",
            total_price=Decimal("100"),
            status="active",
        )
        r = repr(listing)
        assert "token_id=42" in r
        assert "order='o1'" in r


def _listing_row(order_id: str, status: str = "active") -> dict:
    return {
        "id": uuid.uuid4(),
        "external_order_id": order_id,
        "ticker": TICKER,
        "token_id": 42,
        "total_price": Decimal("100"),
        "source": "external-api",
        "status": status,
    }


@pytest.mark.asyncio
async def test_one_active_listing_per_token(store):
    await store.insert(Listing, _listing_row("o1"))

    with pytest.raises(IntegrityError) as exc_info:
        await store.insert(Listing, _listing_row("o2"))

    assert is_unique_violation(exc_info.value)


@pytest.mark.asyncio
async def test_inactive_rows_do_not_collide(store):
    await store.insert(Listing, _listing_row("o1", status="api_sync_removed"))
    await store.insert(Listing, _listing_row("o2", status="sold"))
    await store.insert(Listing, _listing_row("o3"))

    assert await store.count(Listing, {"token_id": 42}) == 3
