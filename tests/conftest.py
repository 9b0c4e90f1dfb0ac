"""
NFT Mirror — Shared pytest Fixtures & Configuration

Provides common fixtures for all test modules:
- In-memory SQLite store built from the ORM metadata
- Fake marketplace source with call recording
- Instant sleeps so retry and pacing delays cost nothing
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from nftmirror.pipeline.marketplace import (
    Order,
    OrderPage,
    OwnershipPage,
    OwnersSnapshot,
    TraitPayload,
)
from nftmirror.pipeline.metrics import SyncMetrics
from nftmirror.pipeline.store import MirrorStore, create_schema
from nftmirror.utils.pacing import Pacer

TICKER = "KASPUNKS"


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_order(
    order_id: str,
    token_id: int,
    price: str | int = "100",
    seller: str = "kaspa:seller-1",
    rarity: int | None = 10,
    required: str | None = None,
    fulfilled_at: datetime | None = None,
    is_owner: bool = False,
) -> Order:
    return Order(
        id=order_id,
        ticker=TICKER,
        token_id=token_id,
        total_price=Decimal(str(price)),
        seller_address=seller,
        rarity_rank=rarity,
        required_payment=Decimal(required) if required is not None else None,
        created_at=datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc),
        is_owner=is_owner,
        fulfilled_at=fulfilled_at,
    )


class FakeSource:
    """
    In-memory marketplace with the MarketplaceSource contract.

    Tests mutate listed / completed / traits / snapshot between runs to
    simulate the remote side changing. `malformed` holds raw order dicts
    that are sent on the first page of every matching order query.
    `ownership_pages` are served in order, one per ownership request.
    """

    def __init__(self) -> None:
        self.listed: list[Order] = []
        self.completed: dict[int, list[Order]] = {}
        self.traits: dict[int, TraitPayload] = {}
        self.snapshot = OwnersSnapshot()
        self.malformed: list[dict[str, Any]] = []
        self.ownership_pages: list[OwnershipPage] = []
        self.failing_tokens: set[int] = set()
        self.fail_listing: Exception | None = None
        self.calls: list[tuple[str, Any]] = []

    async def __aenter__(self) -> FakeSource:
        return self

    async def __aexit__(self, *args: Any) -> None:
        return None

    def calls_to(self, name: str) -> list[Any]:
        return [args for call, args in self.calls if call == name]

    async def list_orders(
        self,
        ticker: str,
        offset: int = 0,
        limit: int = 25,
        sort_field: str = "totalPrice",
        sort_dir: str = "asc",
        token_id: int | str | None = None,
    ) -> OrderPage:
        self.calls.append(("list_orders", {"offset": offset, "limit": limit, "token_id": token_id}))
        if self.fail_listing is not None:
            raise self.fail_listing
        if token_id is not None and int(token_id) in self.failing_tokens:
            raise RuntimeError(f"source down for token {token_id}")
        orders = [o for o in self.listed if token_id is None or o.token_id == int(token_id)]
        raw = [
            r for r in self.malformed
            if token_id is None or str(r.get("tokenId")) == str(token_id)
        ]
        page = orders[offset:offset + limit] + (raw if offset == 0 else [])
        return OrderPage.model_validate({"orders": page, "totalCount": len(orders) + len(raw)})

    async def completed_orders(
        self,
        ticker: str,
        token_id: int | str,
        offset: int = 0,
        limit: int = 25,
        sort_field: str = "fullfillmentTimestamp",
        sort_dir: str = "desc",
    ) -> OrderPage:
        self.calls.append(("completed_orders", {"token_id": token_id, "offset": offset, "limit": limit}))
        if int(token_id) in self.failing_tokens:
            raise RuntimeError(f"source down for token {token_id}")
        sales = self.completed.get(int(token_id), [])
        return OrderPage(orders=sales[offset:offset + limit], total_count=len(sales))

    async def token_traits(self, ticker: str, token_id: int | str) -> TraitPayload | None:
        self.calls.append(("token_traits", {"token_id": token_id}))
        if int(token_id) in self.failing_tokens:
            raise RuntimeError(f"source down for token {token_id}")
        return self.traits.get(int(token_id))

    async def owners(self, ticker: str) -> OwnersSnapshot:
        self.calls.append(("owners", {"ticker": ticker}))
        return self.snapshot

    async def ownership_page(self, ticker: str, offset: str | None = None) -> OwnershipPage:
        served = len(self.calls_to("ownership_page"))
        self.calls.append(("ownership_page", {"ticker": ticker, "offset": offset}))
        if served < len(self.ownership_pages):
            return self.ownership_pages[served]
        return OwnershipPage(records=[])


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    In-memory SQLite with every mirror table.

    StaticPool keeps one connection so every store session sees the same
    database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    await create_schema(engine)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest.fixture
def no_sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def metrics() -> SyncMetrics:
    return SyncMetrics()


@pytest.fixture
def store(session_factory, metrics, no_sleep) -> MirrorStore:
    return MirrorStore(session_factory, metrics=metrics, sleep=no_sleep)


@pytest.fixture
def pacer(no_sleep) -> Pacer:
    return Pacer(sleep=no_sleep)


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()
