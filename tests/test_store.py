"""
Tests for the store boundary.

Coverage:
- Transient store failures retried, constraint violations not
- Filters (IN, IS NULL), composite-key updates
- Metrics per store operation kind
- System actor lookup, creation and duplicate-key race
- collection_stats upsert
- Hung store attempts timed out and retried
- token_ownership bulk upsert
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import exc as sa_exc

from nftmirror.config import settings
from nftmirror.errors import StoreError
from nftmirror.models import CollectionStats, Owner, TokenOwnership, User
from nftmirror.pipeline.store import MirrorStore
from nftmirror.utils.retry import BackoffProfile
from tests.conftest import TICKER


def _stats(holders: int) -> dict:
    return {
        "total_supply": 1000,
        "total_minted": 900,
        "total_holders": holders,
        "average_holding": Decimal("2.50"),
        "last_synced_at": datetime(2025, 6, 1, tzinfo=timezone.utc),
    }


# ---------------------------------------------------------------------------
# Test 1: Retry behaviour
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_transient_failure_is_retried(session_factory, metrics, no_sleep):
    calls = {"n": 0}

    def flaky_factory():
        calls["n"] += 1
        if calls["n"] == 1:
            raise sa_exc.OperationalError("SELECT 1", {}, Exception("server closed the connection"))
        return session_factory()

    store = MirrorStore(flaky_factory, metrics=metrics, sleep=no_sleep)

    assert await store.count(Owner) == 0
    assert metrics.services["store"].retries == 1
    assert metrics.services["store"].successful == 1
    no_sleep.assert_awaited_once()


@pytest.mark.asyncio
async def test_duplicate_key_is_not_retried(store, metrics):
    await store.insert(User, {"email": "ops@example.com", "role": "admin"})

    with pytest.raises(sa_exc.IntegrityError) as exc_info:
        await store.insert(User, {"email": "ops@example.com", "role": "admin"})

    assert exc_info.value.attempts == 1
    assert metrics.services["store"].retries == 0
    assert metrics.services["store"].failed == 1


# ---------------------------------------------------------------------------
# Test 2: Row operations
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_filters_and_composite_key_update(store, metrics):
    rows = [
        {"ticker": TICKER, "wallet_address": "kaspa:qa", "token_count": 1},
        {"ticker": TICKER, "wallet_address": "kaspa:qb", "token_count": 2},
        {"ticker": "OTHER", "wallet_address": "kaspa:qa", "token_count": 9},
    ]
    assert await store.insert_many(Owner, rows) == 3

    assert await store.owner_counts(TICKER, ["kaspa:qa", "kaspa:qb", "kaspa:qz"]) == {
        "kaspa:qa": 1,
        "kaspa:qb": 2,
    }

    assert await store.update(Owner, (TICKER, "kaspa:qa"), {"token_count": 5}) is True
    assert await store.update(Owner, (TICKER, "kaspa:missing"), {"token_count": 5}) is False
    assert (await store.owner_counts("OTHER", ["kaspa:qa"])) == {"kaspa:qa": 9}
    assert metrics.store_operations == {"inserts": 3, "updates": 1, "deletes": 0}


@pytest.mark.asyncio
async def test_update_rejects_wrong_key_shape(store):
    with pytest.raises(StoreError):
        await store.update(Owner, "kaspa:qa", {"token_count": 1})


@pytest.mark.asyncio
async def test_insert_many_empty_is_a_no_op(store, metrics):
    assert await store.insert_many(Owner, []) == 0
    assert metrics.services == {}


# ---------------------------------------------------------------------------
# Test 3: System actor
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_find_or_create_user_is_idempotent(store):
    first = await store.find_or_create_user("system@nftmirror.internal", "admin")
    second = await store.find_or_create_user("system@nftmirror.internal", "admin")

    assert first == second
    assert await store.count(User) == 1


@pytest.mark.asyncio
async def test_find_or_create_user_survives_race(store, monkeypatch):
    winner = await store.find_or_create_user("system@nftmirror.internal", "admin")
    real_select_one = store.select_one
    lookups = {"n": 0}

    async def stale_first_lookup(model, filters):
        lookups["n"] += 1
        if lookups["n"] == 1:
            return None
        return await real_select_one(model, filters)

    monkeypatch.setattr(store, "select_one", stale_first_lookup)

    assert await store.find_or_create_user("system@nftmirror.internal", "admin") == winner


# ---------------------------------------------------------------------------
# Test 4: Collection stats
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_upsert_collection_stats(store):
    assert await store.upsert_collection_stats(TICKER, _stats(100)) == "inserted"
    assert await store.upsert_collection_stats(TICKER, _stats(120)) == "updated"

    rows = await store.select(CollectionStats)
    assert len(rows) == 1
    assert rows[0].total_holders == 120


# ---------------------------------------------------------------------------
# Test 5: Store timeouts
# ---------------------------------------------------------------------------


def _stalling_factory(session_factory, stalls: list[float]):
    """Session factory whose next sessions hang for the given seconds before opening."""

    @asynccontextmanager
    async def open_session():
        if stalls:
            await asyncio.sleep(stalls.pop(0))
        async with session_factory() as session:
            yield session

    return open_session


@pytest.mark.asyncio
async def test_hung_attempt_times_out_and_is_retried(session_factory, metrics, no_sleep):
    store = MirrorStore(
        _stalling_factory(session_factory, [5.0]),
        metrics=metrics,
        sleep=no_sleep,
        timeout=0.05,
        profile=BackoffProfile(max_attempts=3, base_delay=0.1),
    )

    assert await store.count(Owner) == 0
    assert metrics.services["store"].retries == 1
    assert metrics.services["store"].successful == 1


@pytest.mark.asyncio
async def test_store_that_stays_hung_surfaces_timeout(session_factory, metrics, no_sleep):
    store = MirrorStore(
        _stalling_factory(session_factory, [5.0, 5.0]),
        metrics=metrics,
        sleep=no_sleep,
        timeout=0.05,
        profile=BackoffProfile(max_attempts=2, base_delay=0.1),
    )

    with pytest.raises(asyncio.TimeoutError) as exc_info:
        await store.count(Owner)

    assert exc_info.value.attempts == 2
    assert metrics.services["store"].retries == 1
    assert metrics.services["store"].failed == 1
    no_sleep.assert_awaited_once()


def test_store_timeout_defaults_to_settings(session_factory, monkeypatch):
    monkeypatch.setattr(settings, "STORE_TIMEOUT_SECONDS", 7.5)

    assert MirrorStore(session_factory)._timeout == 7.5
    assert MirrorStore(session_factory, timeout=1.0)._timeout == 1.0


# ---------------------------------------------------------------------------
# Test 6: Token ownership upsert
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_upsert_token_ownership_inserts_then_overwrites(store, metrics):
    first = [
        {"token_id": 1, "wallet_address": "kaspa:qa"},
        {"token_id": 2, "wallet_address": "kaspa:qb"},
    ]
    second = [
        {"token_id": 2, "wallet_address": "kaspa:qc"},
        {"token_id": 3, "wallet_address": "kaspa:qa"},
    ]

    assert await store.upsert_token_ownership(TICKER, first) == 2
    assert await store.upsert_token_ownership(TICKER, second) == 2

    rows = await store.select(TokenOwnership, {"ticker": TICKER}, order_by=(TokenOwnership.token_id,))
    assert [(r.token_id, r.wallet_address) for r in rows] == [
        (1, "kaspa:qa"),
        (2, "kaspa:qc"),
        (3, "kaspa:qa"),
    ]
    assert metrics.store_operations["updates"] == 4


@pytest.mark.asyncio
async def test_upsert_token_ownership_empty_is_a_no_op(store, metrics):
    assert await store.upsert_token_ownership(TICKER, []) == 0
    assert metrics.services == {}
