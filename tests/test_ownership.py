"""
Tests for the token ownership loader.

Coverage:
- Paging by `next` cursor and by `hasMore` offset, with the page cap
- Wallet normalization and last-occurrence dedupe by token id
- Upsert overwrites moved tokens, table counted before and after
- Empty listing is an error, not a wipe
- Failed write batches counted, stop requests carry partial counts
"""

import asyncio

import pytest

from nftmirror.config import settings
from nftmirror.errors import SourceResponseError, SyncAbortedError
from nftmirror.models import TokenOwnership
from nftmirror.pipeline.marketplace import OwnershipPage, OwnershipRecord
from nftmirror.pipeline.ownership import OwnershipSyncer, advance_offset, dedupe_by_token
from nftmirror.pipeline.results import ItemAction
from nftmirror.utils.pacing import Pacer
from tests.conftest import TICKER


def _page(*records: tuple[int, str], next_offset=None, has_more: bool = False) -> OwnershipPage:
    payload = {"result": [{"tokenId": token_id, "owner": wallet} for token_id, wallet in records]}
    if next_offset is not None:
        payload["next"] = next_offset
    if has_more:
        payload["hasMore"] = True
    return OwnershipPage.model_validate(payload)


@pytest.fixture
def syncer(source, store, pacer) -> OwnershipSyncer:
    return OwnershipSyncer(source, store, pacer=pacer)


async def _owners(store) -> dict[int, str]:
    rows = await store.select(TokenOwnership, {"ticker": TICKER})
    return {row.token_id: row.wallet_address for row in rows}


# ---------------------------------------------------------------------------
# Test 1: Dedupe & offsets
# ---------------------------------------------------------------------------


def test_dedupe_keeps_last_occurrence():
    records = [
        OwnershipRecord(token_id=1, wallet_address="kaspa:qa"),
        OwnershipRecord(token_id=2, wallet_address="kaspa:qb"),
        OwnershipRecord(token_id=1, wallet_address="kaspa:qc"),
    ]

    unique = {r.token_id: r.wallet_address for r in dedupe_by_token(records)}

    assert unique == {1: "kaspa:qc", 2: "kaspa:qb"}


def test_advance_offset():
    assert advance_offset(None, 50) == "50"
    assert advance_offset("50", 50) == "100"
    with pytest.raises(SourceResponseError):
        advance_offset("cursor-abc", 50)


# ---------------------------------------------------------------------------
# Test 2: Paging
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_follows_next_cursor_until_last_page(syncer, source, store, no_sleep):
    source.ownership_pages = [
        _page((1, "kaspa:qa"), (2, "kaspa:qb"), next_offset="c2"),
        _page((3, "kaspa:qc"), next_offset=7),
        _page((4, "kaspa:qd")),
    ]

    result = await syncer.sync(TICKER)

    assert [c["offset"] for c in source.calls_to("ownership_page")] == [None, "c2", "7"]
    assert result.pages == 3
    assert result.fetched == 4
    assert result.truncated is False
    assert await _owners(store) == {1: "kaspa:qa", 2: "kaspa:qb", 3: "kaspa:qc", 4: "kaspa:qd"}
    delays = [call.args[0] for call in no_sleep.await_args_list]
    assert delays == [settings.OWNERSHIP_PAGE_DELAY_SECONDS] * 2


@pytest.mark.asyncio
async def test_has_more_advances_by_records_received(syncer, source):
    source.ownership_pages = [
        _page((1, "kaspa:qa"), (2, "kaspa:qb"), has_more=True),
        _page((3, "kaspa:qc"), has_more=True),
        _page(),
    ]

    result = await syncer.sync(TICKER)

    assert [c["offset"] for c in source.calls_to("ownership_page")] == [None, "2", "3"]
    assert result.unique_tokens == 3


@pytest.mark.asyncio
async def test_page_cap_truncates(syncer, source, monkeypatch):
    monkeypatch.setattr(settings, "OWNERSHIP_MAX_PAGES", 2)
    source.ownership_pages = [
        _page((1, "kaspa:qa"), next_offset="1"),
        _page((2, "kaspa:qb"), next_offset="2"),
        _page((3, "kaspa:qc")),
    ]

    result = await syncer.sync(TICKER)

    assert len(source.calls_to("ownership_page")) == 2
    assert result.truncated is True
    assert result.unique_tokens == 2
    assert result.as_dict()["truncated"] is True


# ---------------------------------------------------------------------------
# Test 3: Writes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_wallets_normalized_and_duplicates_collapsed(syncer, source, store):
    source.ownership_pages = [
        _page((1, "  Kaspa:QA "), (2, "kaspa:qb"), next_offset="2"),
        _page((1, "KASPA:QZ"), (3, "   "), ("x", "kaspa:qc")),
    ]

    result = await syncer.sync(TICKER)

    assert result.fetched == 3
    assert result.skipped == 2
    assert result.duplicates == 1
    assert result.unique_tokens == 2
    assert result.written.succeeded == 2
    assert await _owners(store) == {1: "kaspa:qz", 2: "kaspa:qb"}


@pytest.mark.asyncio
async def test_rerun_overwrites_moved_tokens_and_counts_table(syncer, source, store):
    source.ownership_pages = [_page((1, "kaspa:qa"), (2, "kaspa:qb"))]
    first = await syncer.sync(TICKER)

    source.calls.clear()
    source.ownership_pages = [_page((2, "kaspa:qc"), (3, "kaspa:qd"))]
    second = await syncer.sync(TICKER)

    assert first.count_before == 0
    assert first.count_after == 2
    assert second.count_before == 2
    assert second.count_after == 3
    assert await _owners(store) == {1: "kaspa:qa", 2: "kaspa:qc", 3: "kaspa:qd"}


@pytest.mark.asyncio
async def test_writes_in_batches(syncer, source, store, monkeypatch):
    source.ownership_pages = [_page(*[(i, f"kaspa:q{i}") for i in range(1, 6)])]
    sizes = []
    real_upsert = store.upsert_token_ownership

    async def recording_upsert(ticker, rows):
        sizes.append(len(rows))
        return await real_upsert(ticker, rows)

    monkeypatch.setattr(store, "upsert_token_ownership", recording_upsert)

    result = await syncer.sync(TICKER, batch_size=2)

    assert sizes == [2, 2, 1]
    assert result.written.succeeded == 5


# ---------------------------------------------------------------------------
# Test 4: Failure modes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_empty_listing_is_error_and_writes_nothing(syncer, source, store):
    await store.upsert_token_ownership(TICKER, [{"token_id": 1, "wallet_address": "kaspa:qa"}])
    source.ownership_pages = [_page()]

    result = await syncer.sync(TICKER)

    assert result.action is ItemAction.ERROR
    assert result.error_count == 1
    assert await _owners(store) == {1: "kaspa:qa"}


@pytest.mark.asyncio
async def test_failed_batch_is_counted(syncer, source, store, monkeypatch):
    source.ownership_pages = [_page(*[(i, f"kaspa:q{i}") for i in range(1, 5)])]
    calls = {"n": 0}
    real_upsert = store.upsert_token_ownership

    async def second_batch_fails(ticker, rows):
        calls["n"] += 1
        if calls["n"] == 2:
            raise RuntimeError("deadlock detected")
        return await real_upsert(ticker, rows)

    monkeypatch.setattr(store, "upsert_token_ownership", second_batch_fails)

    result = await syncer.sync(TICKER, batch_size=2)

    assert result.action is ItemAction.SYNCED
    assert result.written.succeeded == 2
    assert result.written.failed == 2
    assert result.error_count == 2
    assert "tokens 3..4" in result.written.errors[0]
    assert result.count_after == 2


@pytest.mark.asyncio
async def test_fetch_failure_aborts_with_partial_counts(syncer, source, store, monkeypatch):
    source.ownership_pages = [_page((1, "kaspa:qa"), next_offset="1")]
    real_page = source.ownership_page

    async def second_page_fails(ticker, offset=None):
        if offset is not None:
            raise RuntimeError("listing unavailable")
        return await real_page(ticker, offset=offset)

    monkeypatch.setattr(source, "ownership_page", second_page_fails)

    with pytest.raises(RuntimeError) as excinfo:
        await syncer.sync(TICKER)

    assert excinfo.value.partial_counts["pages"] == 1
    assert await _owners(store) == {}


@pytest.mark.asyncio
async def test_stop_request_aborts_between_pages(source, store):
    stop = asyncio.Event()

    async def stop_on_pause(seconds):
        stop.set()

    syncer = OwnershipSyncer(source, store, pacer=Pacer(sleep=stop_on_pause, stop_event=stop))
    source.ownership_pages = [
        _page((1, "kaspa:qa"), next_offset="1"),
        _page((2, "kaspa:qb")),
    ]

    with pytest.raises(SyncAbortedError) as excinfo:
        await syncer.sync(TICKER)

    assert len(source.calls_to("ownership_page")) == 1
    assert excinfo.value.partial_counts["pages"] == 1
    assert await _owners(store) == {}
