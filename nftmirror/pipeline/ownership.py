"""
NFT Mirror — Token Ownership Loader

Mirrors token_id -> owner wallet for a whole collection. The owner listing is
paged from the source's `next` offset (or by count while it reports
`hasMore`) up to OWNERSHIP_MAX_PAGES. Wallets arrive normalized, records are
deduplicated by token id with the last occurrence winning, and rows are
written with a bulk upsert. The table is counted before and after the write.

A fetch failure aborts the run before anything is written. Write failures
are counted per batch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog

from nftmirror.config import settings
from nftmirror.errors import SourceResponseError, SyncAbortedError
from nftmirror.models import TokenOwnership
from nftmirror.pipeline.marketplace import MarketplaceSource, OwnershipRecord
from nftmirror.pipeline.results import BatchResult, ItemAction, attach_partial
from nftmirror.pipeline.store import MirrorStore
from nftmirror.utils.pacing import Pacer

logger = structlog.get_logger(__name__)


@dataclass
class OwnershipSyncResult:
    ticker: str
    action: ItemAction
    pages: int = 0
    fetched: int = 0
    skipped: int = 0
    duplicates: int = 0
    unique_tokens: int = 0
    truncated: bool = False
    count_before: int | None = None
    count_after: int | None = None
    written: BatchResult = field(default_factory=BatchResult)
    error: str | None = None

    @property
    def error_count(self) -> int:
        return self.written.failed + (1 if self.action is ItemAction.ERROR else 0)

    def as_dict(self) -> dict[str, Any]:
        return {
            "ticker": self.ticker,
            "action": self.action.value,
            "pages": self.pages,
            "fetched": self.fetched,
            "skipped": self.skipped,
            "duplicates": self.duplicates,
            "unique_tokens": self.unique_tokens,
            "truncated": self.truncated,
            "count_before": self.count_before,
            "count_after": self.count_after,
            "written": self.written.as_dict(),
            "error": self.error,
        }


def dedupe_by_token(records: list[OwnershipRecord]) -> list[OwnershipRecord]:
    """One record per token id. A later record replaces an earlier one."""
    latest: dict[int, OwnershipRecord] = {}
    for record in records:
        latest[record.token_id] = record
    return list(latest.values())


def advance_offset(offset: str | None, received: int) -> str:
    """Next offset for a `hasMore` page that carried no explicit `next`."""
    try:
        return str(int(offset or 0) + received)
    except ValueError as e:
        raise SourceResponseError(f"cannot advance non-numeric offset {offset!r}") from e


class OwnershipSyncer:
    """
    Usage:
        syncer = OwnershipSyncer(source, store)
        result = await syncer.sync("KASPUNKS")
    """

    def __init__(
        self,
        source: MarketplaceSource,
        store: MirrorStore,
        pacer: Pacer | None = None,
    ):
        self.source = source
        self.store = store
        self.pacer = pacer or Pacer()

    async def table_count(self, ticker: str) -> int | None:
        """Rows currently mirrored for ticker. None when the count itself fails."""
        try:
            return await self.store.count(TokenOwnership, {"ticker": ticker})
        except SyncAbortedError:
            raise
        except Exception as e:
            logger.warning("ownership_count_failed", ticker=ticker, error=str(e))
            return None

    async def fetch_all(self, ticker: str, result: OwnershipSyncResult) -> list[OwnershipRecord]:
        records: list[OwnershipRecord] = []
        offset: str | None = None
        max_pages = settings.OWNERSHIP_MAX_PAGES

        while True:
            self.pacer.check_stop("ownership pages")
            page = await self.source.ownership_page(ticker, offset=offset)
            result.pages += 1
            result.skipped += page.skipped
            records.extend(page.records)
            logger.debug(
                "ownership_page_fetched",
                ticker=ticker,
                page=result.pages,
                offset=offset,
                received=page.received,
                skipped=page.skipped,
            )

            if page.next_offset is not None:
                offset = page.next_offset
            elif page.has_more:
                offset = advance_offset(offset, page.received)
            else:
                return records

            if result.pages >= max_pages:
                result.truncated = True
                logger.warning("ownership_max_pages_reached", ticker=ticker, max_pages=max_pages)
                return records
            await self.pacer.pause(settings.OWNERSHIP_PAGE_DELAY_SECONDS)

    async def sync(self, ticker: str, batch_size: int | None = None) -> OwnershipSyncResult:
        result = OwnershipSyncResult(ticker=ticker, action=ItemAction.SYNCED)
        try:
            await self._sync(ticker, batch_size or settings.OWNERSHIP_WRITE_BATCH_SIZE, result)
        except Exception as e:
            attach_partial(e, result.as_dict())
            raise

        logger.info("ownership_sync_complete", **result.as_dict())
        return result

    async def _sync(self, ticker: str, size: int, result: OwnershipSyncResult) -> None:
        result.count_before = await self.table_count(ticker)
        logger.info("ownership_sync_start", ticker=ticker, count_before=result.count_before)

        records = await self.fetch_all(ticker, result)
        result.fetched = len(records)
        if not records:
            logger.warning("ownership_no_records", ticker=ticker, skipped=result.skipped)
            result.action = ItemAction.ERROR
            result.error = "no valid ownership records returned by the marketplace"
            return

        unique = dedupe_by_token(records)
        result.unique_tokens = len(unique)
        result.duplicates = len(records) - len(unique)
        if result.duplicates:
            logger.info("ownership_duplicates_removed", ticker=ticker, duplicates=result.duplicates)

        for start in range(0, len(unique), size):
            self.pacer.check_stop("ownership writes")
            batch = unique[start:start + size]
            rows = [{"token_id": r.token_id, "wallet_address": r.wallet_address} for r in batch]
            try:
                result.written.record_success(await self.store.upsert_token_ownership(ticker, rows))
            except SyncAbortedError:
                raise
            except Exception as e:
                logger.error(
                    "ownership_batch_failed",
                    ticker=ticker,
                    first_token=batch[0].token_id,
                    size=len(batch),
                    error=str(e),
                )
                result.written.record_failure(
                    f"tokens {batch[0].token_id}..{batch[-1].token_id}", e, len(batch)
                )

        result.count_after = await self.table_count(ticker)
        if result.count_after is not None and result.count_after != result.unique_tokens:
            # tokens that dropped off the listing keep their last known owner
            logger.warning(
                "ownership_count_differs",
                ticker=ticker,
                count_after=result.count_after,
                unique_tokens=result.unique_tokens,
            )
