"""
NFT Mirror — Holder Snapshot Loader

Mirrors the marketplace's holder distribution into owners and keeps one
collection_stats row per ticker. Holders are written in batches; within a
batch a wallet reported twice keeps its higher count.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import structlog

from nftmirror.config import settings
from nftmirror.errors import SyncAbortedError
from nftmirror.models import Owner
from nftmirror.pipeline.marketplace import Holder, MarketplaceSource, OwnersSnapshot
from nftmirror.pipeline.results import BatchResult, ItemAction, attach_partial
from nftmirror.pipeline.store import MirrorStore, utcnow
from nftmirror.utils.pacing import Pacer

logger = structlog.get_logger(__name__)


@dataclass
class OwnersSyncResult:
    ticker: str
    action: ItemAction
    total_holders: int = 0
    processed: int = 0
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    batches: BatchResult = field(default_factory=BatchResult)
    error: str | None = None

    @property
    def error_count(self) -> int:
        return self.batches.failed + (1 if self.action is ItemAction.ERROR else 0)

    def as_dict(self) -> dict[str, Any]:
        return {
            "ticker": self.ticker,
            "action": self.action.value,
            "total_holders": self.total_holders,
            "processed": self.processed,
            "added": self.added,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "failed": self.batches.failed,
            "error": self.error,
        }


def dedupe_holders(batch: list[Holder]) -> list[Holder]:
    """One entry per wallet, keeping the higher count."""
    unique: dict[str, Holder] = {}
    for holder in batch:
        current = unique.get(holder.owner)
        if current is None or holder.count > current.count:
            unique[holder.owner] = holder
    return list(unique.values())


def collection_stats_values(snapshot: OwnersSnapshot) -> dict[str, Any]:
    holders = snapshot.total_holders or len(snapshot.holders)
    minted = snapshot.total_minted or snapshot.total_supply
    average = (Decimal(minted) / Decimal(holders)).quantize(Decimal("0.01")) if holders else Decimal(0)
    return {
        "total_supply": snapshot.total_supply,
        "total_minted": minted,
        "total_holders": holders,
        "average_holding": average,
        "last_synced_at": utcnow(),
    }


class OwnersSyncer:
    """
    Usage:
        syncer = OwnersSyncer(source, store)
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

    async def _write_batch(self, ticker: str, holders: list[Holder], result: OwnersSyncResult) -> None:
        """Insert new wallets and update changed counts. Failures are counted per holder."""
        existing = await self.store.owner_counts(ticker, [h.owner for h in holders])
        now = utcnow()

        new_rows = [
            {"ticker": ticker, "wallet_address": h.owner, "token_count": h.count, "updated_at": now}
            for h in holders
            if h.owner not in existing
        ]
        if new_rows:
            try:
                inserted = await self.store.insert_many(Owner, new_rows)
                result.added += inserted
                result.batches.record_success(inserted)
            except SyncAbortedError:
                raise
            except Exception as e:
                logger.error("owners_insert_failed", ticker=ticker, size=len(new_rows), error=str(e))
                result.batches.record_failure(f"{len(new_rows)} new holders", e, len(new_rows))

        for holder in holders:
            previous = existing.get(holder.owner)
            if previous is None:
                continue
            if previous == holder.count:
                result.unchanged += 1
                result.batches.record_success()
                continue
            try:
                await self.store.update(
                    Owner,
                    (ticker, holder.owner),
                    {"token_count": holder.count, "updated_at": now},
                )
                result.updated += 1
                result.batches.record_success()
            except SyncAbortedError:
                raise
            except Exception as e:
                logger.error("owner_update_failed", ticker=ticker, wallet=holder.owner, error=str(e))
                result.batches.record_failure(holder.owner, e)

    async def sync(self, ticker: str, batch_size: int | None = None) -> OwnersSyncResult:
        size = batch_size or settings.OWNERS_BATCH_SIZE
        snapshot = await self.source.owners(ticker)

        if not snapshot.holders:
            logger.warning("owners_no_holders", ticker=ticker)
            return OwnersSyncResult(
                ticker=ticker,
                action=ItemAction.ERROR,
                error="no holders returned by the marketplace",
            )

        result = OwnersSyncResult(
            ticker=ticker,
            action=ItemAction.SYNCED,
            total_holders=snapshot.total_holders or len(snapshot.holders),
        )
        try:
            await self._sync_holders(ticker, snapshot, size, result)
        except Exception as e:
            attach_partial(e, result.as_dict())
            raise

        logger.info("owners_sync_complete", **result.as_dict())
        return result

    async def _sync_holders(
        self,
        ticker: str,
        snapshot: OwnersSnapshot,
        size: int,
        result: OwnersSyncResult,
    ) -> None:
        try:
            outcome = await self.store.upsert_collection_stats(ticker, collection_stats_values(snapshot))
            logger.info("collection_stats_written", ticker=ticker, outcome=outcome)
        except SyncAbortedError:
            raise
        except Exception as e:
            logger.error("collection_stats_failed", ticker=ticker, error=str(e))

        holders = snapshot.holders
        for start in range(0, len(holders), size):
            self.pacer.check_stop("owners batches")
            batch = dedupe_holders(holders[start:start + size])
            if len(batch) != min(size, len(holders) - start):
                logger.debug("owners_batch_deduplicated", start=start, unique=len(batch))
            try:
                await self._write_batch(ticker, batch, result)
            except SyncAbortedError:
                raise
            except Exception as e:
                # the existing-count lookup failed, so nothing in the batch was written
                logger.error(
                    "owners_batch_failed",
                    ticker=ticker,
                    start=start,
                    size=len(batch),
                    error=str(e),
                )
                result.batches.record_failure(f"holders {start + 1}-{start + len(batch)}", e, len(batch))
            result.processed += len(batch)
            if start + size < len(holders):
                await self.pacer.pause(settings.OWNERS_BATCH_DELAY_SECONDS)
