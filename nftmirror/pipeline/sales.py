"""
NFT Mirror — Sales History Delta Sync

Append-only catch-up of each token's completed orders. Counts are compared
first; the full remote history is fetched only when the marketplace reports
more sales than the store holds. Existing rows are never updated or deleted
and the marketplace order id is the only idempotency key.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from nftmirror.config import settings
from nftmirror.errors import SyncAbortedError, is_unique_violation
from nftmirror.models import SalesRecord
from nftmirror.pipeline.marketplace import MarketplaceSource, Order, validate_token_id
from nftmirror.pipeline.results import BatchResult, ItemAction, RangeSummary, drive_range
from nftmirror.pipeline.store import MirrorStore, utcnow
from nftmirror.utils.pacing import Pacer

logger = structlog.get_logger(__name__)

SALES_SORT_FIELD = "fullfillmentTimestamp"


@dataclass
class SalesSyncResult:
    token_id: int
    action: ItemAction
    remote_count: int = 0
    local_count: int = 0
    inserted: BatchResult = field(default_factory=BatchResult)
    error: str | None = None


class SalesHistorySyncer:
    """
    Usage:
        syncer = SalesHistorySyncer(source, store)
        result = await syncer.sync_token("KASPUNKS", 42)
        summary = await syncer.sync_range("KASPUNKS", 1, 1000)
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

    async def fetch_history(self, ticker: str, token_id: int) -> list[Order]:
        """Every completed order for a token, newest first."""
        size = settings.SALES_FETCH_PAGE_SIZE
        sales: list[Order] = []
        offset = 0
        while True:
            page = await self.source.completed_orders(
                ticker,
                token_id,
                offset=offset,
                limit=size,
                sort_field=SALES_SORT_FIELD,
                sort_dir="desc",
            )
            sales.extend(page.orders)
            if page.received < size:
                return sales
            offset += size

    async def insert_sales(self, ticker: str, sales: list[Order]) -> BatchResult:
        """Insert sales one row at a time. A duplicate id means another writer won: success."""
        result = BatchResult()
        for index, sale in enumerate(sales):
            self.pacer.check_stop("sales inserts")
            row = {
                "id": sale.id,
                "ticker": ticker,
                "token_id": sale.token_id,
                "sale_price": sale.total_price,
                "sale_date": sale.fulfilled_at,
                "recorded_at": utcnow(),
            }
            try:
                await self.store.insert(SalesRecord, row)
                result.record_success()
            except SyncAbortedError:
                raise
            except Exception as e:
                if is_unique_violation(e):
                    logger.debug("sale_already_recorded", sale_id=sale.id, token_id=sale.token_id)
                    result.record_success()
                else:
                    logger.error(
                        "sale_insert_failed",
                        sale_id=sale.id,
                        token_id=sale.token_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    result.record_failure(sale.id, e)
            if index < len(sales) - 1:
                await self.pacer.pause(settings.SALES_INSERT_DELAY_SECONDS)
        return result

    async def sync_token(self, ticker: str, token_id: int | str) -> SalesSyncResult:
        try:
            numeric_id = validate_token_id(token_id)
        except ValueError as e:
            return SalesSyncResult(token_id=-1, action=ItemAction.ERROR, error=str(e))

        try:
            first_page = await self.source.completed_orders(
                ticker, numeric_id, offset=0, limit=1, sort_field=SALES_SORT_FIELD, sort_dir="desc"
            )
            known = await self.store.sales_ids_for_token(ticker, numeric_id)
            result = SalesSyncResult(
                token_id=numeric_id,
                action=ItemAction.UP_TO_DATE,
                remote_count=first_page.total_count,
                local_count=len(known),
            )
            if len(known) >= first_page.total_count:
                return result

            logger.info(
                "sales_behind",
                ticker=ticker,
                token_id=numeric_id,
                remote=first_page.total_count,
                local=len(known),
            )
            history = await self.fetch_history(ticker, numeric_id)

            missing: list[Order] = []
            seen = set(known)
            for sale in history:
                if sale.id not in seen:
                    seen.add(sale.id)
                    missing.append(sale)
            if not missing:
                return result

            result.inserted = await self.insert_sales(ticker, missing)
        except SyncAbortedError:
            raise
        except Exception as e:
            logger.error(
                "sales_token_sync_failed",
                ticker=ticker,
                token_id=numeric_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return SalesSyncResult(token_id=numeric_id, action=ItemAction.ERROR, error=str(e))

        if result.inserted.failed:
            result.action = ItemAction.ERROR
            result.error = "; ".join(result.inserted.errors)
        else:
            result.action = ItemAction.SYNCED

        logger.info(
            "sales_token_synced",
            ticker=ticker,
            token_id=numeric_id,
            inserted=result.inserted.succeeded,
            failed=result.inserted.failed,
        )
        return result

    async def sync_range(
        self,
        ticker: str,
        start: int,
        end: int,
        batch_size: int | None = None,
    ) -> RangeSummary:
        async def step(token_id: int) -> SalesSyncResult:
            return await self.sync_token(ticker, token_id)

        return await drive_range(
            "sales",
            start,
            end,
            step,
            pacer=self.pacer,
            batch_size=batch_size or settings.SALES_BATCH_SIZE,
            token_delay=settings.SALES_TOKEN_DELAY_SECONDS,
            batch_delay=settings.SALES_BATCH_DELAY_SECONDS,
        )
