"""
NFT Mirror — Listings Reconciliation

Keeps the local active listings consistent with the marketplace order book.

Two correlation policies share one diff and one apply path:

  BY_ORDER_ID  full reconciliation. Remote and local are matched by the
               marketplace order id, so an order replaced under a new id is a
               remove plus an add and the old row keeps its history.
  BY_TOKEN     single-token sync. Matched by (ticker, token_id, active), and
               the order id is one of the compared fields, so a replaced
               order updates the existing row in place.

The engine only ever writes active -> api_sync_removed. Rows in any other
terminal state are never loaded and never touched. Removals are applied
before inserts so a token never holds two active rows at once.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Hashable, Iterable

import structlog

from nftmirror.config import ListingSource, ListingStatus, settings
from nftmirror.errors import SyncAbortedError, is_unique_violation
from nftmirror.models import Listing, Token
from nftmirror.pipeline.marketplace import (
    MarketplaceSource,
    Order,
    fetch_all_pages,
    validate_token_id,
)
from nftmirror.pipeline.metrics import SyncMetrics
from nftmirror.pipeline.results import BatchResult, ItemAction, RangeSummary, attach_partial, drive_range
from nftmirror.pipeline.store import MirrorStore, utcnow
from nftmirror.pipeline.traits import TraitLoader
from nftmirror.utils.pacing import Pacer

logger = structlog.get_logger(__name__)

# Fields compared between a remote order and its local row
COMPARED_FIELDS = ("total_price", "seller_address", "rarity_rank", "required_payment", "is_owner")


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------


class CorrelationPolicy(str, Enum):
    """How a remote order is matched to a local active row."""
    BY_ORDER_ID = "by-order-id"
    BY_TOKEN = "by-token"

    def key_of_order(self, order: Order) -> Hashable:
        if self is CorrelationPolicy.BY_ORDER_ID:
            return order.id
        return order.token_id

    def key_of_listing(self, listing: Listing) -> Hashable:
        if self is CorrelationPolicy.BY_ORDER_ID:
            return listing.external_order_id
        return listing.token_id

    @property
    def compared_fields(self) -> tuple[str, ...]:
        if self is CorrelationPolicy.BY_TOKEN:
            return ("external_order_id",) + COMPARED_FIELDS
        return COMPARED_FIELDS


def _normalize(name: str, value: Any) -> Any:
    if name == "required_payment":
        return Decimal(value) if value is not None else Decimal(0)
    if name == "total_price" and value is not None:
        return Decimal(value)
    if name == "is_owner":
        return bool(value)
    return value


def order_fields(order: Order) -> dict[str, Any]:
    """Comparable field values carried by a remote order."""
    return {
        "external_order_id": order.id,
        "total_price": order.total_price,
        "seller_address": order.seller_address,
        "rarity_rank": order.rarity_rank,
        "required_payment": order.required_payment,
        "is_owner": order.is_owner,
    }


def changed_fields(listing: Listing, order: Order, policy: CorrelationPolicy) -> list[str]:
    remote = order_fields(order)
    return [
        name
        for name in policy.compared_fields
        if _normalize(name, getattr(listing, name)) != _normalize(name, remote[name])
    ]


def listing_values(order: Order, ticker: str) -> dict[str, Any]:
    """Insert values for a new active listing."""
    return {
        "id": uuid.uuid4(),
        "ticker": ticker,
        "token_id": order.token_id,
        "listed_at": order.created_at,
        "source": ListingSource.EXTERNAL_API.value,
        "status": ListingStatus.ACTIVE.value,
        **order_fields(order),
    }


def update_values(order: Order) -> dict[str, Any]:
    """In-place mutation values. Status is never changed by an update."""
    return {**order_fields(order), "listed_at": order.created_at, "updated_at": utcnow()}


@dataclass
class ListingDiff:
    to_add: list[Order] = field(default_factory=list)
    to_remove: list[Listing] = field(default_factory=list)
    to_update: list[tuple[Listing, Order]] = field(default_factory=list)
    unchanged: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.to_add or self.to_remove or self.to_update)


def compute_diff(
    remote: Iterable[Order],
    local: Iterable[Listing],
    policy: CorrelationPolicy = CorrelationPolicy.BY_ORDER_ID,
) -> ListingDiff:
    """
    Three-way diff of remote orders against local active rows.

    to_add = Remote - Local, to_remove = Local - Remote, to_update = matched
    pairs whose compared fields differ. The first remote order per key wins;
    extra local rows sharing a key are removed.
    """
    remote_by_key: dict[Hashable, Order] = {}
    for order in remote:
        key = policy.key_of_order(order)
        if key in remote_by_key:
            logger.warning("listings_duplicate_remote_key", policy=policy.value, key=str(key))
            continue
        remote_by_key[key] = order

    diff = ListingDiff()
    local_by_key: dict[Hashable, Listing] = {}
    for listing in local:
        key = policy.key_of_listing(listing)
        if key is None or key in local_by_key or key not in remote_by_key:
            diff.to_remove.append(listing)
            continue
        local_by_key[key] = listing

    for key, order in remote_by_key.items():
        listing = local_by_key.get(key)
        if listing is None:
            diff.to_add.append(order)
        elif changed_fields(listing, order, policy):
            diff.to_update.append((listing, order))
        else:
            diff.unchanged += 1

    return diff


# ---------------------------------------------------------------------------
# System actor
# ---------------------------------------------------------------------------


class SystemActor:
    """Synthetic identity for automated removals, resolved once per run."""

    def __init__(self, store: MirrorStore, email: str | None = None, role: str | None = None):
        self._store = store
        self.email = email or settings.SYSTEM_ACTOR_EMAIL
        self.role = role or settings.SYSTEM_ACTOR_ROLE
        self._id: uuid.UUID | None = None

    async def resolve(self) -> uuid.UUID:
        if self._id is None:
            self._id = await self._store.find_or_create_user(self.email, self.role)
        return self._id


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ListingsSyncResult:
    ticker: str
    policy: CorrelationPolicy
    remote_count: int = 0
    local_count_before: int = 0
    final_count: int = 0
    removed: BatchResult = field(default_factory=BatchResult)
    added: BatchResult = field(default_factory=BatchResult)
    updated: BatchResult = field(default_factory=BatchResult)
    rejected: BatchResult = field(default_factory=BatchResult)
    unchanged: int = 0

    @property
    def discrepancy(self) -> int:
        return self.remote_count - self.final_count

    @property
    def error_count(self) -> int:
        return self.removed.failed + self.added.failed + self.updated.failed + self.rejected.failed

    def as_dict(self) -> dict[str, Any]:
        return {
            "ticker": self.ticker,
            "policy": self.policy.value,
            "remote_count": self.remote_count,
            "local_count_before": self.local_count_before,
            "final_count": self.final_count,
            "discrepancy": self.discrepancy,
            "added": self.added.as_dict(),
            "removed": self.removed.as_dict(),
            "updated": self.updated.as_dict(),
            "rejected": self.rejected.as_dict(),
            "unchanged": self.unchanged,
        }


@dataclass
class TokenSyncResult:
    token_id: int
    action: ItemAction
    order_id: str | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Syncer
# ---------------------------------------------------------------------------


class ListingSyncer:
    """
    Usage:
        syncer = ListingSyncer(source, store, metrics=metrics)
        result = await syncer.sync_all("KASPUNKS")
        token = await syncer.sync_token("KASPUNKS", 42)
    """

    def __init__(
        self,
        source: MarketplaceSource,
        store: MirrorStore,
        metrics: SyncMetrics | None = None,
        actor: SystemActor | None = None,
        trait_loader: TraitLoader | None = None,
        pacer: Pacer | None = None,
    ):
        self.source = source
        self.store = store
        self.metrics = metrics
        self.actor = actor or SystemActor(store)
        self.pacer = pacer or Pacer()
        self.trait_loader = trait_loader or TraitLoader(source, store, pacer=self.pacer)

    def _start_phase(self, name: str) -> None:
        if self.metrics is not None:
            self.metrics.start_phase(name)

    def _end_phase(self, name: str) -> None:
        if self.metrics is not None:
            self.metrics.end_phase(name)

    # -----------------------------------------------------------------------
    # Apply steps (shared by both policies)
    # -----------------------------------------------------------------------

    async def apply_removals(
        self,
        listings: list[Listing],
        delay: float = 0.0,
        into: BatchResult | None = None,
    ) -> BatchResult:
        result = into if into is not None else BatchResult()
        if not listings:
            return result

        actor_id = await self.actor.resolve()
        for index, listing in enumerate(listings):
            self.pacer.check_stop("listing removals")
            status = ListingStatus(listing.status)
            if not status.can_transition(ListingStatus.API_SYNC_REMOVED):
                logger.warning("listing_not_removable", listing_id=str(listing.id), status=status.value)
                continue
            try:
                if await self.store.deactivate_listing(listing.id, actor_id):
                    result.record_success()
                else:
                    result.record_failure(listing.id, LookupError("listing row not found"))
            except SyncAbortedError:
                raise
            except Exception as e:
                logger.error(
                    "listing_remove_failed",
                    listing_id=str(listing.id),
                    token_id=listing.token_id,
                    error=str(e),
                )
                result.record_failure(listing.id, e)
            if index < len(listings) - 1:
                await self.pacer.pause(delay)
        return result

    async def apply_additions(
        self,
        orders: list[Order],
        ticker: str,
        batch_size: int = 1,
        batch_delay: float = 0.0,
        into: BatchResult | None = None,
    ) -> BatchResult:
        """Insert new listings in batches. A failed batch falls back to per-row inserts."""
        result = into if into is not None else BatchResult()
        for start in range(0, len(orders), batch_size):
            self.pacer.check_stop("listing inserts")
            batch = orders[start:start + batch_size]
            rows = [listing_values(order, ticker) for order in batch]
            try:
                await self.store.insert_many(Listing, rows)
                result.record_success(len(rows))
            except SyncAbortedError:
                raise
            except Exception as e:
                logger.warning("listing_batch_insert_failed", size=len(rows), error=str(e))
                for order, row in zip(batch, rows):
                    try:
                        await self.store.insert(Listing, row)
                        result.record_success()
                    except Exception as row_error:
                        logger.error(
                            "listing_insert_failed",
                            order_id=order.id,
                            token_id=order.token_id,
                            duplicate=is_unique_violation(row_error),
                            error=str(row_error),
                        )
                        result.record_failure(order.id, row_error)
            if start + batch_size < len(orders):
                await self.pacer.pause(batch_delay)
        return result

    async def apply_updates(
        self,
        pairs: list[tuple[Listing, Order]],
        into: BatchResult | None = None,
    ) -> BatchResult:
        result = into if into is not None else BatchResult()
        for listing, order in pairs:
            self.pacer.check_stop("listing updates")
            try:
                if await self.store.update(Listing, listing.id, update_values(order)):
                    result.record_success()
                else:
                    result.record_failure(listing.id, LookupError("listing row not found"))
            except SyncAbortedError:
                raise
            except Exception as e:
                logger.error("listing_update_failed", listing_id=str(listing.id), error=str(e))
                result.record_failure(listing.id, e)
        return result

    # -----------------------------------------------------------------------
    # Full reconciliation
    # -----------------------------------------------------------------------

    async def sync_all(
        self,
        ticker: str,
        policy: CorrelationPolicy = CorrelationPolicy.BY_ORDER_ID,
    ) -> ListingsSyncResult:
        """
        Reconcile the whole order book of a ticker.

        Source or store failures while fetching abort the run. Failures while
        applying are counted per item and never abort. Malformed remote
        orders are counted as rejected and left out of the diff. On abort the
        counts gathered so far ride on the exception as `partial_counts`.
        """
        result = ListingsSyncResult(ticker=ticker, policy=policy)
        try:
            return await self._sync_all(ticker, policy, result)
        except Exception as e:
            attach_partial(e, result.as_dict())
            raise

    async def _sync_all(
        self,
        ticker: str,
        policy: CorrelationPolicy,
        result: ListingsSyncResult,
    ) -> ListingsSyncResult:
        logger.info("listings_sync_start", ticker=ticker, policy=policy.value)

        self._start_phase("fetch")
        try:
            first_page = await self.source.list_orders(ticker, offset=0, limit=1)
            logger.info("listings_source_reachable", ticker=ticker, total_count=first_page.total_count)

            book = await fetch_all_pages(
                self.source,
                ticker,
                page_size=settings.LISTINGS_PAGE_SIZE,
                page_delay=settings.LISTINGS_PAGE_DELAY_SECONDS,
                sleep=self.pacer.pause,
            )
            local = await self.store.active_listings(ticker)
        finally:
            self._end_phase("fetch")

        remote = book.orders
        for rejection in book.rejected:
            result.rejected.record_failure(rejection.id, ValueError(rejection.reason))

        # A rejected order is still on the book: keep its local row as it is
        rejected_ids = {r.id for r in book.rejected if r.id is not None}
        if rejected_ids:
            local = [row for row in local if row.external_order_id not in rejected_ids]

        diff = compute_diff(remote, local, policy)
        result.remote_count = len(remote)
        result.local_count_before = len(local)
        result.unchanged = diff.unchanged
        logger.info(
            "listings_diff_computed",
            ticker=ticker,
            remote=len(remote),
            local=len(local),
            to_add=len(diff.to_add),
            to_remove=len(diff.to_remove),
            to_update=len(diff.to_update),
            unchanged=diff.unchanged,
        )

        self._start_phase("apply")
        try:
            await self.apply_removals(
                diff.to_remove,
                delay=settings.LISTINGS_REMOVE_DELAY_SECONDS,
                into=result.removed,
            )
            await self.apply_additions(
                diff.to_add,
                ticker,
                batch_size=settings.LISTINGS_INSERT_BATCH_SIZE,
                batch_delay=settings.LISTINGS_INSERT_BATCH_DELAY_SECONDS,
                into=result.added,
            )
            await self.apply_updates(diff.to_update, into=result.updated)
        finally:
            self._end_phase("apply")

        result.final_count = await self.store.count_active_listings(ticker)
        if result.discrepancy:
            logger.warning(
                "listings_count_discrepancy",
                ticker=ticker,
                remote_count=result.remote_count,
                final_count=result.final_count,
                difference=result.discrepancy,
            )

        logger.info("listings_sync_complete", **result.as_dict())
        return result

    # -----------------------------------------------------------------------
    # Single token
    # -----------------------------------------------------------------------

    async def _seed_token(self, ticker: str, token_id: int) -> None:
        """First sighting of a token: record its dimension row and traits."""
        if await self.store.token_exists(ticker, token_id):
            return

        payload = await self.source.token_traits(ticker, token_id)
        if payload is None:
            logger.warning("token_details_missing", ticker=ticker, token_id=token_id)
            return

        try:
            await self.store.insert(
                Token,
                {
                    "ticker": ticker,
                    "token_id": token_id,
                    "rarity_rank": payload.rarity_rank,
                    "is_legendary": payload.legendary,
                },
            )
        except Exception as e:
            if not is_unique_violation(e):
                raise
        await self.trait_loader.store_traits(ticker, token_id, payload.traits)

    async def sync_token(self, ticker: str, token_id: int | str) -> TokenSyncResult:
        """
        Reconcile one token, correlating by (ticker, token_id, active).

        A changed order id on the same token is an update, not a remove+add.
        """
        try:
            numeric_id = validate_token_id(token_id)
        except ValueError as e:
            return TokenSyncResult(token_id=-1, action=ItemAction.ERROR, error=str(e))

        policy = CorrelationPolicy.BY_TOKEN
        try:
            page = await self.source.list_orders(ticker, offset=0, limit=1, token_id=numeric_id)
            if page.rejected and not page.orders:
                reason = "; ".join(str(r) for r in page.rejected)
                logger.error("listing_token_order_invalid", ticker=ticker, token_id=numeric_id, reason=reason)
                return TokenSyncResult(token_id=numeric_id, action=ItemAction.ERROR, error=reason)
            remote = page.orders[:1]

            try:
                await self._seed_token(ticker, numeric_id)
            except SyncAbortedError:
                raise
            except Exception as e:
                logger.warning("token_seed_failed", ticker=ticker, token_id=numeric_id, error=str(e))

            current = await self.store.active_listing_for_token(ticker, numeric_id)
            diff = compute_diff(remote, [current] if current else [], policy)

            removed = await self.apply_removals(diff.to_remove)
            added = await self.apply_additions(diff.to_add, ticker)
            updated = await self.apply_updates(diff.to_update)
        except SyncAbortedError:
            raise
        except Exception as e:
            logger.error(
                "listing_token_sync_failed",
                ticker=ticker,
                token_id=numeric_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return TokenSyncResult(token_id=numeric_id, action=ItemAction.ERROR, error=str(e))

        order_id = remote[0].id if remote else None
        failures = removed.errors + added.errors + updated.errors
        if failures:
            action = ItemAction.ERROR
        elif added.succeeded:
            action = ItemAction.ADDED
        elif updated.succeeded:
            action = ItemAction.UPDATED
        elif removed.succeeded:
            action = ItemAction.REMOVED
        else:
            action = ItemAction.NO_CHANGE

        logger.debug("listing_token_synced", ticker=ticker, token_id=numeric_id, action=action.value)
        return TokenSyncResult(
            token_id=numeric_id,
            action=action,
            order_id=order_id,
            error="; ".join(failures) or None,
        )

    async def sync_range(
        self,
        ticker: str,
        start: int,
        end: int,
        batch_size: int | None = None,
    ) -> RangeSummary:
        async def step(token_id: int) -> TokenSyncResult:
            return await self.sync_token(ticker, token_id)

        self._start_phase("apply")
        try:
            return await drive_range(
                "listings",
                start,
                end,
                step,
                pacer=self.pacer,
                batch_size=batch_size or settings.TOKEN_RANGE_BATCH_SIZE,
                token_delay=settings.TOKEN_RANGE_DELAY_SECONDS,
                batch_delay=settings.TOKEN_RANGE_BATCH_DELAY_SECONDS,
            )
        finally:
            self._end_phase("apply")
