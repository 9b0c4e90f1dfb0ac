"""
NFT Mirror — Trait Loader

Write-once ingestion of token trait metadata. Once any trait row exists for
a token, the loader never fetches or writes that token again, even if the
marketplace payload changes.

Trait categories form a dictionary keyed by the lower-cased trait name and
ordered by first sighting. The dictionary is read with one query at the start
of every invocation and never cached across runs, so categories added by a
concurrent run are picked up.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

import structlog

from nftmirror.config import settings
from nftmirror.errors import StoreError, SyncAbortedError, is_unique_violation
from nftmirror.models import TraitCategory, TraitRecord
from nftmirror.pipeline.marketplace import MarketplaceSource, TraitValue, validate_token_id
from nftmirror.pipeline.results import ItemAction, RangeSummary, drive_range
from nftmirror.pipeline.store import MirrorStore
from nftmirror.utils.pacing import Pacer

logger = structlog.get_logger(__name__)


def category_name(trait_name: str) -> str:
    return trait_name.strip().lower()


@dataclass
class TraitLoadResult:
    token_id: int
    action: ItemAction
    inserted: int = 0
    new_categories: int = 0
    error: str | None = None


# ---------------------------------------------------------------------------
# Category dictionary
# ---------------------------------------------------------------------------


class CategoryLookup:
    """
    Category name -> id for one loader invocation.

    Unseen names are queued with the next display order and must be flushed
    before any trait row references them.
    """

    def __init__(self, categories: Iterable[TraitCategory]):
        self._ids: dict[str, int] = {}
        highest = 0
        for category in categories:
            self._ids[category.name] = category.id
            highest = max(highest, category.display_order)
        self._next_order = highest + 1
        self._pending: dict[str, int] = {}

    @classmethod
    async def load(cls, store: MirrorStore) -> CategoryLookup:
        return cls(await store.trait_categories())

    @property
    def pending(self) -> dict[str, int]:
        return dict(self._pending)

    def resolve(self, trait_name: str) -> str:
        """Category name for a trait, queueing it when unseen."""
        name = category_name(trait_name)
        if name not in self._ids and name not in self._pending:
            self._pending[name] = self._next_order
            self._next_order += 1
        return name

    def id_for(self, name: str) -> int:
        try:
            return self._ids[name]
        except KeyError:
            raise StoreError(f"trait category {name!r} has no id (not flushed?)") from None

    async def flush(self, store: MirrorStore) -> int:
        """Insert queued categories, then learn their ids. Returns the number inserted."""
        if not self._pending:
            return 0

        rows = [{"name": name, "display_order": order} for name, order in self._pending.items()]
        try:
            inserted = await store.insert_many(TraitCategory, rows)
        except Exception as e:
            if not is_unique_violation(e):
                raise
            # A concurrent run added some of these; insert the rest one by one
            inserted = 0
            for row in rows:
                try:
                    await store.insert(TraitCategory, row)
                    inserted += 1
                except Exception as row_error:
                    if not is_unique_violation(row_error):
                        raise

        saved = await store.select(TraitCategory, {"name": list(self._pending)})
        for category in saved:
            self._ids[category.name] = category.id
        logger.info("trait_categories_created", names=sorted(self._pending), inserted=inserted)
        self._pending.clear()
        return inserted


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


class TraitLoader:
    """
    Usage:
        loader = TraitLoader(source, store)
        result = await loader.load_token("KASPUNKS", 42)
        summary = await loader.sync_range("KASPUNKS", 1, 1000)
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

    async def store_traits(
        self,
        ticker: str,
        token_id: int,
        traits: dict[str, TraitValue],
        check_existing: bool = True,
    ) -> tuple[int, int]:
        """
        Write a token's traits in one batch, creating categories first.

        Traits with a null value are skipped. Returns (trait rows inserted,
        categories created). Writes nothing when the token already has traits.
        """
        if check_existing and await self.store.has_traits(ticker, token_id):
            logger.debug("traits_already_loaded", ticker=ticker, token_id=token_id)
            return 0, 0

        lookup = await CategoryLookup.load(self.store)
        kept: list[tuple[str, TraitValue, str]] = []
        for trait_name, trait in traits.items():
            if trait.value is None:
                logger.debug("trait_value_missing", token_id=token_id, trait=trait_name)
                continue
            kept.append((trait_name, trait, lookup.resolve(trait_name)))

        if not kept:
            return 0, 0

        created = await lookup.flush(self.store)
        rows = [
            {
                "ticker": ticker,
                "token_id": token_id,
                "trait_name": trait_name,
                "trait_value": trait.value,
                "rarity": trait.rarity,
                "category_id": lookup.id_for(name),
            }
            for trait_name, trait, name in kept
        ]
        inserted = await self.store.insert_many(TraitRecord, rows)
        return inserted, created

    async def load_token(self, ticker: str, token_id: int | str) -> TraitLoadResult:
        """Load traits for one token unless it already has any."""
        try:
            numeric_id = validate_token_id(token_id)
        except ValueError as e:
            return TraitLoadResult(token_id=-1, action=ItemAction.ERROR, error=str(e))

        try:
            if await self.store.has_traits(ticker, numeric_id):
                return TraitLoadResult(token_id=numeric_id, action=ItemAction.ALREADY_LOADED)

            payload = await self.source.token_traits(ticker, numeric_id)
            if payload is None or not payload.traits:
                logger.debug("traits_no_data", ticker=ticker, token_id=numeric_id)
                return TraitLoadResult(token_id=numeric_id, action=ItemAction.NO_DATA)

            inserted, created = await self.store_traits(
                ticker, numeric_id, payload.traits, check_existing=False
            )
        except SyncAbortedError:
            raise
        except Exception as e:
            logger.error(
                "traits_load_failed",
                ticker=ticker,
                token_id=numeric_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return TraitLoadResult(token_id=numeric_id, action=ItemAction.ERROR, error=str(e))

        if inserted == 0:
            return TraitLoadResult(token_id=numeric_id, action=ItemAction.NO_DATA)

        logger.info(
            "traits_loaded",
            ticker=ticker,
            token_id=numeric_id,
            inserted=inserted,
            new_categories=created,
        )
        return TraitLoadResult(
            token_id=numeric_id,
            action=ItemAction.SYNCED,
            inserted=inserted,
            new_categories=created,
        )

    async def sync_range(
        self,
        ticker: str,
        start: int,
        end: int,
        batch_size: int | None = None,
    ) -> RangeSummary:
        async def step(token_id: int) -> TraitLoadResult:
            return await self.load_token(ticker, token_id)

        return await drive_range(
            "traits",
            start,
            end,
            step,
            pacer=self.pacer,
            batch_size=batch_size or settings.TRAITS_BATCH_SIZE,
            token_delay=settings.TRAITS_TOKEN_DELAY_SECONDS,
            batch_delay=settings.TRAITS_BATCH_DELAY_SECONDS,
        )
