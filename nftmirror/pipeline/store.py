"""
NFT Mirror — Store Boundary

Row-level CRUD over the mirror tables. Every operation opens its own session,
commits on its own, and is retried independently through the shared
ResilientCaller. There are no cross-row transactions: partial application of
a diff is an expected outcome, reported by the callers' BatchResults.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Sequence, TypeVar

import structlog
from sqlalchemy import func, insert, inspect, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nftmirror.config import ListingStatus, settings
from nftmirror.errors import StoreError, is_unique_violation
from nftmirror.models import (
    Base,
    CollectionStats,
    Listing,
    Owner,
    SalesRecord,
    Token,
    TokenOwnership,
    TraitCategory,
    TraitRecord,
    User,
)
from nftmirror.pipeline.metrics import SyncMetrics
from nftmirror.utils.retry import BackoffProfile, ResilientCaller

logger = structlog.get_logger(__name__)

SERVICE_NAME = "store"

ModelT = TypeVar("ModelT", bound=Base)
T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _where(model: type[Base], filters: dict[str, Any] | None) -> list[Any]:
    clauses = []
    for name, value in (filters or {}).items():
        column = getattr(model, name)
        if isinstance(value, (list, tuple, set, frozenset)):
            clauses.append(column.in_(list(value)))
        elif value is None:
            clauses.append(column.is_(None))
        else:
            clauses.append(column == value)
    return clauses


class MirrorStore:
    """
    Store boundary used by every syncer.

    Usage:
        store = MirrorStore(session_factory, metrics=metrics)
        rows = await store.select(Listing, {"ticker": "KASPUNKS", "status": "active"})
        await store.insert(SalesRecord, {...})
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        metrics: SyncMetrics | None = None,
        profile: BackoffProfile | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        timeout: float | None = None,
    ):
        self._session_factory = session_factory
        self._metrics = metrics
        self._timeout = settings.STORE_TIMEOUT_SECONDS if timeout is None else timeout
        self._caller = ResilientCaller(
            SERVICE_NAME,
            profile or BackoffProfile.store(),
            metrics=metrics,
            sleep=sleep,
        )

    def _count_operation(self, kind: str, count: int = 1) -> None:
        if self._metrics is not None and count:
            self._metrics.record_store_operation(kind, count)

    async def _run(self, work: Callable[[AsyncSession], Awaitable[T]], label: str) -> T:
        async def unit_of_work() -> T:
            async with self._session_factory() as session:
                result = await work(session)
                await session.commit()
                return result

        async def attempt() -> T:
            # a hung statement becomes a retryable asyncio.TimeoutError
            return await asyncio.wait_for(unit_of_work(), timeout=self._timeout)

        return await self._caller.call(attempt, label=label)

    # -----------------------------------------------------------------------
    # Generic row operations
    # -----------------------------------------------------------------------

    async def select(
        self,
        model: type[ModelT],
        filters: dict[str, Any] | None = None,
        order_by: Sequence[Any] = (),
        limit: int | None = None,
    ) -> list[ModelT]:
        """Rows of model matching every filter (lists mean IN, None means IS NULL)."""
        stmt = select(model).where(*_where(model, filters))
        if order_by:
            stmt = stmt.order_by(*order_by)
        if limit is not None:
            stmt = stmt.limit(limit)

        async def work(session: AsyncSession) -> list[ModelT]:
            result = await session.execute(stmt)
            return list(result.scalars().all())

        return await self._run(work, f"select_{model.__tablename__}")

    async def select_one(self, model: type[ModelT], filters: dict[str, Any]) -> ModelT | None:
        rows = await self.select(model, filters, limit=1)
        return rows[0] if rows else None

    async def count(self, model: type[Base], filters: dict[str, Any] | None = None) -> int:
        stmt = select(func.count()).select_from(model).where(*_where(model, filters))

        async def work(session: AsyncSession) -> int:
            result = await session.execute(stmt)
            return int(result.scalar_one())

        return await self._run(work, f"count_{model.__tablename__}")

    async def insert(self, model: type[Base], values: dict[str, Any]) -> None:
        async def work(session: AsyncSession) -> None:
            await session.execute(insert(model).values(**values))

        await self._run(work, f"insert_{model.__tablename__}")
        self._count_operation("inserts")

    async def insert_many(self, model: type[Base], rows: Sequence[dict[str, Any]]) -> int:
        """Insert rows in one statement. Returns the number of rows written."""
        if not rows:
            return 0

        async def work(session: AsyncSession) -> None:
            await session.execute(insert(model), list(rows))

        await self._run(work, f"insert_many_{model.__tablename__}")
        self._count_operation("inserts", len(rows))
        return len(rows)

    async def update(
        self,
        model: type[Base],
        pk: Any,
        values: dict[str, Any],
        operation: str = "updates",
    ) -> bool:
        """
        Update one row by primary key.

        Args:
            pk: Scalar key, or a tuple for composite keys.
            operation: Metrics bucket ("updates", or "deletes" for soft deletes).

        Returns:
            True when a row matched.
        """
        pk_columns = inspect(model).primary_key
        pk_values = pk if isinstance(pk, tuple) else (pk,)
        if len(pk_values) != len(pk_columns):
            raise StoreError(f"{model.__tablename__} expects {len(pk_columns)} key parts")
        stmt = (
            update(model)
            .where(*[column == value for column, value in zip(pk_columns, pk_values)])
            .values(**values)
        )

        async def work(session: AsyncSession) -> int:
            result = await session.execute(stmt)
            return result.rowcount or 0

        matched = await self._run(work, f"update_{model.__tablename__}")
        if matched:
            self._count_operation(operation)
        return matched > 0

    # -----------------------------------------------------------------------
    # Listings
    # -----------------------------------------------------------------------

    async def active_listings(self, ticker: str) -> list[Listing]:
        return await self.select(
            Listing, {"ticker": ticker, "status": ListingStatus.ACTIVE.value}
        )

    async def active_listing_for_token(self, ticker: str, token_id: int) -> Listing | None:
        return await self.select_one(
            Listing,
            {"ticker": ticker, "token_id": token_id, "status": ListingStatus.ACTIVE.value},
        )

    async def count_active_listings(self, ticker: str) -> int:
        return await self.count(Listing, {"ticker": ticker, "status": ListingStatus.ACTIVE.value})

    async def deactivate_listing(self, listing_id: uuid.UUID, actor_id: uuid.UUID | None) -> bool:
        """Soft-delete an active listing as api_sync_removed."""
        now = utcnow()
        return await self.update(
            Listing,
            listing_id,
            {
                "status": ListingStatus.API_SYNC_REMOVED.value,
                "deactivated_at": now,
                "deactivated_by": actor_id,
                "updated_at": now,
            },
            operation="deletes",
        )

    async def sample_active_listings(self, ticker: str, limit: int) -> list[Listing]:
        """Up to limit active listings that carry an external order id."""
        stmt = (
            select(Listing)
            .where(
                Listing.ticker == ticker,
                Listing.status == ListingStatus.ACTIVE.value,
                Listing.external_order_id.is_not(None),
            )
            .limit(limit)
        )

        async def work(session: AsyncSession) -> list[Listing]:
            result = await session.execute(stmt)
            return list(result.scalars().all())

        return await self._run(work, "sample_listings")

    # -----------------------------------------------------------------------
    # System actor
    # -----------------------------------------------------------------------

    async def find_or_create_user(self, email: str, role: str) -> uuid.UUID:
        """Look up a user by email, creating it on first use."""
        existing = await self.select_one(User, {"email": email})
        if existing is not None:
            return existing.id

        user_id = uuid.uuid4()
        try:
            await self.insert(User, {"id": user_id, "email": email, "role": role})
        except Exception as e:
            if not is_unique_violation(e):
                raise
            # Another run created it between the lookup and the insert
            existing = await self.select_one(User, {"email": email})
            if existing is None:
                raise StoreError(f"user {email!r} vanished after a duplicate-key insert") from e
            return existing.id

        logger.info("system_actor_created", email=email, user_id=str(user_id))
        return user_id

    # -----------------------------------------------------------------------
    # Sales history
    # -----------------------------------------------------------------------

    async def sales_ids_for_token(self, ticker: str, token_id: int) -> set[str]:
        stmt = select(SalesRecord.id).where(
            SalesRecord.ticker == ticker, SalesRecord.token_id == token_id
        )

        async def work(session: AsyncSession) -> set[str]:
            result = await session.execute(stmt)
            return set(result.scalars().all())

        return await self._run(work, "select_sales_ids")

    # -----------------------------------------------------------------------
    # Tokens & traits
    # -----------------------------------------------------------------------

    async def token_exists(self, ticker: str, token_id: int) -> bool:
        return await self.count(Token, {"ticker": ticker, "token_id": token_id}) > 0

    async def has_traits(self, ticker: str, token_id: int) -> bool:
        return await self.count(TraitRecord, {"ticker": ticker, "token_id": token_id}) > 0

    async def trait_categories(self) -> list[TraitCategory]:
        return await self.select(TraitCategory, order_by=(TraitCategory.display_order,))

    # -----------------------------------------------------------------------
    # Owners
    # -----------------------------------------------------------------------

    async def owner_counts(self, ticker: str, wallets: Iterable[str]) -> dict[str, int]:
        rows = await self.select(Owner, {"ticker": ticker, "wallet_address": list(wallets)})
        return {row.wallet_address: row.token_count for row in rows}

    async def upsert_collection_stats(self, ticker: str, values: dict[str, Any]) -> str:
        """Write the single stats row for a ticker. Returns 'inserted' or 'updated'."""
        if await self.update(CollectionStats, ticker, values):
            return "updated"
        await self.insert(CollectionStats, {"ticker": ticker, **values})
        return "inserted"

    # -----------------------------------------------------------------------
    # Token ownership
    # -----------------------------------------------------------------------

    async def upsert_token_ownership(self, ticker: str, rows: Sequence[dict[str, Any]]) -> int:
        """
        Insert or overwrite (ticker, token_id) -> wallet rows in one statement.

        rows carry token_id and wallet_address. Returns the number of rows sent.
        """
        if not rows:
            return 0
        now = utcnow()
        values = [
            {
                "ticker": ticker,
                "token_id": row["token_id"],
                "wallet_address": row["wallet_address"],
                "created_at": now,
                "updated_at": now,
            }
            for row in rows
        ]

        async def work(session: AsyncSession) -> int:
            dialect = session.get_bind().dialect.name
            insert_fn = sqlite_insert if dialect == "sqlite" else pg_insert
            stmt = insert_fn(TokenOwnership).values(values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["ticker", "token_id"],
                set_={
                    "wallet_address": stmt.excluded.wallet_address,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            await session.execute(stmt)
            return len(values)

        written = await self._run(work, "upsert_token_ownership")
        self._count_operation("updates", written)
        return written


async def create_schema(engine: Any) -> None:
    """Create every mirror table. Used for local SQLite stores and tests."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
