"""
NFT Mirror — Marketplace API Client

Typed operations over the remote marketplace: listed orders (paginated,
sortable, filterable by token), completed orders for a token, token trait
metadata, the current holder snapshot and the per-token owner listing.

Every request goes through the shared ResilientCaller. A 404/400 on a
token-scoped query means "no data" and is returned as an empty page or None.
Scheduling lives in pipeline/scheduler.py; persistence lives in the syncers.
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Protocol

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from nftmirror.config import settings
from nftmirror.errors import InvalidTokenError, SourceResponseError
from nftmirror.pipeline.metrics import SyncMetrics
from nftmirror.utils.retry import BackoffProfile, ResilientCaller

logger = structlog.get_logger(__name__)

SERVICE_NAME = "marketplace"

# Status codes that mean "nothing recorded for this token"
ABSENT_STATUS_CODES = frozenset({400, 404})

TOKEN_ID_PATTERN = re.compile(r"-?\d+")


# ---------------------------------------------------------------------------
# Pydantic Response Models
# ---------------------------------------------------------------------------


def _to_decimal(v: Any) -> Decimal | None:
    """Convert a JSON number or numeric string to Decimal. Never use float for money."""
    if v is None or v == "":
        return None
    try:
        return Decimal(str(v))
    except (InvalidOperation, ValueError):
        return None


class Order(BaseModel):
    """One order from the marketplace, listed or completed."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., description="Marketplace order id")
    ticker: str = Field(default="", description="Collection ticker")
    token_id: int = Field(..., alias="tokenId")
    total_price: Decimal = Field(..., alias="totalPrice")
    seller_address: str | None = Field(default=None, alias="sellerWalletAddress")
    rarity_rank: int | None = Field(default=None, alias="rarityRank")
    required_payment: Decimal | None = Field(default=None, alias="requiredKaspa")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    is_owner: bool = Field(default=False, alias="isOwner")
    fulfilled_at: datetime | None = Field(default=None, alias="fullfillmentTimestamp")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("total_price", mode="before")
    @classmethod
    def parse_price(cls, v: Any) -> Decimal:
        price = _to_decimal(v)
        if price is None:
            raise ValueError(f"invalid totalPrice: {v!r}")
        return price

    @field_validator("required_payment", mode="before")
    @classmethod
    def parse_required_payment(cls, v: Any) -> Decimal | None:
        return _to_decimal(v)

    @field_validator("is_owner", mode="before")
    @classmethod
    def parse_is_owner(cls, v: Any) -> bool:
        return bool(v)


class RejectedOrder(BaseModel):
    """An order the source sent that failed validation."""

    id: str | None = None
    reason: str

    def __str__(self) -> str:
        return f"{self.id}: {self.reason}"


class OrderPage(BaseModel):
    """
    One page of orders plus the source's total for the query.

    Orders are validated one at a time. A malformed order is dropped into
    `rejected` with its raw id and the rest of the page survives.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    orders: list[Order] = Field(default_factory=list)
    total_count: int = Field(default=0, alias="totalCount")
    rejected: list[RejectedOrder] = Field(default_factory=list, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def split_invalid_orders(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        valid: list[Order] = []
        rejected: list[Any] = list(data.get("rejected") or [])
        for raw in data.get("orders") or []:
            try:
                valid.append(Order.model_validate(raw))
            except ValidationError as e:
                raw_id = raw.get("id") if isinstance(raw, dict) else None
                reason = "; ".join(
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
                )
                logger.warning("order_invalid", order_id=raw_id, reason=reason)
                rejected.append(RejectedOrder(id=None if raw_id is None else str(raw_id), reason=reason))
        return {**data, "orders": valid, "rejected": rejected}

    @property
    def received(self) -> int:
        """Orders the source sent on this page, valid or not."""
        return len(self.orders) + len(self.rejected)

    @field_validator("total_count", mode="before")
    @classmethod
    def none_to_zero(cls, v: Any) -> Any:
        return v or 0


class TraitValue(BaseModel):
    value: str | None = None
    rarity: Decimal | None = None

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v: Any) -> str | None:
        return None if v is None else str(v)

    @field_validator("rarity", mode="before")
    @classmethod
    def parse_rarity(cls, v: Any) -> Decimal | None:
        return _to_decimal(v)


class TraitPayload(BaseModel):
    """Metadata for one token: rarity, legendary flag and named traits."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    token_id: int = Field(..., alias="tokenId")
    rarity_rank: int | None = Field(default=None, alias="rarityRank")
    legendary: bool = Field(default=False)
    traits: dict[str, TraitValue] = Field(default_factory=dict)

    @field_validator("traits", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return v or {}

    @field_validator("legendary", mode="before")
    @classmethod
    def parse_legendary(cls, v: Any) -> bool:
        return bool(v)


class Holder(BaseModel):
    owner: str
    count: int


class OwnersSnapshot(BaseModel):
    """Current holder distribution for a collection."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    holders: list[Holder] = Field(default_factory=list)
    total_holders: int = Field(default=0, alias="totalHolders")
    total_minted: int = Field(default=0, alias="totalMinted")
    total_supply: int = Field(default=settings.DEFAULT_TOTAL_SUPPLY, alias="totalSupply")

    @field_validator("holders", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return v or []

    @field_validator("total_supply", mode="before")
    @classmethod
    def default_supply(cls, v: Any) -> Any:
        return v or settings.DEFAULT_TOTAL_SUPPLY


def normalize_wallet(address: Any) -> str | None:
    """Trimmed, lowercased wallet address. None for anything unusable."""
    if not isinstance(address, str):
        return None
    return address.strip().lower() or None


# Key pairs the ownership endpoint has used for (token id, owner wallet)
OWNERSHIP_KEY_PAIRS = (("tokenId", "owner"), ("token_id", "wallet_address"), ("id", "address"))


class OwnershipRecord(BaseModel):
    """One token and the wallet that currently holds it."""

    token_id: int = Field(..., gt=0)
    wallet_address: str = Field(..., min_length=1)

    @model_validator(mode="before")
    @classmethod
    def from_any_shape(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        for token_key, wallet_key in OWNERSHIP_KEY_PAIRS:
            if data.get(token_key) is not None and data.get(wallet_key):
                return {
                    "token_id": data[token_key],
                    "wallet_address": normalize_wallet(data[wallet_key]) or "",
                }
        return data


class OwnershipPage(BaseModel):
    """
    One page of the per-token ownership listing.

    The payload is a bare list or an object with `result` or `owners`.
    Records that do not parse are counted in `skipped`. Paging continues from
    `next` when present, or by offset while `hasMore` is true.
    """

    records: list[OwnershipRecord] = Field(default_factory=list)
    skipped: int = 0
    next_offset: str | None = None
    has_more: bool = False

    @model_validator(mode="before")
    @classmethod
    def from_payload(cls, data: Any) -> Any:
        if isinstance(data, list):
            data = {"result": data}
        if not isinstance(data, dict):
            raise ValueError("ownership payload is neither a list nor an object")
        if "records" in data:
            return data

        raw = data.get("result")
        if not isinstance(raw, list):
            raw = data.get("owners")
        if not isinstance(raw, list):
            raise ValueError("ownership payload has no result or owners list")

        records: list[OwnershipRecord] = []
        skipped = 0
        for item in raw:
            try:
                records.append(OwnershipRecord.model_validate(item))
            except ValidationError:
                logger.warning("ownership_record_invalid", record=item)
                skipped += 1

        next_value = data.get("next")
        return {
            "records": records,
            "skipped": skipped,
            "next_offset": None if next_value is None else str(next_value),
            "has_more": data.get("hasMore") is True,
        }

    @property
    def received(self) -> int:
        return len(self.records) + self.skipped


# ---------------------------------------------------------------------------
# Source boundary
# ---------------------------------------------------------------------------


class MarketplaceSource(Protocol):
    """What the syncers need from a marketplace. Any implementation will do."""

    async def list_orders(
        self,
        ticker: str,
        offset: int = 0,
        limit: int = 25,
        sort_field: str = "totalPrice",
        sort_dir: str = "asc",
        token_id: int | str | None = None,
    ) -> OrderPage:
        ...

    async def completed_orders(
        self,
        ticker: str,
        token_id: int | str,
        offset: int = 0,
        limit: int = 25,
        sort_field: str = "fullfillmentTimestamp",
        sort_dir: str = "desc",
    ) -> OrderPage:
        ...

    async def token_traits(self, ticker: str, token_id: int | str) -> TraitPayload | None:
        ...

    async def owners(self, ticker: str) -> OwnersSnapshot:
        ...

    async def ownership_page(self, ticker: str, offset: str | None = None) -> OwnershipPage:
        ...


def validate_token_id(token_id: Any) -> int:
    """Accept ints and integer strings; anything else is an InvalidTokenError."""
    if isinstance(token_id, bool):
        raise InvalidTokenError(token_id)
    if isinstance(token_id, int):
        return token_id
    if isinstance(token_id, str) and TOKEN_ID_PATTERN.fullmatch(token_id.strip()):
        return int(token_id.strip())
    raise InvalidTokenError(token_id)


def _unsuccessful(payload: Any) -> SourceResponseError | None:
    if isinstance(payload, dict) and payload.get("success") is False:
        return SourceResponseError("Marketplace API returned an unsuccessful payload", payload)
    return None


async def fetch_all_pages(
    source: MarketplaceSource,
    ticker: str,
    page_size: int | None = None,
    page_delay: float | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
) -> OrderPage:
    """
    Page through the full order book of a ticker until a short page.

    The order book is sorted server-side, so offset pagination is stable
    between pages. Returns one OrderPage holding every valid order and
    every rejected one.
    """
    size = page_size or settings.LISTINGS_PAGE_SIZE
    delay = settings.LISTINGS_PAGE_DELAY_SECONDS if page_delay is None else page_delay
    sleeper = sleep or asyncio.sleep

    book = OrderPage()
    offset = 0
    while True:
        page = await source.list_orders(ticker, offset=offset, limit=size)
        book.orders.extend(page.orders)
        book.rejected.extend(page.rejected)
        book.total_count = page.total_count
        logger.debug(
            "orders_page_fetched",
            ticker=ticker,
            offset=offset,
            received=page.received,
            rejected=len(page.rejected),
            total_count=page.total_count,
        )
        if page.received < size:
            break
        offset += size
        if delay > 0:
            await sleeper(delay)

    logger.info(
        "orders_fetch_complete",
        ticker=ticker,
        count=len(book.orders),
        rejected=len(book.rejected),
    )
    return book


# ---------------------------------------------------------------------------
# API Client
# ---------------------------------------------------------------------------


class MarketplaceClient:
    """
    Async client for the marketplace REST API.

    Usage:
        async with MarketplaceClient(metrics=metrics) as client:
            page = await client.list_orders("KASPUNKS", offset=0, limit=25)
            traits = await client.token_traits("KASPUNKS", 42)
    """

    def __init__(
        self,
        orders_url: str | None = None,
        tokens_url: str | None = None,
        collections_url: str | None = None,
        ownership_url: str | None = None,
        timeout: float | None = None,
        metrics: SyncMetrics | None = None,
        source_profile: BackoffProfile | None = None,
        traits_profile: BackoffProfile | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self._orders_url = (orders_url or settings.MARKETPLACE_ORDERS_URL).rstrip("/")
        self._tokens_url = (tokens_url or settings.MARKETPLACE_TOKENS_URL).rstrip("/")
        self._collections_url = (collections_url or settings.MARKETPLACE_COLLECTIONS_URL).rstrip("/")
        self._ownership_url = (ownership_url or settings.MARKETPLACE_OWNERSHIP_URL).rstrip("/")
        self._timeout = timeout or settings.REQUEST_TIMEOUT_SECONDS
        self._traits_profile = traits_profile or BackoffProfile.traits()
        self._caller = ResilientCaller(
            SERVICE_NAME,
            source_profile or BackoffProfile.source(),
            metrics=metrics,
            sleep=sleep,
        )
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> MarketplaceClient:
        self._client = httpx.AsyncClient(
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": settings.MARKETPLACE_USER_AGENT,
            },
            timeout=self._timeout,
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        label: str,
        absent_ok: bool = False,
        profile: BackoffProfile | None = None,
    ) -> Any:
        """
        Send one request through the resilient caller.

        Returns None when absent_ok is set and the source answers 404/400.
        """
        assert self._client is not None, "Client not initialized. Use 'async with'."
        client = self._client

        async def attempt() -> Any:
            response = await client.request(method, url, json=json, params=params)
            if absent_ok and response.status_code in ABSENT_STATUS_CODES:
                logger.debug("marketplace_no_data", url=url, status_code=response.status_code)
                return None
            response.raise_for_status()
            return response.json()

        return await self._caller.call(
            attempt, label=label, error_of=_unsuccessful, profile=profile
        )

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def list_orders(
        self,
        ticker: str,
        offset: int = 0,
        limit: int = 25,
        sort_field: str = "totalPrice",
        sort_dir: str = "asc",
        token_id: int | str | None = None,
    ) -> OrderPage:
        """
        Fetch one page of listed orders.

        Args:
            ticker: Collection ticker.
            offset / limit: Page window.
            sort_field / sort_dir: Server-side sort.
            token_id: Restrict to one token. A 404/400 then means "not listed".

        Returns:
            OrderPage with the orders and the source's total count.
        """
        body: dict[str, Any] = {
            "pagination": {"offset": offset, "limit": limit},
            "sort": {"field": sort_field, "direction": sort_dir},
        }
        if token_id is not None:
            body["tokenId"] = str(validate_token_id(token_id))

        data = await self._request(
            "POST",
            f"{self._orders_url}/{ticker}",
            json=body,
            label="list_orders",
            absent_ok=token_id is not None,
        )
        if data is None:
            return OrderPage()
        return OrderPage.model_validate(data)

    async def completed_orders(
        self,
        ticker: str,
        token_id: int | str,
        offset: int = 0,
        limit: int = 25,
        sort_field: str = "fullfillmentTimestamp",
        sort_dir: str = "desc",
    ) -> OrderPage:
        """Fetch one page of a token's completed orders (its sales history)."""
        numeric_id = validate_token_id(token_id)
        body = {
            "pagination": {"offset": offset, "limit": limit},
            "sort": {"field": sort_field, "direction": sort_dir},
            "completedOrders": True,
            "tokenId": str(numeric_id),
        }
        data = await self._request(
            "POST",
            f"{self._orders_url}/{ticker}",
            json=body,
            label="completed_orders",
            absent_ok=True,
        )
        if data is None:
            return OrderPage()
        return OrderPage.model_validate(data)

    async def token_traits(self, ticker: str, token_id: int | str) -> TraitPayload | None:
        """Fetch trait metadata for a token. None when the source has none."""
        numeric_id = validate_token_id(token_id)
        data = await self._request(
            "POST",
            f"{self._tokens_url}/",
            json={"ticker": ticker, "tokenIds": [numeric_id]},
            label="token_traits",
            absent_ok=True,
            profile=self._traits_profile,
        )
        items = (data or {}).get("items") or []
        if not items:
            logger.debug("token_traits_empty", ticker=ticker, token_id=numeric_id)
            return None
        return TraitPayload.model_validate(items[0])

    async def owners(self, ticker: str) -> OwnersSnapshot:
        """Fetch the current holder snapshot for a collection."""
        data = await self._request(
            "GET",
            f"{self._collections_url}/{ticker}",
            label="owners",
        )
        snapshot = OwnersSnapshot.model_validate(data or {})
        logger.info(
            "owners_fetch_complete",
            ticker=ticker,
            holders=len(snapshot.holders),
            total_minted=snapshot.total_minted,
        )
        return snapshot

    async def ownership_page(self, ticker: str, offset: str | None = None) -> OwnershipPage:
        """Fetch one page of token -> owner wallet records, starting at offset."""
        data = await self._request(
            "GET",
            f"{self._ownership_url}/{ticker}",
            params={"offset": offset} if offset is not None else None,
            label="ownership_page",
        )
        try:
            return OwnershipPage.model_validate(data)
        except ValidationError as e:
            raise SourceResponseError("Unrecognised ownership payload", {"offset": offset}) from e

    async def fetch_all_orders(
        self,
        ticker: str,
        page_size: int | None = None,
        page_delay: float | None = None,
    ) -> OrderPage:
        """Page through the entire order book of a ticker."""
        return await fetch_all_pages(self, ticker, page_size=page_size, page_delay=page_delay)
