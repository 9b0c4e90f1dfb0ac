"""
NFT Mirror — Post-Sync Verification

Re-fetches a random sample of active listings from the marketplace and
compares them field by field. Findings are reported, never corrected.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog

from nftmirror.config import settings
from nftmirror.errors import SyncAbortedError
from nftmirror.models import Listing
from nftmirror.pipeline.marketplace import MarketplaceSource, Order
from nftmirror.pipeline.store import MirrorStore
from nftmirror.utils.pacing import Pacer

logger = structlog.get_logger(__name__)

VERIFIED_FIELDS = ("total_price", "rarity_rank", "seller_address")


class VerificationOutcome(str, Enum):
    VERIFIED = "verified"
    DATA_MISMATCH = "data_mismatch"
    MISSING_FROM_SOURCE = "missing_from_source"
    VERIFICATION_ERROR = "verification_error"

    @property
    def severity(self) -> str:
        if self is VerificationOutcome.VERIFIED:
            return "info"
        if self is VerificationOutcome.MISSING_FROM_SOURCE:
            return "warning"
        return "error"


@dataclass
class FieldMismatch:
    field: str
    local: Any
    remote: Any


@dataclass
class VerificationFinding:
    token_id: int
    order_id: str | None
    outcome: VerificationOutcome
    mismatches: list[FieldMismatch] = field(default_factory=list)
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "token_id": self.token_id,
            "order_id": self.order_id,
            "outcome": self.outcome.value,
            "severity": self.outcome.severity,
            "mismatches": [
                {"field": m.field, "local": str(m.local), "remote": str(m.remote)}
                for m in self.mismatches
            ],
            "error": self.error,
        }


@dataclass
class VerificationReport:
    ticker: str
    sample_size: int = 0
    findings: list[VerificationFinding] = field(default_factory=list)

    def count(self, outcome: VerificationOutcome) -> int:
        return sum(1 for finding in self.findings if finding.outcome is outcome)

    @property
    def issues(self) -> list[VerificationFinding]:
        return [f for f in self.findings if f.outcome is not VerificationOutcome.VERIFIED]

    def as_dict(self) -> dict[str, Any]:
        return {
            "ticker": self.ticker,
            "sample_size": self.sample_size,
            **{outcome.value: self.count(outcome) for outcome in VerificationOutcome},
            "issues": [finding.as_dict() for finding in self.issues],
        }


def compare_listing(listing: Listing, order: Order) -> list[FieldMismatch]:
    remote = {
        "total_price": order.total_price,
        "rarity_rank": order.rarity_rank,
        "seller_address": order.seller_address,
    }
    mismatches = []
    for name in VERIFIED_FIELDS:
        local_value = getattr(listing, name)
        remote_value = remote[name]
        if name == "total_price":
            equal = Decimal(local_value) == Decimal(remote_value)
        else:
            equal = local_value == remote_value
        if not equal:
            mismatches.append(FieldMismatch(field=name, local=local_value, remote=remote_value))
    return mismatches


class VerificationSampler:
    """
    Usage:
        sampler = VerificationSampler(source, store)
        report = await sampler.verify("KASPUNKS", sample_size=10)
    """

    def __init__(
        self,
        source: MarketplaceSource,
        store: MirrorStore,
        pacer: Pacer | None = None,
        rng: random.Random | None = None,
    ):
        self.source = source
        self.store = store
        self.pacer = pacer or Pacer()
        self.rng = rng or random.Random()

    async def _check(self, ticker: str, listing: Listing) -> VerificationFinding:
        finding = VerificationFinding(
            token_id=listing.token_id,
            order_id=listing.external_order_id,
            outcome=VerificationOutcome.VERIFIED,
        )
        try:
            page = await self.source.list_orders(
                ticker, offset=0, limit=1, token_id=listing.token_id
            )
        except SyncAbortedError:
            raise
        except Exception as e:
            finding.outcome = VerificationOutcome.VERIFICATION_ERROR
            finding.error = str(e)
            return finding

        order = next((o for o in page.orders if o.id == listing.external_order_id), None)
        if order is None:
            finding.outcome = VerificationOutcome.MISSING_FROM_SOURCE
            return finding

        finding.mismatches = compare_listing(listing, order)
        if finding.mismatches:
            finding.outcome = VerificationOutcome.DATA_MISMATCH
        return finding

    async def verify(self, ticker: str, sample_size: int | None = None) -> VerificationReport:
        size = sample_size or settings.VERIFY_SAMPLE_SIZE_FULL
        report = VerificationReport(ticker=ticker)

        candidates = await self.store.sample_active_listings(ticker, limit=size * 2)
        if not candidates:
            logger.warning("verification_no_listings", ticker=ticker)
            return report

        sample = self.rng.sample(candidates, min(size, len(candidates)))
        report.sample_size = len(sample)
        logger.info("verification_start", ticker=ticker, sample_size=len(sample))

        for index, listing in enumerate(sample):
            self.pacer.check_stop("verification")
            finding = await self._check(ticker, listing)
            report.findings.append(finding)
            if finding.outcome is VerificationOutcome.DATA_MISMATCH:
                logger.error("verification_mismatch", **finding.as_dict())
            elif finding.outcome is VerificationOutcome.MISSING_FROM_SOURCE:
                logger.warning("verification_missing_from_source", **finding.as_dict())
            elif finding.outcome is VerificationOutcome.VERIFICATION_ERROR:
                logger.error("verification_fetch_failed", **finding.as_dict())
            if index < len(sample) - 1:
                await self.pacer.pause(settings.VERIFY_REQUEST_DELAY_SECONDS)

        logger.info(
            "verification_complete",
            ticker=ticker,
            **{k: v for k, v in report.as_dict().items() if k not in ("ticker", "issues")},
        )
        return report
