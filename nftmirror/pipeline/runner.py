"""
NFT Mirror — Sync Run Orchestration

One entry point for every sync job. A run checks the global feature flag
once, resets the metrics, runs exactly one syncer and always returns a single
RunSummary, whether it completed, completed with item errors, aborted on a
fatal error, or never started.

Exit codes (scripts/sync_now.py):
    0  completed
    1  completed with item errors
    2  aborted mid-run
    3  not started (disabled or invalid configuration)
"""

from __future__ import annotations

import asyncio
import random
import signal
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncContextManager, Awaitable, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nftmirror.config import SyncKind, settings
from nftmirror.errors import ConfigurationError, SyncAbortedError
from nftmirror.pipeline.listings import ListingSyncer
from nftmirror.pipeline.marketplace import MarketplaceClient, MarketplaceSource
from nftmirror.pipeline.metrics import SyncMetrics
from nftmirror.pipeline.owners import OwnersSyncer
from nftmirror.pipeline.ownership import OwnershipSyncer
from nftmirror.pipeline.sales import SalesHistorySyncer
from nftmirror.pipeline.store import MirrorStore, utcnow
from nftmirror.pipeline.traits import TraitLoader
from nftmirror.pipeline.verification import VerificationSampler
from nftmirror.utils.pacing import Pacer

logger = structlog.get_logger(__name__)

SourceFactory = Callable[[SyncMetrics], AsyncContextManager[MarketplaceSource]]


# ---------------------------------------------------------------------------
# Options & Summary
# ---------------------------------------------------------------------------


class RunStatus(str, Enum):
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    ABORTED = "aborted"
    DISABLED = "disabled"
    INVALID = "invalid"

    @property
    def exit_code(self) -> int:
        return {
            RunStatus.COMPLETED: 0,
            RunStatus.COMPLETED_WITH_ERRORS: 1,
            RunStatus.ABORTED: 2,
            RunStatus.DISABLED: 3,
            RunStatus.INVALID: 3,
        }[self]


@dataclass
class RunOptions:
    """
    Scope of one run.

    Token selection, most specific first: token_id, then an explicit
    start/end range, then a legacy batch number covering
    (batch - 1) * LEGACY_BATCH_WIDTH + 1 .. batch * LEGACY_BATCH_WIDTH.
    Without any of them, listings run a full reconciliation and the per-token
    jobs cover FIRST_TOKEN_ID..LAST_TOKEN_ID.
    """

    ticker: str = field(default_factory=lambda: settings.DEFAULT_TICKER)
    token_id: int | None = None
    start_token_id: int | None = None
    end_token_id: int | None = None
    batch: int | None = None
    batch_size: int | None = None
    verify: bool = True

    def validate(self) -> None:
        if not self.ticker:
            raise ConfigurationError("ticker must not be empty")
        for name in ("token_id", "start_token_id", "end_token_id"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ConfigurationError(f"{name} must be >= 0, got {value}")
        if self.token_id is not None and (self.start_token_id is not None or self.end_token_id is not None):
            raise ConfigurationError("token_id cannot be combined with a start/end range")
        if self.batch is not None and self.batch < 1:
            raise ConfigurationError(f"batch must be >= 1, got {self.batch}")
        if self.batch_size is not None and self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {self.batch_size}")
        token_range = self.token_range()
        if token_range is not None and token_range[0] > token_range[1]:
            raise ConfigurationError(f"empty token range {token_range[0]}..{token_range[1]}")

    def token_range(self) -> tuple[int, int] | None:
        """Explicit token range, or None when the run covers the whole collection."""
        if self.token_id is not None:
            return self.token_id, self.token_id
        if self.start_token_id is not None or self.end_token_id is not None:
            start = self.start_token_id if self.start_token_id is not None else settings.FIRST_TOKEN_ID
            end = self.end_token_id if self.end_token_id is not None else settings.LAST_TOKEN_ID
            return start, end
        if self.batch is not None:
            width = settings.LEGACY_BATCH_WIDTH
            return (self.batch - 1) * width + 1, self.batch * width
        return None

    def token_range_or_default(self) -> tuple[int, int]:
        return self.token_range() or (settings.FIRST_TOKEN_ID, settings.LAST_TOKEN_ID)


@dataclass
class RunSummary:
    kind: SyncKind
    status: RunStatus
    started_at: datetime
    duration_seconds: float = 0.0
    counts: dict[str, Any] = field(default_factory=dict)
    item_errors: int = 0
    verification: dict[str, Any] | None = None
    metrics: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def exit_code(self) -> int:
        return self.status.exit_code

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "started_at": self.started_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "counts": self.counts,
            "item_errors": self.item_errors,
            "verification": self.verification,
            "metrics": self.metrics,
            "error": self.error,
        }


def default_source_factory(metrics: SyncMetrics) -> AsyncContextManager[MarketplaceSource]:
    return MarketplaceClient(metrics=metrics)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class SyncRunner:
    """
    Usage:
        runner = SyncRunner(session_factory)
        summary = await runner.run(SyncKind.LISTINGS, RunOptions())
        sys.exit(summary.exit_code)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        source_factory: SourceFactory | None = None,
        metrics: SyncMetrics | None = None,
        stop_event: asyncio.Event | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        rng: random.Random | None = None,
    ):
        self.session_factory = session_factory
        self.source_factory = source_factory or default_source_factory
        self.metrics = metrics or SyncMetrics()
        self.stop_event = stop_event or asyncio.Event()
        self._sleep = sleep
        self._rng = rng

    def request_stop(self) -> None:
        """Stop accepting new steps; the in-flight call is allowed to finish."""
        logger.info("sync_stop_signal_received")
        self.stop_event.set()

    async def run(self, kind: SyncKind, options: RunOptions | None = None) -> RunSummary:
        options = options or RunOptions()
        self.metrics.reset()
        summary = RunSummary(kind=kind, status=RunStatus.COMPLETED, started_at=utcnow())

        if not settings.SYNC_ENABLED:
            logger.warning("sync_disabled", kind=kind.value, flag="SYNC_ENABLED")
            summary.status = RunStatus.DISABLED
            return self._finish(summary)

        try:
            options.validate()
        except ConfigurationError as e:
            logger.error("sync_invalid_options", kind=kind.value, error=str(e))
            summary.status = RunStatus.INVALID
            summary.error = str(e)
            return self._finish(summary)

        logger.info(
            "sync_run_start",
            kind=kind.value,
            ticker=options.ticker,
            token_range=options.token_range(),
        )
        pacer = Pacer(sleep=self._sleep, stop_event=self.stop_event)
        try:
            async with self.source_factory(self.metrics) as source:
                store = MirrorStore(self.session_factory, metrics=self.metrics, sleep=self._sleep)
                await self._dispatch(kind, options, source, store, pacer, summary)
        except SyncAbortedError as e:
            summary.status = RunStatus.ABORTED
            summary.error = str(e)
            summary.counts = getattr(e, "partial_counts", None) or summary.counts
        except Exception as e:
            logger.error(
                "sync_run_aborted",
                kind=kind.value,
                error=str(e),
                error_type=type(e).__name__,
                attempts=getattr(e, "attempts", None),
            )
            summary.status = RunStatus.ABORTED
            summary.error = f"{type(e).__name__}: {e}"
            summary.counts = getattr(e, "partial_counts", None) or summary.counts
        else:
            if summary.item_errors:
                summary.status = RunStatus.COMPLETED_WITH_ERRORS

        return self._finish(summary)

    def _finish(self, summary: RunSummary) -> RunSummary:
        summary.metrics = self.metrics.summary()
        summary.duration_seconds = summary.metrics["duration_seconds"]
        summary.verification = self.metrics.verification
        log = logger.info if summary.status is RunStatus.COMPLETED else logger.warning
        log("sync_run_summary", **summary.as_dict())
        return summary

    async def _dispatch(
        self,
        kind: SyncKind,
        options: RunOptions,
        source: MarketplaceSource,
        store: MirrorStore,
        pacer: Pacer,
        summary: RunSummary,
    ) -> None:
        if kind is SyncKind.LISTINGS:
            await self._run_listings(options, source, store, pacer, summary)
        elif kind is SyncKind.SALES_HISTORY:
            start, end = options.token_range_or_default()
            syncer = SalesHistorySyncer(source, store, pacer=pacer)
            self.metrics.start_phase("apply")
            try:
                result = await syncer.sync_range(options.ticker, start, end, batch_size=options.batch_size)
            finally:
                self.metrics.end_phase("apply")
            summary.counts = result.as_dict()
            summary.item_errors = result.error_count
        elif kind is SyncKind.TRAITS:
            start, end = options.token_range_or_default()
            loader = TraitLoader(source, store, pacer=pacer)
            self.metrics.start_phase("apply")
            try:
                result = await loader.sync_range(options.ticker, start, end, batch_size=options.batch_size)
            finally:
                self.metrics.end_phase("apply")
            summary.counts = result.as_dict()
            summary.item_errors = result.error_count
        elif kind is SyncKind.OWNERS:
            syncer = OwnersSyncer(source, store, pacer=pacer)
            self.metrics.start_phase("apply")
            try:
                owners = await syncer.sync(options.ticker, batch_size=options.batch_size)
            finally:
                self.metrics.end_phase("apply")
            summary.counts = owners.as_dict()
            summary.item_errors = owners.error_count
        elif kind is SyncKind.OWNERSHIP:
            loader = OwnershipSyncer(source, store, pacer=pacer)
            self.metrics.start_phase("apply")
            try:
                ownership = await loader.sync(options.ticker, batch_size=options.batch_size)
            finally:
                self.metrics.end_phase("apply")
            summary.counts = ownership.as_dict()
            summary.item_errors = ownership.error_count
        else:
            raise ConfigurationError(f"unknown sync kind: {kind!r}")

    async def _run_listings(
        self,
        options: RunOptions,
        source: MarketplaceSource,
        store: MirrorStore,
        pacer: Pacer,
        summary: RunSummary,
    ) -> None:
        syncer = ListingSyncer(source, store, metrics=self.metrics, pacer=pacer)
        token_range = options.token_range()

        if token_range is None:
            result = await syncer.sync_all(options.ticker)
            summary.counts = result.as_dict()
            summary.item_errors = result.error_count
            sample_size = settings.VERIFY_SAMPLE_SIZE_FULL
        else:
            start, end = token_range
            ranged = await syncer.sync_range(options.ticker, start, end, batch_size=options.batch_size)
            summary.counts = ranged.as_dict()
            summary.item_errors = ranged.error_count
            if ranged.token_count < settings.VERIFY_MIN_BATCH_TOKENS:
                return
            sample_size = settings.VERIFY_SAMPLE_SIZE_BATCH

        if options.verify:
            await self._verify(options.ticker, source, store, pacer, sample_size)

    async def _verify(
        self,
        ticker: str,
        source: MarketplaceSource,
        store: MirrorStore,
        pacer: Pacer,
        sample_size: int,
    ) -> None:
        sampler = VerificationSampler(source, store, pacer=pacer, rng=self._rng)
        self.metrics.start_phase("verify")
        try:
            report = await sampler.verify(ticker, sample_size=sample_size)
            self.metrics.record_verification(report.as_dict())
        except SyncAbortedError:
            raise
        except Exception as e:
            logger.error("verification_failed", ticker=ticker, error=str(e))
            self.metrics.record_verification({"ticker": ticker, "error": str(e)})
        finally:
            self.metrics.end_phase("verify")


def install_signal_handlers(on_stop: Callable[[], None]) -> None:
    """Route SIGTERM/SIGINT to on_stop on the running loop."""

    def handle_signal(signum: int) -> None:
        logger.info("sync_signal_received", signal=signal.Signals(signum).name)
        on_stop()

    loop = asyncio.get_running_loop()

    # Platform-dependent signal handling
    try:
        loop.add_signal_handler(signal.SIGTERM, handle_signal, signal.SIGTERM)
        loop.add_signal_handler(signal.SIGINT, handle_signal, signal.SIGINT)
    except NotImplementedError:
        # Windows doesn't support add_signal_handler for all signals
        logger.warning("signal_handlers_not_supported_on_platform")
