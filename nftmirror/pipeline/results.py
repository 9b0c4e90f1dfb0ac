"""
NFT Mirror — Sync Result Types

Typed outcomes shared by every syncer: per-item actions, BatchResult for
each apply step, and RangeSummary for token-range drivers.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

import structlog

from nftmirror.utils.pacing import Pacer

logger = structlog.get_logger(__name__)


class ItemAction(str, Enum):
    """Outcome of one per-token step."""
    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"
    NO_CHANGE = "no_change"
    SYNCED = "synced"
    UP_TO_DATE = "up_to_date"
    ALREADY_LOADED = "already_loaded"
    NO_DATA = "no_data"
    ERROR = "error"


@dataclass
class BatchResult:
    """Outcome of one apply step. Partial failure is normal, not exceptional."""

    succeeded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    def record_success(self, count: int = 1) -> None:
        self.succeeded += count

    def record_failure(self, item: Any, error: BaseException, count: int = 1) -> None:
        self.failed += count
        self.errors.append(f"{item}: {type(error).__name__}: {error}")

    def merge(self, other: BatchResult) -> BatchResult:
        return BatchResult(
            succeeded=self.succeeded + other.succeeded,
            failed=self.failed + other.failed,
            errors=self.errors + other.errors,
        )

    def as_dict(self) -> dict[str, Any]:
        return {"succeeded": self.succeeded, "failed": self.failed, "errors": list(self.errors)}


class ItemResult(Protocol):
    token_id: int
    action: ItemAction
    error: str | None


@dataclass
class RangeSummary:
    """Tally of a token-range pass."""

    start: int
    end: int
    processed: int = 0
    actions: Counter = field(default_factory=Counter)
    errors: list[str] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return self.actions[ItemAction.ERROR]

    @property
    def token_count(self) -> int:
        return self.end - self.start + 1

    def record(self, result: ItemResult) -> None:
        self.processed += 1
        self.actions[result.action] += 1
        if result.action is ItemAction.ERROR:
            self.errors.append(f"token {result.token_id}: {result.error}")

    def as_dict(self) -> dict[str, Any]:
        return {
            "start": self.start,
            "end": self.end,
            "processed": self.processed,
            "actions": {action.value: count for action, count in self.actions.items()},
            "errors": list(self.errors),
        }


def attach_partial(error: BaseException, counts: dict[str, Any]) -> None:
    """Record the counts gathered before error on the error itself. The innermost counts win."""
    if getattr(error, "partial_counts", None) is None:
        error.partial_counts = counts  # type: ignore[attr-defined]


async def drive_range(
    label: str,
    start: int,
    end: int,
    step: Callable[[int], Awaitable[ItemResult]],
    *,
    pacer: Pacer,
    batch_size: int,
    token_delay: float,
    batch_delay: float,
) -> RangeSummary:
    """
    Run step for every token in [start, end] sequentially.

    A short delay separates tokens and a longer one separates batches.
    Progress is logged once per batch. Item errors are tallied, never raised.
    Anything that does escape (a stop request, a fatal step error) carries the
    tally so far as `partial_counts`.
    """
    if end < start:
        raise ValueError(f"empty token range {start}..{end}")

    summary = RangeSummary(start=start, end=end)
    logger.info(f"{label}_range_start", start=start, end=end, batch_size=batch_size)

    try:
        for token_id in range(start, end + 1):
            pacer.check_stop(f"{label} token {token_id}")

            result = await step(token_id)
            summary.record(result)

            position = token_id - start + 1
            if position % batch_size == 0 or token_id == end:
                logger.info(
                    f"{label}_range_progress",
                    processed=summary.processed,
                    of=summary.token_count,
                    last_token=token_id,
                    errors=summary.error_count,
                )
                if token_id != end:
                    await pacer.pause(batch_delay)
            elif token_id != end:
                await pacer.pause(token_delay)
    except Exception as e:
        attach_partial(e, summary.as_dict())
        raise

    logger.info(f"{label}_range_complete", **summary.as_dict())
    return summary
