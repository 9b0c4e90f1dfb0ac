"""
NFT Mirror — Run Metrics

Per-run counter/timer bag. One instance per invocation, reset at the start of
every run, emitted once as a structured summary. Nothing here is persisted.
"""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable

import structlog

logger = structlog.get_logger(__name__)

STORE_OPERATIONS = ("inserts", "updates", "deletes")


@dataclass
class ServiceCounters:
    total: int = 0
    successful: int = 0
    failed: int = 0
    retries: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "retries": self.retries,
        }


@dataclass
class PhaseTiming:
    started_at: float
    ended_at: float | None = None

    @property
    def duration(self) -> float | None:
        if self.ended_at is None:
            return None
        return round(self.ended_at - self.started_at, 3)


class SyncMetrics:
    """
    Counters for one sync run.

    Usage:
        metrics = SyncMetrics()
        metrics.start_phase("fetch")
        ...
        metrics.end_phase("fetch")
        metrics.record_store_operation("inserts", 5)
        summary = metrics.summary()
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.reset()

    def reset(self) -> None:
        self.started_at = self._clock()
        self.services: dict[str, ServiceCounters] = defaultdict(ServiceCounters)
        self.store_operations: dict[str, int] = {op: 0 for op in STORE_OPERATIONS}
        self.phases: dict[str, PhaseTiming] = {}
        self.verification: dict[str, Any] | None = None

    # -----------------------------------------------------------------------
    # Recording
    # -----------------------------------------------------------------------

    def record_api_call(self, service: str, success: bool) -> None:
        counters = self.services[service]
        counters.total += 1
        if success:
            counters.successful += 1
        else:
            counters.failed += 1

    def record_retry(self, service: str) -> None:
        self.services[service].retries += 1

    def record_store_operation(self, kind: str, count: int = 1) -> None:
        if kind not in self.store_operations:
            raise ValueError(f"Unknown store operation kind: {kind!r}")
        self.store_operations[kind] += count

    def start_phase(self, name: str) -> None:
        self.phases[name] = PhaseTiming(started_at=self._clock())

    def end_phase(self, name: str) -> None:
        phase = self.phases.get(name)
        if phase is None:
            logger.warning("metrics_phase_not_started", phase=name)
            return
        phase.ended_at = self._clock()

    def record_verification(self, report: dict[str, Any]) -> None:
        self.verification = report

    # -----------------------------------------------------------------------
    # Reporting
    # -----------------------------------------------------------------------

    @property
    def api_totals(self) -> ServiceCounters:
        totals = ServiceCounters()
        for counters in self.services.values():
            totals.total += counters.total
            totals.successful += counters.successful
            totals.failed += counters.failed
            totals.retries += counters.retries
        return totals

    def summary(self) -> dict[str, Any]:
        """Single structured dict describing the run so far."""
        return {
            "duration_seconds": round(self._clock() - self.started_at, 3),
            "api_calls": {
                "total": self.api_totals.as_dict(),
                "by_service": {name: c.as_dict() for name, c in sorted(self.services.items())},
            },
            "store_operations": dict(self.store_operations),
            "phases": {name: phase.duration for name, phase in self.phases.items()},
            "verification": self.verification,
        }
