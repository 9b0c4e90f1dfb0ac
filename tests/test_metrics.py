"""
Tests for per-run metrics.
"""

import pytest

from nftmirror.pipeline.metrics import SyncMetrics


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestSyncMetrics:

    def test_api_calls_by_service_and_total(self):
        metrics = SyncMetrics()
        metrics.record_api_call("marketplace", success=True)
        metrics.record_api_call("marketplace", success=False)
        metrics.record_retry("marketplace")
        metrics.record_api_call("store", success=True)

        summary = metrics.summary()

        assert summary["api_calls"]["by_service"]["marketplace"] == {
            "total": 2,
            "successful": 1,
            "failed": 1,
            "retries": 1,
        }
        assert summary["api_calls"]["total"]["total"] == 3
        assert summary["api_calls"]["total"]["successful"] == 2

    def test_store_operations(self):
        metrics = SyncMetrics()
        metrics.record_store_operation("inserts", 5)
        metrics.record_store_operation("updates")
        metrics.record_store_operation("deletes", 2)

        assert metrics.summary()["store_operations"] == {"inserts": 5, "updates": 1, "deletes": 2}

    def test_unknown_store_operation_rejected(self):
        with pytest.raises(ValueError):
            SyncMetrics().record_store_operation("upserts")

    def test_phase_durations(self):
        clock = FakeClock()
        metrics = SyncMetrics(clock=clock)

        metrics.start_phase("fetch")
        clock.now += 2.5
        metrics.end_phase("fetch")
        metrics.start_phase("apply")
        clock.now += 1.0

        summary = metrics.summary()
        assert summary["phases"] == {"fetch": 2.5, "apply": None}
        assert summary["duration_seconds"] == 3.5

    def test_end_unknown_phase_is_ignored(self):
        metrics = SyncMetrics()
        metrics.end_phase("verify")
        assert metrics.phases == {}

    def test_reset_clears_everything(self):
        clock = FakeClock()
        metrics = SyncMetrics(clock=clock)
        metrics.record_api_call("marketplace", success=True)
        metrics.record_store_operation("inserts")
        metrics.start_phase("fetch")
        metrics.record_verification({"verified": 3})
        clock.now += 10

        metrics.reset()
        summary = metrics.summary()

        assert summary["duration_seconds"] == 0
        assert summary["api_calls"]["by_service"] == {}
        assert summary["store_operations"]["inserts"] == 0
        assert summary["phases"] == {}
        assert summary["verification"] is None
