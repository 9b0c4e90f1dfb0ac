"""
Tests for the resilient call wrapper.

Coverage:
- Attempt ceiling and the original error surfacing with its attempt count
- Backoff curve and cap
- Retryable vs fatal classification for HTTP and store failures
- Error markers in successful results
- Per-service metrics from ResilientCaller
"""

import time
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import exc as sa_exc

from nftmirror.errors import SourceResponseError
from nftmirror.pipeline.metrics import SyncMetrics
from nftmirror.utils.retry import (
    BackoffProfile,
    MirrorRetryPolicy,
    ResilientCaller,
    compute_backoff,
    with_retry,
)


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://orders.test/listed-orders/KASPUNKS")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class _DriverError(Exception):
    def __init__(self, message: str, sqlstate: str | None = None):
        super().__init__(message)
        self.sqlstate = sqlstate


class _Flaky:
    """Fails with the queued errors, then returns value."""

    def __init__(self, errors: list[BaseException], value: object = "ok"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


# ---------------------------------------------------------------------------
# Test 1: Backoff curve
# ---------------------------------------------------------------------------


def test_backoff_grows_geometrically():
    assert compute_backoff(1, 1.0, 2.0, 15.0) == 1.0
    assert compute_backoff(2, 1.0, 2.0, 15.0) == 2.0
    assert compute_backoff(3, 1.0, 2.0, 15.0) == 4.0


def test_backoff_is_capped():
    assert compute_backoff(10, 1.0, 2.0, 15.0) == 15.0
    assert BackoffProfile(max_attempts=5, base_delay=3.0, cap_delay=5.0).delay_for(3) == 5.0


# ---------------------------------------------------------------------------
# Test 2: Attempt ceiling
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_retry_stops_at_max_attempts_and_reraises_original():
    """An always-failing transient call runs exactly max_attempts times."""
    original = httpx.ConnectError("connection refused")
    operation = _Flaky([original] * 10)
    sleep = AsyncMock()

    with pytest.raises(httpx.ConnectError) as exc_info:
        await with_retry(operation, max_attempts=3, base_delay=1.0, sleep=sleep)

    assert exc_info.value is original
    assert exc_info.value.attempts == 3
    assert operation.calls == 3
    assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_retry_waits_at_least_the_backoff_sum():
    operation = _Flaky([httpx.ReadTimeout("slow")] * 3)

    started = time.monotonic()
    with pytest.raises(httpx.ReadTimeout):
        await with_retry(operation, max_attempts=3, base_delay=0.01, growth_factor=2.0)
    elapsed = time.monotonic() - started

    # 0.01 + 0.02 between the three attempts
    assert elapsed >= 0.03
    assert operation.calls == 3


@pytest.mark.asyncio
async def test_retry_recovers_after_transient_failures():
    operation = _Flaky([_status_error(503), _status_error(502)], value={"success": True})

    result = await with_retry(operation, max_attempts=3, sleep=AsyncMock())

    assert result == {"success": True}
    assert operation.calls == 3


@pytest.mark.asyncio
async def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        await with_retry(_Flaky([]), max_attempts=0)


# ---------------------------------------------------------------------------
# Test 3: Fatal errors are not retried
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_auth_failure_is_not_retried():
    operation = _Flaky([_status_error(401)])
    sleep = AsyncMock()

    with pytest.raises(httpx.HTTPStatusError) as exc_info:
        await with_retry(operation, max_attempts=5, sleep=sleep)

    assert operation.calls == 1
    assert exc_info.value.attempts == 1
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_unique_violation_is_not_retried():
    error = sa_exc.IntegrityError("INSERT INTO listings", {}, Exception("UNIQUE constraint failed"))
    operation = _Flaky([error])

    with pytest.raises(sa_exc.IntegrityError):
        await with_retry(operation, max_attempts=5, sleep=AsyncMock())

    assert operation.calls == 1


@pytest.mark.asyncio
async def test_unsuccessful_payload_marker_is_fatal():
    """A 2xx body flagged success=false surfaces as SourceResponseError on the first attempt."""
    operation = _Flaky([], value={"success": False, "message": "rate plan expired"})

    def error_of(payload):
        if payload.get("success") is False:
            return SourceResponseError(payload["message"], payload)
        return None

    with pytest.raises(SourceResponseError) as exc_info:
        await with_retry(operation, max_attempts=5, error_of=error_of, sleep=AsyncMock())

    assert operation.calls == 1
    assert exc_info.value.payload["message"] == "rate plan expired"


# ---------------------------------------------------------------------------
# Test 4: Classification table
# ---------------------------------------------------------------------------


class TestMirrorRetryPolicy:

    policy = MirrorRetryPolicy()

    @pytest.mark.parametrize("status", [500, 502, 503, 504, 429])
    def test_server_errors_and_throttling_retry(self, status):
        assert self.policy.is_retryable(_status_error(status))

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_client_errors_are_fatal(self, status):
        assert not self.policy.is_retryable(_status_error(status))

    def test_network_errors_retry(self):
        assert self.policy.is_retryable(httpx.ConnectError("refused"))
        assert self.policy.is_retryable(httpx.ReadTimeout("timeout"))
        assert self.policy.is_retryable(ConnectionResetError("reset"))
        assert self.policy.is_retryable(TimeoutError())

    def test_bad_url_is_fatal(self):
        assert not self.policy.is_retryable(httpx.UnsupportedProtocol("ftp://nope"))

    def test_store_connection_loss_retries(self):
        error = sa_exc.OperationalError("SELECT 1", {}, _DriverError("server closed the connection"))
        assert self.policy.is_retryable(error)

    def test_store_sqlstate_decides(self):
        failover = sa_exc.OperationalError("SELECT 1", {}, _DriverError("failover", sqlstate="08006"))
        missing_table = sa_exc.ProgrammingError("SELECT 1", {}, _DriverError("no table", sqlstate="42P01"))
        assert self.policy.is_retryable(failover)
        assert not self.policy.is_retryable(missing_table)

    def test_programming_errors_are_fatal(self):
        assert not self.policy.is_retryable(ValueError("bad input"))
        assert not self.policy.is_retryable(KeyError("field"))


# ---------------------------------------------------------------------------
# Test 5: ResilientCaller metrics
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_resilient_caller_records_retries_and_success():
    metrics = SyncMetrics()
    caller = ResilientCaller(
        "marketplace",
        BackoffProfile(max_attempts=3, base_delay=0.5),
        metrics=metrics,
        sleep=AsyncMock(),
    )

    result = await caller.call(_Flaky([httpx.ConnectError("refused")], value=7), label="list_orders")

    counters = metrics.services["marketplace"]
    assert result == 7
    assert counters.total == 1
    assert counters.successful == 1
    assert counters.retries == 1


@pytest.mark.asyncio
async def test_resilient_caller_records_failure():
    metrics = SyncMetrics()
    caller = ResilientCaller(
        "store",
        BackoffProfile(max_attempts=2, base_delay=0.5),
        metrics=metrics,
        sleep=AsyncMock(),
    )

    with pytest.raises(httpx.ConnectError):
        await caller.call(_Flaky([httpx.ConnectError("refused")] * 2), label="insert")

    counters = metrics.services["store"]
    assert counters.failed == 1
    assert counters.retries == 1


@pytest.mark.asyncio
async def test_resilient_caller_profile_override():
    caller = ResilientCaller("marketplace", BackoffProfile(max_attempts=3, base_delay=0.5), sleep=AsyncMock())
    operation = _Flaky([httpx.ConnectError("refused")] * 10)

    with pytest.raises(httpx.ConnectError) as exc_info:
        await caller.call(operation, label="traits", profile=BackoffProfile(max_attempts=5, base_delay=0.1))

    assert exc_info.value.attempts == 5
    assert operation.calls == 5
