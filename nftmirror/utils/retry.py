"""
NFT Mirror — Resilient Call Wrapper

The single retry loop used for every remote call: marketplace API requests
and store operations alike. Components never loop on their own; they hand an
awaitable factory to with_retry (or a ResilientCaller bound to a service).

Backoff for attempt n (1-based) that failed retryably:
    delay = min(base_delay * growth_factor ** (n - 1), cap_delay)

On exhaustion or a fatal error the ORIGINAL exception is re-raised with an
``attempts`` attribute attached.
"""

from __future__ import annotations

import asyncio
import socket
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol, TypeVar

import httpx
import structlog
from sqlalchemy import exc as sa_exc

from nftmirror.config import settings
from nftmirror.errors import SourceResponseError, sqlstate_of

if TYPE_CHECKING:
    from nftmirror.pipeline.metrics import SyncMetrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# SQLSTATE codes that mean the connection, not the statement, failed
RETRYABLE_SQLSTATES = frozenset({
    "08000",  # connection_exception
    "08001",  # sqlclient_unable_to_establish_sqlconnection
    "08003",  # connection_does_not_exist
    "08006",  # connection_failure
    "57P01",  # admin_shutdown
    "57P03",  # cannot_connect_now
    "40001",  # serialization_failure
})


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class RetryPolicy(Protocol):
    """Decides whether a failed attempt is worth repeating."""

    def is_retryable(self, error: BaseException) -> bool:
        ...


class MirrorRetryPolicy:
    """
    Shared classification for source and store failures.

    Retryable: network-level failures, HTTP 5xx and 429, store transport
    errors. Fatal: auth failures, other 4xx, unsuccessful payloads,
    constraint violations, programming errors.
    """

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, httpx.HTTPStatusError):
            status = error.response.status_code
            return status >= 500 or status == 429

        if isinstance(error, (httpx.UnsupportedProtocol, httpx.LocalProtocolError)):
            return False
        if isinstance(error, httpx.TransportError):
            return True

        if isinstance(error, SourceResponseError):
            return False

        if isinstance(error, sa_exc.IntegrityError):
            return False
        if isinstance(error, (sa_exc.TimeoutError, sa_exc.DisconnectionError)):
            return True
        if isinstance(error, sa_exc.DBAPIError):
            if error.connection_invalidated:
                return True
            code = sqlstate_of(error)
            if code is not None:
                return code in RETRYABLE_SQLSTATES
            return isinstance(error, (sa_exc.OperationalError, sa_exc.InterfaceError))

        if isinstance(error, (ConnectionError, socket.gaierror, asyncio.TimeoutError, TimeoutError)):
            return True

        return False


DEFAULT_RETRY_POLICY = MirrorRetryPolicy()


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BackoffProfile:
    """Attempt budget and delay curve for one class of remote call."""

    max_attempts: int
    base_delay: float
    growth_factor: float = 2.0
    cap_delay: float = 15.0

    def delay_for(self, attempt: int) -> float:
        return compute_backoff(attempt, self.base_delay, self.growth_factor, self.cap_delay)

    @classmethod
    def source(cls) -> BackoffProfile:
        return cls(
            max_attempts=settings.SOURCE_RETRY_ATTEMPTS,
            base_delay=settings.SOURCE_RETRY_BASE_DELAY,
            growth_factor=settings.SOURCE_RETRY_GROWTH,
            cap_delay=settings.SOURCE_RETRY_CAP,
        )

    @classmethod
    def traits(cls) -> BackoffProfile:
        return cls(
            max_attempts=settings.TRAITS_RETRY_ATTEMPTS,
            base_delay=settings.TRAITS_RETRY_BASE_DELAY,
            growth_factor=settings.SOURCE_RETRY_GROWTH,
            cap_delay=settings.SOURCE_RETRY_CAP,
        )

    @classmethod
    def store(cls) -> BackoffProfile:
        return cls(
            max_attempts=settings.STORE_RETRY_ATTEMPTS,
            base_delay=settings.STORE_RETRY_BASE_DELAY,
            growth_factor=settings.STORE_RETRY_GROWTH,
            cap_delay=settings.STORE_RETRY_CAP,
        )


def compute_backoff(attempt: int, base_delay: float, growth_factor: float, cap_delay: float) -> float:
    """Delay to wait after the given failed attempt (1-based)."""
    return min(base_delay * (growth_factor ** (attempt - 1)), cap_delay)


def _attach_attempts(error: BaseException, attempts: int) -> None:
    try:
        error.attempts = attempts  # type: ignore[attr-defined]
    except AttributeError:
        pass


def _describe(error: BaseException) -> dict[str, Any]:
    info: dict[str, Any] = {"error": str(error), "error_type": type(error).__name__}
    if isinstance(error, httpx.HTTPStatusError):
        info["status_code"] = error.response.status_code
    code = sqlstate_of(error)
    if code:
        info["sqlstate"] = code
    return info


# ---------------------------------------------------------------------------
# Wrapper
# ---------------------------------------------------------------------------


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    growth_factor: float = 2.0,
    cap_delay: float = 15.0,
    error_of: Callable[[T], BaseException | None] | None = None,
    label: str = "operation",
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
) -> T:
    """
    Run ``operation`` until it succeeds, fails fatally, or the budget runs out.

    Args:
        operation: Zero-argument factory returning a fresh awaitable per attempt.
        policy: Classifies failures as retryable or fatal.
        max_attempts: Total attempts including the first one.
        base_delay / growth_factor / cap_delay: Backoff curve in seconds.
        error_of: Optional inspector for results that carry an error marker
            instead of raising. A non-None return is treated as a failure.
        label: Name used in log events.
        on_retry: Called with (attempt, error, delay) before each backoff sleep.
        sleep: Awaitable sleep, defaults to asyncio.sleep.

    Returns:
        The operation's result.

    Raises:
        The original exception, with ``attempts`` set to the attempt count.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    sleeper = sleep or asyncio.sleep

    for attempt in range(1, max_attempts + 1):
        try:
            result = await operation()
            marker = error_of(result) if error_of is not None else None
            if marker is not None:
                raise marker
            if attempt > 1:
                logger.info("retry_recovered", label=label, attempt=attempt)
            return result
        except Exception as error:
            retryable = policy.is_retryable(error)
            if not retryable or attempt >= max_attempts:
                _attach_attempts(error, attempt)
                logger.warning(
                    "retry_gave_up",
                    label=label,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    retryable=retryable,
                    **_describe(error),
                )
                raise

            delay = compute_backoff(attempt, base_delay, growth_factor, cap_delay)
            logger.warning(
                "retry_scheduled",
                label=label,
                attempt=attempt,
                max_attempts=max_attempts,
                wait_seconds=delay,
                **_describe(error),
            )
            if on_retry is not None:
                on_retry(attempt, error, delay)
            await sleeper(delay)

    raise AssertionError("unreachable")  # pragma: no cover


class ResilientCaller:
    """
    with_retry bound to one service, one backoff profile and the run metrics.

    Usage:
        caller = ResilientCaller("marketplace", BackoffProfile.source(), metrics=metrics)
        page = await caller.call(lambda: client.post(...), label="list_orders")
    """

    def __init__(
        self,
        service: str,
        profile: BackoffProfile,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        metrics: SyncMetrics | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.service = service
        self.profile = profile
        self.policy = policy
        self.metrics = metrics
        self._sleep = sleep

    def _record_retry(self, attempt: int, error: BaseException, delay: float) -> None:
        if self.metrics is not None:
            self.metrics.record_retry(self.service)

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        label: str,
        error_of: Callable[[T], BaseException | None] | None = None,
        profile: BackoffProfile | None = None,
    ) -> T:
        active = profile or self.profile
        try:
            result = await with_retry(
                operation,
                policy=self.policy,
                max_attempts=active.max_attempts,
                base_delay=active.base_delay,
                growth_factor=active.growth_factor,
                cap_delay=active.cap_delay,
                error_of=error_of,
                label=f"{self.service}.{label}",
                on_retry=self._record_retry,
                sleep=self._sleep,
            )
        except Exception:
            if self.metrics is not None:
                self.metrics.record_api_call(self.service, success=False)
            raise
        if self.metrics is not None:
            self.metrics.record_api_call(self.service, success=True)
        return result
