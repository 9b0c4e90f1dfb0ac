"""
NFT Mirror — Pacing & Cooperative Stop

Fixed inter-item and inter-batch delays keep the marketplace and the store
under their rate limits. The stop event is set by the signal handlers; loops
check it between steps so the in-flight call always finishes.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import structlog

from nftmirror.errors import SyncAbortedError

logger = structlog.get_logger(__name__)


class Pacer:
    """Sleeps between steps and raises SyncAbortedError once a stop is requested."""

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        stop_event: asyncio.Event | None = None,
    ):
        self._sleep = sleep
        self.stop_event = stop_event

    @property
    def stopping(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    def check_stop(self, where: str) -> None:
        if self.stopping:
            logger.warning("sync_stop_requested", where=where)
            raise SyncAbortedError(f"shutdown requested during {where}")

    async def pause(self, seconds: float) -> None:
        if seconds <= 0:
            return
        sleeper = self._sleep or asyncio.sleep
        await sleeper(seconds)
