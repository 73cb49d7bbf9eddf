"""Bounded tracking of in-flight operations with per-operation deadlines."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from phaseloop.errors import ConcurrencyExceeded, OperationTimedOut

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ResourceManager:
    """Caps concurrently tracked operations and races each against a timer.

    The cap is a guard against accidental overlap (a recovery attempt
    launched while a phase operation is still draining); steady-state
    concurrency is one.
    """

    def __init__(
        self,
        max_concurrent: int = 5,
        *,
        cleanup_wait_seconds: float = 30.0,
        cleanup_poll_seconds: float = 1.0,
    ) -> None:
        self._max_concurrent = max_concurrent
        self._cleanup_wait_seconds = cleanup_wait_seconds
        self._cleanup_poll_seconds = cleanup_poll_seconds
        self._active: set[str] = set()

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def active_operations(self) -> frozenset[str]:
        return frozenset(self._active)

    async def execute(
        self,
        operation_id: str,
        operation: Callable[[], Awaitable[T]],
        timeout: float,
    ) -> T:
        """Run ``operation()`` under ``operation_id`` with a *timeout* in seconds.

        Raises ConcurrencyExceeded before starting when the cap is reached,
        and OperationTimedOut when the deadline passes first. The timed-out
        operation is cancelled, which is how the process runner learns to
        kill its subprocess.
        """
        if len(self._active) >= self._max_concurrent:
            raise ConcurrencyExceeded(self._max_concurrent, operation_id)

        self._active.add(operation_id)
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except TimeoutError as exc:
            raise OperationTimedOut(operation_id, timeout) from exc
        finally:
            self._active.discard(operation_id)

    async def cleanup(self) -> bool:
        """Wait (bounded) for in-flight operations to drain.

        Returns True when nothing is left running. Nothing is cancelled here.
        """
        deadline = time.monotonic() + self._cleanup_wait_seconds
        while self._active and time.monotonic() < deadline:
            await asyncio.sleep(self._cleanup_poll_seconds)

        if self._active:
            logger.warning(
                "%d operations still active during cleanup: %s",
                len(self._active),
                ", ".join(sorted(self._active)),
            )
            return False
        return True
