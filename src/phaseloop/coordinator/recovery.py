"""Failure classification and the retry/backoff recovery policy.

Two classes of failure:

- rate limited: wait out a fixed cooldown, then let the caller retry the
  same operation. Never consumes a retry attempt.
- recoverable (everything else): up to ``max_retries`` attempts that ask
  the agent to diagnose and resume, with ``base ** attempt`` seconds of
  backoff between failed attempts. A rate limit hit during an attempt
  triggers the cooldown and is not counted.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
)

from phaseloop.errors import (
    AgentOutputMalformed,
    ConfigurationError,
    RateLimited,
    RecoveryExhausted,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_PATTERNS: tuple[str, ...] = ("rate limit", "too many requests")

SleepFn = Callable[[float], Awaitable[Any]]
AttemptFn = Callable[[int, int], Awaitable[Any]]
AttemptFailedFn = Callable[[int, BaseException], None]


class FailureClass(StrEnum):
    RATE_LIMITED = "rate_limited"
    RECOVERABLE = "recoverable"


def mentions_rate_limit(text: str) -> bool:
    lowered = text.lower()
    return any(p in lowered for p in RATE_LIMIT_PATTERNS)


def classify_failure(error: BaseException) -> FailureClass:
    if isinstance(error, RateLimited) or mentions_rate_limit(str(error)):
        return FailureClass.RATE_LIMITED
    return FailureClass.RECOVERABLE


def is_hard_failure(error: BaseException) -> bool:
    """Failures that move the run into the ``error`` phase while recovering."""
    return isinstance(error, (ConfigurationError, AgentOutputMalformed))


@dataclass(slots=True)
class RecoveryResult:
    failure_class: FailureClass
    attempts: int = 0
    cooldowns: int = 0


class RecoveryPolicy:
    """Absorbs rate limits and retries recoverable failures up to a bound.

    The policy never touches session state. The caller supplies the
    attempt coroutine (build a recovery prompt, run it through the
    resource manager) and an optional hook to record failed attempts.
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        rate_limit_cooldown: float = 1_800.0,
        backoff_base: float = 2.0,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._max_retries = max_retries
        self._cooldown = rate_limit_cooldown
        self._backoff_base = backoff_base
        self._sleep = sleep

    @property
    def max_retries(self) -> int:
        return self._max_retries

    async def cool_down(self) -> None:
        logger.warning(
            "Rate limit hit. Waiting %.0f minutes before retrying...",
            self._cooldown / 60,
        )
        await self._sleep(self._cooldown)
        logger.info("Wait complete, resuming operations...")

    async def recover(
        self,
        error: BaseException,
        attempt: AttemptFn,
        *,
        on_attempt_failed: AttemptFailedFn | None = None,
    ) -> RecoveryResult:
        """Recover from *error* or raise RecoveryExhausted."""
        if classify_failure(error) is FailureClass.RATE_LIMITED:
            await self.cool_down()
            return RecoveryResult(FailureClass.RATE_LIMITED, cooldowns=1)

        logger.info("Attempting error recovery: %s", error)
        if self._max_retries <= 0:
            raise RecoveryExhausted(0, error)

        consumed = 0
        cooldowns = 0

        def _stop(state: RetryCallState) -> bool:
            return consumed >= self._max_retries

        def _wait(state: RetryCallState) -> float:
            exc = state.outcome.exception() if state.outcome else None
            if exc is not None and classify_failure(exc) is FailureClass.RATE_LIMITED:
                return self._cooldown
            return self._backoff_base ** consumed

        def _before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            if exc is not None and classify_failure(exc) is FailureClass.RATE_LIMITED:
                logger.warning("Rate limit hit during recovery. Waiting before next attempt...")

        retrying = AsyncRetrying(
            stop=_stop,
            wait=_wait,
            retry=retry_if_exception_type(Exception),
            before_sleep=_before_sleep,
            sleep=self._sleep,
        )
        try:
            async for retry_attempt in retrying:
                with retry_attempt:
                    number = consumed + 1
                    try:
                        await attempt(number, self._max_retries)
                    except Exception as exc:
                        if classify_failure(exc) is FailureClass.RATE_LIMITED:
                            cooldowns += 1
                        else:
                            consumed += 1
                            logger.warning("Recovery attempt %d failed: %s", number, exc)
                            if on_attempt_failed is not None:
                                on_attempt_failed(number, exc)
                        raise
                    logger.info("Error recovery successful on attempt %d", number)
        except RetryError as exc:
            last = exc.last_attempt.exception()
            logger.error("Error recovery failed after all attempts")
            raise RecoveryExhausted(consumed, last) from last

        return RecoveryResult(FailureClass.RECOVERABLE, attempts=consumed + 1, cooldowns=cooldowns)
