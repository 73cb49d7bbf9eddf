"""Periodic plain-text status broadcast."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Protocol

import httpx

from phaseloop.protocol.models import SessionState

logger = logging.getLogger(__name__)

WEBHOOK_CHUNK_CHARS = 1_900


def build_status_summary(
    state: SessionState,
    pending_feedback: int = 0,
    *,
    now: datetime | None = None,
) -> str:
    uptime_ms = state.uptime_ms(now)
    mins, rem_ms = divmod(uptime_ms, 60_000)
    secs = rem_ms // 1000
    m = state.metrics
    lines = [
        f"Project: {state.goal}",
        f"Phase: {state.phase}",
        f"Iteration: {state.iteration}/{state.max_iterations}",
        f"Uptime: {mins}m {secs}s",
        f"Ops: total={m.total_operations}, ok={m.successful_operations}, fail={m.failed_operations}",
    ]
    if pending_feedback:
        lines.append(f"Pending feedback: {pending_feedback}")
    return "\n".join(lines)


class StatusSink(Protocol):
    async def send(self, text: str) -> None: ...


class LogStatusSink:
    async def send(self, text: str) -> None:
        logger.info("Status update:\n%s", text)


class WebhookStatusSink:
    """POSTs ``{"content": ...}`` chunks to a chat webhook URL."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._client = client

    async def send(self, text: str) -> None:
        if self._client is not None:
            await self._post_all(self._client, text)
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            await self._post_all(client, text)

    async def _post_all(self, client: httpx.AsyncClient, text: str) -> None:
        for chunk in chunk_text(text, WEBHOOK_CHUNK_CHARS):
            response = await client.post(self._url, json={"content": chunk})
            response.raise_for_status()


def chunk_text(text: str, size: int) -> list[str]:
    if len(text) <= size:
        return [text]
    chunks: list[str] = []
    current = ""
    for line in text.split("\n"):
        while len(line) > size:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:size])
            line = line[size:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > size:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


class StatusReporter:
    """Broadcasts the summary once at start and then every interval."""

    def __init__(
        self,
        sinks: Sequence[StatusSink],
        summary: Callable[[], str],
        *,
        interval_seconds: float = 1_800.0,
    ) -> None:
        self._sinks = list(sinks)
        self._summary = summary
        self._interval = interval_seconds

    async def broadcast(self, text: str | None = None) -> None:
        message = text if text is not None else self._summary()
        for sink in self._sinks:
            try:
                await sink.send(message)
            except Exception as exc:
                logger.warning("Failed to send status update: %s", exc, exc_info=True)

    async def run(self) -> None:
        await self.broadcast()
        while True:
            await asyncio.sleep(self._interval)
            await self.broadcast()
