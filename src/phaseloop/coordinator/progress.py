"""Progress events streamed out of a running agent invocation.

The process runner publishes events without waiting on anyone; a single
consumer task drains the channel into the log (and optionally a JSONL
file). Parsing of agent output never depends on this path.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProgressEvent:
    """A single observation of agent activity."""

    kind: str  # "spawn" | "progress" | "activity" | "stderr" | "exit" | "restart"
    message: str = ""
    timestamp: float = field(default_factory=time.time)
    data: dict[str, Any] = field(default_factory=dict)


class ProgressChannel:
    """Unbounded queue of progress events plus a short in-memory history."""

    def __init__(self, persist_path: Path | None = None, history_size: int = 200) -> None:
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        self._persist_path = persist_path
        self._history: list[ProgressEvent] = []
        self._history_size = history_size

    def publish(self, event: ProgressEvent) -> None:
        self._history.append(event)
        if len(self._history) > self._history_size:
            del self._history[: -self._history_size]
        self._queue.put_nowait(event)

    @property
    def history(self) -> list[ProgressEvent]:
        return list(self._history)

    def recent(self, n: int = 20) -> list[ProgressEvent]:
        return self._history[-n:]

    async def consume(self) -> None:
        """Log events until cancelled."""
        while True:
            event = await self._queue.get()
            self._record(event)
            self._queue.task_done()

    def drain_pending(self) -> None:
        while not self._queue.empty():
            self._record(self._queue.get_nowait())
            self._queue.task_done()

    def _record(self, event: ProgressEvent) -> None:
        level = logging.WARNING if event.kind == "stderr" else logging.INFO
        logger.log(level, "agent %s: %s", event.kind, event.message)
        if self._persist_path is None:
            return
        try:
            self._persist_path.parent.mkdir(parents=True, exist_ok=True)
            with self._persist_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(asdict(event), default=str) + "\n")
        except OSError as exc:
            logger.debug("Progress persist error: %s", exc)
