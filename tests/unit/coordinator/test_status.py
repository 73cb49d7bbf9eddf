"""Tests for status summaries and sinks."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from helpers.scripted import RecordingSink
from phaseloop.coordinator.status import (
    StatusReporter,
    WebhookStatusSink,
    build_status_summary,
    chunk_text,
)
from phaseloop.protocol.models import Phase, SessionState


def test_summary_lines() -> None:
    start = datetime(2024, 1, 1, tzinfo=UTC)
    state = SessionState(goal="todo app", max_iterations=12, phase=Phase.TESTING, iteration=3, start_time=start.isoformat())
    state.metrics.total_operations = 4
    state.metrics.successful_operations = 3
    state.metrics.failed_operations = 1
    text = build_status_summary(state, pending_feedback=2, now=start + timedelta(minutes=5, seconds=7))
    assert text.splitlines() == [
        "Project: todo app",
        "Phase: testing",
        "Iteration: 3/12",
        "Uptime: 5m 7s",
        "Ops: total=4, ok=3, fail=1",
        "Pending feedback: 2",
    ]


def test_chunk_text_respects_size() -> None:
    text = "\n".join(["x" * 30] * 10)
    chunks = chunk_text(text, 100)
    assert all(len(c) <= 100 for c in chunks)
    assert "\n".join(chunks).replace("\n", "") == text.replace("\n", "")


def test_chunk_text_splits_long_line() -> None:
    assert chunk_text("y" * 25, 10) == ["y" * 10, "y" * 10, "y" * 5]


@pytest.mark.asyncio
async def test_webhook_posts_content() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(204)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        await WebhookStatusSink("https://hooks.example/x", client=client).send("hello")
    assert seen == [{"content": "hello"}]


@pytest.mark.asyncio
async def test_broadcast_survives_sink_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    recorder = RecordingSink()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        reporter = StatusReporter([WebhookStatusSink("https://hooks.example/x", client=client), recorder], lambda: "summary")
        await reporter.broadcast()
    assert recorder.messages == ["summary"]


@pytest.mark.asyncio
async def test_broadcast_survives_sink_bug(caplog: pytest.LogCaptureFixture) -> None:
    class BrokenSink:
        async def send(self, text: str) -> None:
            raise ValueError("bad payload")

    recorder = RecordingSink()
    reporter = StatusReporter([BrokenSink(), recorder], lambda: "summary")
    with caplog.at_level("WARNING", logger="phaseloop.coordinator.status"):
        await reporter.broadcast()
    assert recorder.messages == ["summary"]
    record = next(r for r in caplog.records if "Failed to send status update" in r.getMessage())
    assert "bad payload" in record.getMessage()
    assert record.exc_info is not None


@pytest.mark.asyncio
async def test_broadcast_explicit_text() -> None:
    recorder = RecordingSink()
    await StatusReporter([recorder], lambda: "summary").broadcast("ack")
    assert recorder.messages == ["ack"]
