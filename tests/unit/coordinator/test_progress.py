"""Tests for the progress event channel."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from phaseloop.coordinator.progress import ProgressChannel, ProgressEvent


def test_history_is_bounded() -> None:
    channel = ProgressChannel(history_size=3)
    for i in range(5):
        channel.publish(ProgressEvent(kind="progress", message=str(i)))
    assert [e.message for e in channel.history] == ["2", "3", "4"]
    assert [e.message for e in channel.recent(2)] == ["3", "4"]


def test_drain_pending_persists(tmp_path: Path) -> None:
    path = tmp_path / "progress.jsonl"
    channel = ProgressChannel(path)
    channel.publish(ProgressEvent(kind="spawn", message="pid 1", data={"pid": 1}))
    channel.drain_pending()
    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    assert json.loads(lines[0])["data"] == {"pid": 1}


@pytest.mark.asyncio
async def test_consumer_drains_queue(tmp_path: Path) -> None:
    path = tmp_path / "progress.jsonl"
    channel = ProgressChannel(path)
    consumer = asyncio.create_task(channel.consume())
    channel.publish(ProgressEvent(kind="exit", message="code 0"))
    channel.publish(ProgressEvent(kind="stderr", message="warn"))
    await asyncio.sleep(0.01)
    consumer.cancel()
    await asyncio.gather(consumer, return_exceptions=True)
    kinds = [json.loads(line)["kind"] for line in path.read_text(encoding="utf-8").splitlines()]
    assert kinds == ["exit", "stderr"]
