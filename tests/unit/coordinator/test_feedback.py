"""Tests for the in-memory feedback queue and the JSONL inbox."""

from __future__ import annotations

import threading
from pathlib import Path

from phaseloop.coordinator.feedback import FeedbackInbox, FeedbackQueue
from phaseloop.protocol.models import FeedbackAttachment


class TestFeedbackQueue:
    def test_drain_delivers_once(self) -> None:
        q = FeedbackQueue()
        item = q.enqueue("alice", "add auth")
        assert q.drain_all() == [item]
        assert q.drain_all() == []

    def test_preserves_arrival_order(self) -> None:
        q = FeedbackQueue()
        q.enqueue("a", "first")
        q.enqueue("b", "second")
        assert [i.content for i in q.drain_all()] == ["first", "second"]

    def test_attachments_accept_dicts(self) -> None:
        q = FeedbackQueue()
        item = q.enqueue("a", "see file", [{"name": "spec.pdf", "url": "https://x/spec.pdf"}])
        assert item.attachments == (FeedbackAttachment(name="spec.pdf", url="https://x/spec.pdf"),)

    def test_size_and_snapshot(self) -> None:
        q = FeedbackQueue()
        assert not q.has_pending()
        q.enqueue("a", "x")
        assert q.size() == 1
        assert len(q.snapshot()) == 1
        assert q.size() == 1

    def test_concurrent_producers_lose_nothing(self) -> None:
        q = FeedbackQueue()
        drained: list[str] = []

        def produce(tag: str) -> None:
            for i in range(200):
                q.enqueue(tag, f"{tag}-{i}")

        threads = [threading.Thread(target=produce, args=(t,)) for t in ("a", "b", "c")]
        for t in threads:
            t.start()
        while any(t.is_alive() for t in threads):
            drained.extend(i.content for i in q.drain_all())
        for t in threads:
            t.join()
        drained.extend(i.content for i in q.drain_all())

        assert len(drained) == 600
        assert len(set(drained)) == 600


class TestFeedbackInbox:
    def test_submit_then_collect_clears(self, tmp_path: Path) -> None:
        inbox = FeedbackInbox(tmp_path / "feedback.jsonl")
        submitted = inbox.submit("cli", "use sqlite", [FeedbackAttachment("a", "https://a")])
        assert inbox.pending() == 1
        collected = inbox.collect()
        assert collected == [submitted]
        assert inbox.collect() == []
        assert inbox.pending() == 0

    def test_collect_missing_file(self, tmp_path: Path) -> None:
        assert FeedbackInbox(tmp_path / "nope.jsonl").collect() == []

    def test_requeue_round_trips(self, tmp_path: Path) -> None:
        q = FeedbackQueue()
        q.enqueue("a", "one")
        q.enqueue("b", "two")
        inbox = FeedbackInbox(tmp_path / "feedback.jsonl")
        inbox.requeue(q.drain_all())
        assert [i.content for i in inbox.collect()] == ["one", "two"]
