"""Feedback intake: in-memory queue plus a file inbox shared with the CLI.

The queue has concurrent writers (the inbox watcher, in-process callers)
and a single reader (the prompt builder). ``drain_all`` swaps the buffer
under a lock so an item is never delivered twice or dropped between the
read and the clear.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections.abc import Iterable
from pathlib import Path

from phaseloop.protocol.io import append_jsonl, read_jsonl
from phaseloop.protocol.locks import locked_file
from phaseloop.protocol.models import FeedbackAttachment, FeedbackItem, utc_now_iso


def new_feedback_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def make_feedback_item(
    author_tag: str,
    content: str,
    attachments: Iterable[FeedbackAttachment | dict[str, str]] = (),
) -> FeedbackItem:
    return FeedbackItem(
        id=new_feedback_id(),
        timestamp=utc_now_iso(),
        author_tag=author_tag,
        content=content,
        attachments=tuple(_coerce_attachment(a) for a in attachments),
    )


def _coerce_attachment(value: FeedbackAttachment | dict[str, str]) -> FeedbackAttachment:
    if isinstance(value, FeedbackAttachment):
        return value
    return FeedbackAttachment(name=str(value.get("name", "")), url=str(value.get("url", "")))


class FeedbackQueue:
    """Append-only inbox drained as a batch at prompt-build time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: list[FeedbackItem] = []

    def enqueue(
        self,
        author_tag: str,
        content: str,
        attachments: Iterable[FeedbackAttachment | dict[str, str]] = (),
    ) -> FeedbackItem:
        item = make_feedback_item(author_tag, content, attachments)
        self.put(item)
        return item

    def put(self, item: FeedbackItem) -> None:
        with self._lock:
            self._items.append(item)

    def drain_all(self) -> list[FeedbackItem]:
        with self._lock:
            items, self._items = self._items, []
        return items

    def snapshot(self) -> list[FeedbackItem]:
        with self._lock:
            return list(self._items)

    def has_pending(self) -> bool:
        with self._lock:
            return bool(self._items)

    def size(self) -> int:
        with self._lock:
            return len(self._items)


class FeedbackInbox:
    """JSONL file that outside processes append feedback to.

    Writers and the collecting orchestrator serialize on an advisory
    ``flock`` so a collect never truncates a half-written submission.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def submit(
        self,
        author_tag: str,
        content: str,
        attachments: Iterable[FeedbackAttachment | dict[str, str]] = (),
    ) -> FeedbackItem:
        item = make_feedback_item(author_tag, content, attachments)
        self.requeue([item])
        return item

    def requeue(self, items: Iterable[FeedbackItem]) -> None:
        batch = list(items)
        if not batch:
            return
        with locked_file(self._path):
            for item in batch:
                append_jsonl(self._path, item.to_dict())

    def collect(self) -> list[FeedbackItem]:
        """Read and clear the inbox atomically with respect to submitters."""
        if not self._path.exists():
            return []
        with locked_file(self._path):
            raw = read_jsonl(self._path)
            if raw:
                self._path.write_text("", encoding="utf-8")
        return [FeedbackItem.from_dict(r) for r in raw]

    def pending(self) -> int:
        return len(read_jsonl(self._path))
