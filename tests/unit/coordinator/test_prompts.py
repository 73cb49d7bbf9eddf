"""Tests for phase, recovery and feedback prompt text."""

from __future__ import annotations

import pytest

from phaseloop.coordinator.prompts import (
    FEEDBACK_HEADER,
    format_feedback,
    phase_prompt,
    recovery_prompt,
    with_feedback,
)
from phaseloop.protocol.models import FeedbackAttachment, FeedbackItem, Phase


def _item(content: str, *attachments: FeedbackAttachment) -> FeedbackItem:
    return FeedbackItem(id="1", timestamp="2024-01-01T00:00:00+00:00", author_tag="alice", content=content, attachments=attachments)


@pytest.mark.parametrize("phase", [p for p in Phase if p != Phase.ERROR])
def test_every_work_phase_mentions_goal(phase: Phase) -> None:
    assert "a todo app" in phase_prompt(phase, "a todo app")


def test_error_phase_has_no_prompt() -> None:
    with pytest.raises(ValueError):
        phase_prompt(Phase.ERROR, "g")


def test_recovery_prompt() -> None:
    text = recovery_prompt(RuntimeError("disk full"), 2, 3, "a todo app")
    assert "disk full" in text
    assert "Recovery attempt 2/3" in text
    assert text.endswith("a todo app")


def test_with_feedback_no_items_is_identity() -> None:
    assert with_feedback("base", []) == "base"


def test_with_feedback_appends_block() -> None:
    text = with_feedback("base", [_item("use postgres", FeedbackAttachment("erd.png", "https://x/erd.png"))])
    assert text.startswith("base\n\n")
    assert FEEDBACK_HEADER in text
    assert "- From alice at 2024-01-01T00:00:00+00:00: use postgres" in text
    assert "    - erd.png: https://x/erd.png" in text


def test_format_feedback_keeps_order() -> None:
    lines = format_feedback([_item("one"), _item("two")]).splitlines()
    assert lines[0].endswith("one")
    assert lines[1].endswith("two")
