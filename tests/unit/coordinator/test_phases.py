"""Tests for the phase transition table."""

from __future__ import annotations

import pytest

from phaseloop.coordinator.phases import (
    VALID_TRANSITIONS,
    InvalidTransitionError,
    PhaseOutcome,
    is_terminal,
    next_phase,
)
from phaseloop.protocol.models import Phase


@pytest.mark.parametrize(
    ("phase", "outcome", "expected"),
    [
        (Phase.PLANNING, PhaseOutcome.ADVANCED, Phase.IMPLEMENTATION),
        (Phase.IMPLEMENTATION, PhaseOutcome.ADVANCED, Phase.TESTING),
        (Phase.TESTING, PhaseOutcome.TESTS_FAILED, Phase.CRITIQUE),
        (Phase.TESTING, PhaseOutcome.TESTS_PASSED, Phase.COMPLETION),
        (Phase.CRITIQUE, PhaseOutcome.ADVANCED, Phase.IMPLEMENTATION),
        (Phase.COMPLETION, PhaseOutcome.ADVANCED, Phase.COMPLETION),
    ],
)
def test_happy_path_edges(phase: Phase, outcome: PhaseOutcome, expected: Phase) -> None:
    assert next_phase(phase, outcome) == expected


def test_hard_failure_goes_to_error_from_any_work_phase() -> None:
    for phase in (Phase.PLANNING, Phase.IMPLEMENTATION, Phase.TESTING, Phase.CRITIQUE, Phase.COMPLETION):
        assert next_phase(phase, PhaseOutcome.HARD_FAILURE) == Phase.ERROR


def test_forced_completion() -> None:
    assert next_phase(Phase.CRITIQUE, PhaseOutcome.FORCED_COMPLETION) == Phase.COMPLETION


class TestErrorRecovery:
    def test_returns_to_previous_phase(self) -> None:
        assert next_phase(Phase.ERROR, PhaseOutcome.RECOVERED, previous=Phase.TESTING) == Phase.TESTING

    def test_unknown_previous_restarts_planning(self) -> None:
        assert next_phase(Phase.ERROR, PhaseOutcome.RECOVERED) == Phase.PLANNING
        assert next_phase(Phase.ERROR, PhaseOutcome.RECOVERED, previous=Phase.ERROR) == Phase.PLANNING

    def test_error_only_leaves_on_recovery(self) -> None:
        with pytest.raises(InvalidTransitionError):
            next_phase(Phase.ERROR, PhaseOutcome.ADVANCED)


def test_invalid_transition_rejected() -> None:
    with pytest.raises(InvalidTransitionError):
        next_phase(Phase.PLANNING, PhaseOutcome.TESTS_PASSED)


def test_transition_set_has_no_shortcuts() -> None:
    assert (Phase.PLANNING, Phase.COMPLETION) in VALID_TRANSITIONS  # forced only
    assert (Phase.PLANNING, Phase.TESTING) not in VALID_TRANSITIONS
    assert (Phase.CRITIQUE, Phase.TESTING) not in VALID_TRANSITIONS


def test_only_completion_is_terminal() -> None:
    assert is_terminal(Phase.COMPLETION)
    assert not is_terminal(Phase.ERROR)
    assert not is_terminal(Phase.TESTING)
