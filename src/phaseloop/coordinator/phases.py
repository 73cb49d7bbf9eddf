"""Phase transition table for the orchestrator loop.

``next_phase`` is pure: it maps the current phase and the outcome of the
work done in it to the following phase, and rejects anything outside the
table below.
"""

from __future__ import annotations

from enum import StrEnum

from phaseloop.protocol.models import Phase


class PhaseOutcome(StrEnum):
    """What a phase handler (or the engine) reports after running a phase."""

    ADVANCED = "advanced"
    TESTS_FAILED = "tests_failed"
    TESTS_PASSED = "tests_passed"
    HARD_FAILURE = "hard_failure"
    RECOVERED = "recovered"
    FORCED_COMPLETION = "forced_completion"


class InvalidTransitionError(Exception):
    """Raised when an outcome has no edge out of the current phase."""

    def __init__(self, phase: Phase, outcome: PhaseOutcome) -> None:
        super().__init__(f"Invalid transition: {phase} on {outcome}")
        self.phase = phase
        self.outcome = outcome


_WORK_PHASES: tuple[Phase, ...] = (
    Phase.PLANNING,
    Phase.IMPLEMENTATION,
    Phase.TESTING,
    Phase.CRITIQUE,
    Phase.COMPLETION,
)

_EDGES: dict[tuple[Phase, PhaseOutcome], Phase] = {
    (Phase.PLANNING, PhaseOutcome.ADVANCED): Phase.IMPLEMENTATION,
    (Phase.IMPLEMENTATION, PhaseOutcome.ADVANCED): Phase.TESTING,
    (Phase.TESTING, PhaseOutcome.TESTS_FAILED): Phase.CRITIQUE,
    (Phase.TESTING, PhaseOutcome.TESTS_PASSED): Phase.COMPLETION,
    (Phase.CRITIQUE, PhaseOutcome.ADVANCED): Phase.IMPLEMENTATION,
    (Phase.COMPLETION, PhaseOutcome.ADVANCED): Phase.COMPLETION,
}
for _phase in _WORK_PHASES:
    _EDGES[(_phase, PhaseOutcome.HARD_FAILURE)] = Phase.ERROR
    _EDGES[(_phase, PhaseOutcome.FORCED_COMPLETION)] = Phase.COMPLETION

# Valid transitions: (from_phase, to_phase)
VALID_TRANSITIONS: frozenset[tuple[Phase, Phase]] = frozenset(
    {(src, dst) for (src, _), dst in _EDGES.items()}
    | {(Phase.ERROR, p) for p in _WORK_PHASES}
)

TERMINAL_PHASES: frozenset[Phase] = frozenset({Phase.COMPLETION})


def next_phase(
    phase: Phase,
    outcome: PhaseOutcome,
    *,
    previous: Phase | None = None,
) -> Phase:
    """Return the phase that follows *phase* given *outcome*.

    ``previous`` is only consulted when leaving ``error`` after a successful
    recovery; an unknown previous phase restarts from planning.
    """
    if phase == Phase.ERROR:
        if outcome == PhaseOutcome.RECOVERED:
            if previous is None or previous == Phase.ERROR:
                return Phase.PLANNING
            return previous
        raise InvalidTransitionError(phase, outcome)
    try:
        return _EDGES[(phase, outcome)]
    except KeyError:
        raise InvalidTransitionError(phase, outcome) from None


def is_terminal(phase: Phase) -> bool:
    return phase in TERMINAL_PHASES
