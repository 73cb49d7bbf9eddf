"""Instruction text sent to the agent for each phase."""

from __future__ import annotations

from collections.abc import Sequence

from phaseloop.protocol.models import FeedbackItem, Phase

_PHASE_PROMPTS: dict[Phase, str] = {
    Phase.PLANNING: (
        "Read CLAUDE.md to understand the system context and goal.\n"
        "Then create a detailed plan to achieve: {goal}\n\n"
        "Break the goal down into specific, actionable tasks. Cover which "
        "sub-agents and tools are needed, what testing and validation is "
        "required, and the main risks with their mitigations.\n\n"
        "Output a structured plan with clear phases and dependencies."
    ),
    Phase.IMPLEMENTATION: (
        "Based on the previous planning, implement the next set of tasks for: {goal}\n\n"
        "Write testable code, keep documentation current, validate inputs and "
        "handle errors. Work systematically through the planned tasks."
    ),
    Phase.TESTING: (
        "Run comprehensive tests for the implemented work on: {goal}\n\n"
        "Execute unit, integration and security checks. Report any failures "
        "with specific details and severity levels."
    ),
    Phase.CRITIQUE: (
        "Critique the current implementation and test failures for: {goal}\n\n"
        "Analyze root causes, code quality, security and architecture. Provide "
        "a prioritized list of issues with the specific fixes needed, rating "
        "each by severity (Critical/High/Medium/Low)."
    ),
    Phase.COMPLETION: (
        "Finalize the work on: {goal}\n\n"
        "Refactor where needed, update documentation and the changelog, "
        "prepare deployment and run a final validation. Ensure everything is "
        "production-ready."
    ),
}

FEEDBACK_HEADER = (
    "Additionally, incorporate the following HIGH-PRIORITY external feedback "
    "before proceeding. Treat this feedback as top priority requirements and "
    "constraints. If it contradicts previous plans, adapt accordingly:"
)


def phase_prompt(phase: Phase, goal: str) -> str:
    try:
        template = _PHASE_PROMPTS[phase]
    except KeyError:
        raise ValueError(f"No prompt for phase {phase!r}") from None
    return template.format(goal=goal)


def recovery_prompt(error: BaseException | str, attempt: int, max_attempts: int, goal: str) -> str:
    return (
        f"The system encountered an error: {error}\n\n"
        f"Recovery attempt {attempt}/{max_attempts}:\n"
        "1. Analyze what went wrong\n"
        "2. Implement fixes\n"
        "3. Resume the workflow\n\n"
        f"Focus on getting back on track with: {goal}"
    )


def format_feedback(items: Sequence[FeedbackItem]) -> str:
    lines: list[str] = []
    for item in items:
        lines.append(f"- From {item.author_tag} at {item.timestamp}: {item.content}")
        if item.attachments:
            lines.append("  Attachments:")
            lines.extend(f"    - {a.name}: {a.url}" for a in item.attachments)
    return "\n".join(lines)


def with_feedback(prompt: str, items: Sequence[FeedbackItem]) -> str:
    if not items:
        return prompt
    return f"{prompt}\n\n{FEEDBACK_HEADER}\n{format_feedback(items)}"
