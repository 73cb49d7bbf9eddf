"""Phase engine: drives one goal through the work phases until completion."""

from __future__ import annotations

import asyncio
import signal
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import asdict, dataclass
from typing import Any

from phaseloop.adapters.runner import AgentRunner, ProcessRunner
from phaseloop.config.schema import PhaseloopConfig
from phaseloop.coordinator.feedback import FeedbackInbox, FeedbackQueue
from phaseloop.coordinator.phases import PhaseOutcome, is_terminal, next_phase
from phaseloop.coordinator.progress import ProgressChannel
from phaseloop.coordinator.prompts import phase_prompt, recovery_prompt, with_feedback
from phaseloop.coordinator.recovery import RecoveryPolicy, RecoveryResult, SleepFn, is_hard_failure
from phaseloop.coordinator.resources import ResourceManager
from phaseloop.coordinator.state_store import CheckpointManager, SessionStore
from phaseloop.coordinator.status import (
    LogStatusSink,
    StatusReporter,
    StatusSink,
    WebhookStatusSink,
    build_status_summary,
)
from phaseloop.errors import ConfigurationError, OrchestratorError, RecoveryExhausted
from phaseloop.logger import flush_logging, get_logger
from phaseloop.protocol.models import (
    AgentTurn,
    ErrorRecord,
    FeedbackAttachment,
    FeedbackItem,
    Phase,
    SessionState,
    utc_now_iso,
)

log = get_logger(__name__)

TEST_FAILURE_MARKERS: tuple[str, ...] = ("fail", "error", "critical")

_TIMEOUT_FACTORS: dict[Phase, float] = {
    Phase.IMPLEMENTATION: 2.0,
    Phase.TESTING: 1.5,
}
_RECOVERY_TIMEOUT_FACTOR = 0.5


def detect_test_failures(turns: Iterable[AgentTurn]) -> bool:
    """Naive substring scan of the agent's result text.

    Any mention of the markers counts, including a success report that
    merely talks about avoiding errors.
    """
    response = " ".join(t.result_text or "" for t in turns).lower()
    return any(marker in response for marker in TEST_FAILURE_MARKERS)


@dataclass(slots=True)
class PhaseResult:
    outcome: PhaseOutcome
    session_handle: str | None = None


class Orchestrator:
    """Runs phases one at a time, persisting the session after every step.

    Owns the SessionState; the runner, resource manager and recovery
    policy only ever see it through values the orchestrator passes in.
    """

    def __init__(
        self,
        config: PhaseloopConfig,
        goal: str,
        *,
        runner: AgentRunner | None = None,
        feedback: FeedbackQueue | None = None,
        inbox: FeedbackInbox | None = None,
        status_sinks: Sequence[StatusSink] | None = None,
        progress: ProgressChannel | None = None,
        max_iterations: int | None = None,
        sleep: SleepFn = asyncio.sleep,
        handle_signals: bool = True,
    ) -> None:
        if not goal or not goal.strip():
            raise ConfigurationError(
                "Goal cannot be empty. Create GOAL.md in the project directory or set GOAL.",
            )
        self.config = config
        self.goal = goal.strip()
        state_dir = config.state_path

        self.progress = progress or ProgressChannel(state_dir / "progress.jsonl")
        self.runner: AgentRunner = runner or ProcessRunner.from_config(config, self.progress)
        self.feedback = feedback or FeedbackQueue()
        self.inbox = inbox or FeedbackInbox(config.inbox_path)
        self.store = SessionStore(state_dir)
        self.checkpoints = CheckpointManager(state_dir, retention=config.checkpoints.retention)
        self.resources = ResourceManager(
            config.resources.max_concurrent_operations,
            cleanup_wait_seconds=config.resources.cleanup_wait_seconds,
            cleanup_poll_seconds=config.resources.cleanup_poll_seconds,
        )
        self.recovery = RecoveryPolicy(
            max_retries=config.retries.max_retries,
            rate_limit_cooldown=config.retries.rate_limit_cooldown_seconds,
            backoff_base=config.retries.backoff_base_seconds,
            sleep=sleep,
        )
        if status_sinks is None:
            status_sinks = [LogStatusSink()]
            if config.status.webhook_url:
                status_sinks.append(WebhookStatusSink(config.status.webhook_url))
        self.status = StatusReporter(
            status_sinks,
            self.status_summary,
            interval_seconds=max(1, config.status.update_interval_minutes) * 60,
        )

        self.session = SessionState(goal=self.goal, max_iterations=config.run.max_iterations)
        self._max_iterations_override = max_iterations
        self._handle_signals = handle_signals
        self._installed_signals: list[signal.Signals] = []
        self._shutting_down = False
        self._shutdown_task: asyncio.Task[None] | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._background: list[asyncio.Task[Any]] = []
        self._pending_acks: set[asyncio.Task[Any]] = set()

        self._handlers: dict[Phase, Callable[[], Awaitable[PhaseResult]]] = {
            Phase.PLANNING: self._run_planning,
            Phase.IMPLEMENTATION: self._run_implementation,
            Phase.TESTING: self._run_testing,
            Phase.CRITIQUE: self._run_critique,
            Phase.COMPLETION: self._run_completion,
        }

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def _logger(self) -> Any:
        return log.bind(phase=str(self.session.phase), iteration=self.session.iteration)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> int:
        """Execute the autonomous loop; returns the process exit status."""
        self.session = self.store.load(goal=self.goal, max_iterations=self.config.run.max_iterations)
        if self._max_iterations_override is not None:
            self.session.max_iterations = self._max_iterations_override
        self._logger().info(
            "Starting autonomous run",
            goal_length=len(self.goal),
            max_iterations=self.session.max_iterations,
            timeout_ms=self.config.run.default_timeout_ms,
        )
        self._install_signal_handlers()
        self._start_background()
        self._loop_task = asyncio.create_task(self._run_loop())
        try:
            await self._loop_task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if not self._shutting_down or (current is not None and current.cancelling()):
                raise
            self._logger().info("Phase loop stopped for shutdown")
        except Exception as exc:
            self._logger().error("Autonomous run failed", error=str(exc), exc_info=True)
            self.store.save(self.session)
            self.checkpoints.write(self.session, "error")
            raise
        finally:
            await self._stop_background()
            self._remove_signal_handlers()
            self._logger().info(
                "Orchestrator run completed",
                final_metrics=asdict(self.session.metrics),
                total_errors=len(self.session.errors),
                uptime_ms=self.session.uptime_ms(),
            )

        if self._shutting_down:
            await self._finish_shutdown()
        return 0

    async def _run_loop(self) -> None:
        s = self.session
        while s.iteration < s.max_iterations and not self._shutting_down:
            self._logger().info(
                f"Starting iteration {s.iteration + 1}/{s.max_iterations}",
                metrics=asdict(s.metrics),
            )
            if s.phase == Phase.ERROR:
                await self._recover_error_state()
                continue

            phase = s.phase
            try:
                result = await self._execute_phase(phase)
            except Exception as exc:
                await self._handle_failure(phase, exc)
                continue

            if result.session_handle:
                s.session_handle = result.session_handle
            s.phase = next_phase(phase, result.outcome)
            s.iteration += 1
            self.store.save(s)
            self.checkpoints.write(s, "success")
            if is_terminal(phase):
                self._logger().info("Autonomous run completed successfully!")
                return

        if not self._shutting_down and s.iteration >= s.max_iterations:
            await self._force_completion()

    async def _force_completion(self) -> None:
        s = self.session
        self._logger().info("Max iterations reached, finalizing...")
        if s.phase == Phase.ERROR:
            await self._recover_error_state()
        s.phase = next_phase(s.phase, PhaseOutcome.FORCED_COMPLETION)
        while not self._shutting_down:
            try:
                await self._execute_phase(Phase.COMPLETION)
            except Exception as exc:
                await self._handle_failure(Phase.COMPLETION, exc)
                continue
            self.store.save(s)
            self.checkpoints.write(s, "success")
            self._logger().info("Autonomous run completed successfully!")
            return

    async def _execute_phase(self, phase: Phase) -> PhaseResult:
        s = self.session
        timeout = self.config.default_timeout_seconds * _TIMEOUT_FACTORS.get(phase, 1.0)
        operation_id = f"{phase}_{int(time.time() * 1000)}"
        s.metrics.total_operations += 1
        self._logger().info(f"Starting {phase} phase", timeout_s=timeout, operation_id=operation_id)
        try:
            result = await self.resources.execute(operation_id, self._handlers[phase], timeout)
        except Exception as exc:
            s.metrics.failed_operations += 1
            self._logger().error(f"Failed {phase} phase: {exc}")
            raise
        s.metrics.successful_operations += 1
        self._logger().info(f"Completed {phase} phase successfully")
        return result

    # ------------------------------------------------------------------
    # Phase handlers
    # ------------------------------------------------------------------

    async def _run_planning(self) -> PhaseResult:
        turns = await self._invoke_agent(phase_prompt(Phase.PLANNING, self.session.goal))
        handle = next((t.session_handle for t in turns if t.session_handle), None)
        self._logger().info("Planning completed", session_handle=handle or self.session.session_handle)
        return PhaseResult(PhaseOutcome.ADVANCED, session_handle=handle)

    async def _run_implementation(self) -> PhaseResult:
        await self._invoke_agent(phase_prompt(Phase.IMPLEMENTATION, self.session.goal))
        self._logger().info("Implementation completed")
        return PhaseResult(PhaseOutcome.ADVANCED)

    async def _run_testing(self) -> PhaseResult:
        turns = await self._invoke_agent(phase_prompt(Phase.TESTING, self.session.goal))
        if detect_test_failures(turns):
            self._logger().warning("Tests failed, entering critique phase")
            return PhaseResult(PhaseOutcome.TESTS_FAILED)
        self._logger().info("All tests passed")
        return PhaseResult(PhaseOutcome.TESTS_PASSED)

    async def _run_critique(self) -> PhaseResult:
        await self._invoke_agent(phase_prompt(Phase.CRITIQUE, self.session.goal))
        self._logger().info("Critique completed, returning to implementation")
        return PhaseResult(PhaseOutcome.ADVANCED)

    async def _run_completion(self) -> PhaseResult:
        await self._invoke_agent(phase_prompt(Phase.COMPLETION, self.session.goal))
        return PhaseResult(PhaseOutcome.ADVANCED)

    async def _invoke_agent(self, prompt: str) -> list[AgentTurn]:
        handle = self.session.session_handle
        args = ["--resume", handle] if handle else []
        # Feedback drained by a preempted attempt stays in the restarted prompt.
        included: list[FeedbackItem] = []

        def build_prompt() -> str:
            fresh = self.feedback.drain_all()
            if fresh:
                self._logger().info("Merging feedback into prompt", items=len(fresh))
                included.extend(fresh)
            return with_feedback(prompt, included)

        return await self.runner.run(args, build_prompt)

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _handle_failure(self, phase: Phase, error: Exception) -> None:
        """Record *error*, checkpoint, and recover or re-raise RecoveryExhausted."""
        s = self.session
        record = ErrorRecord(
            timestamp=utc_now_iso(),
            phase=str(phase),
            message=str(error) or type(error).__name__,
        )
        s.errors.append(record)
        self._logger().error(f"Error in {phase} phase: {error}", error_type=type(error).__name__)

        hard = is_hard_failure(error)
        if hard:
            s.previous_phase = phase
            s.phase = next_phase(phase, PhaseOutcome.HARD_FAILURE)
        self.store.save(s)
        self.checkpoints.write(s, "error")

        try:
            await self._recover(error)
        except RecoveryExhausted:
            self._logger().error("Recovery failed, aborting run")
            raise

        record.recovered = True
        if hard:
            s.phase = next_phase(Phase.ERROR, PhaseOutcome.RECOVERED, previous=s.previous_phase)
            s.previous_phase = None
        self.store.save(s)

    async def _recover_error_state(self) -> None:
        s = self.session
        self._logger().error("System in error state, attempting recovery")
        await self._recover(OrchestratorError("System in error state"))
        s.phase = next_phase(Phase.ERROR, PhaseOutcome.RECOVERED, previous=s.previous_phase)
        s.previous_phase = None
        self.store.save(s)

    async def _recover(self, error: BaseException) -> RecoveryResult:
        timeout = self.config.default_timeout_seconds * _RECOVERY_TIMEOUT_FACTOR

        async def attempt(number: int, total: int) -> None:
            prompt = recovery_prompt(error, number, total, self.session.goal)
            await self.resources.execute(
                f"recovery_{number}_{int(time.time() * 1000)}",
                lambda: self._invoke_agent(prompt),
                timeout,
            )

        result = await self.recovery.recover(error, attempt, on_attempt_failed=self._record_recovery_failure)
        self._logger().info(
            "Recovery complete",
            failure_class=str(result.failure_class),
            attempts=result.attempts,
            cooldowns=result.cooldowns,
        )
        return result

    def _record_recovery_failure(self, number: int, error: BaseException) -> None:
        s = self.session
        s.errors.append(
            ErrorRecord(
                timestamp=utc_now_iso(),
                phase=str(s.previous_phase or s.phase),
                message=f"Recovery attempt {number}/{self.recovery.max_retries} failed: {error}",
                recovery_attempt=number,
            )
        )

    # ------------------------------------------------------------------
    # Feedback and status
    # ------------------------------------------------------------------

    def submit_feedback(
        self,
        author_tag: str,
        content: str,
        attachments: Iterable[FeedbackAttachment | dict[str, str]] = (),
    ) -> FeedbackItem:
        """Queue feedback for the next prompt and preempt the live invocation."""
        item = self.feedback.enqueue(author_tag, content, attachments)
        self._on_feedback(item)
        return item

    def _on_feedback(self, item: FeedbackItem) -> None:
        self._logger().info(
            "Received feedback - interrupting current cycle",
            author=item.author_tag,
            content_preview=item.content[:120],
            attachments=len(item.attachments),
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            task = loop.create_task(self.status.broadcast(self._acknowledgement(item)))
            self._pending_acks.add(task)
            task.add_done_callback(self._pending_acks.discard)
        self.runner.request_interrupt(f"feedback from {item.author_tag}")

    def _acknowledgement(self, item: FeedbackItem) -> str:
        s = self.session
        preview = item.content[:300] + ("..." if len(item.content) > 300 else "")
        lines = [
            f"Feedback received from {item.author_tag}",
            f"> {preview}",
        ]
        if item.attachments:
            lines.append(f"Attachments: {len(item.attachments)}")
        lines.append("Status: interrupting current cycle to process your feedback")
        lines.append(f"Current phase: {s.phase} (iteration {s.iteration}/{s.max_iterations})")
        return "\n".join(lines)

    def status_summary(self) -> str:
        return build_status_summary(self.session, self.feedback.size())

    async def _watch_inbox(self) -> None:
        while True:
            for item in self.inbox.collect():
                self.feedback.put(item)
                self._on_feedback(item)
            await asyncio.sleep(self.config.feedback.poll_seconds)

    def _start_background(self) -> None:
        self._background = [
            asyncio.create_task(self.progress.consume()),
            asyncio.create_task(self.status.run()),
            asyncio.create_task(self._watch_inbox()),
        ]

    async def _stop_background(self) -> None:
        tasks = [*self._background, *self._pending_acks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._background = []
        self.progress.drain_pending()

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def request_shutdown(self, reason: str = "shutdown") -> None:
        """Begin graceful shutdown; repeated requests are ignored."""
        if self._shutting_down:
            return
        self._shutting_down = True
        self._logger().info(
            f"Received {reason}, initiating graceful shutdown",
            active_operations=sorted(self.resources.active_operations),
        )
        self._shutdown_task = asyncio.get_running_loop().create_task(self._drain_for_shutdown())

    async def _drain_for_shutdown(self) -> None:
        await self.resources.cleanup()
        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()

    async def _finish_shutdown(self) -> None:
        if self._shutdown_task is not None:
            await self._shutdown_task
        self.store.save(self.session)
        self.checkpoints.write(self.session, "shutdown")
        self.inbox.requeue(self.feedback.drain_all())
        self._logger().info("Graceful shutdown completed")
        flush_logging()

    def _install_signal_handlers(self) -> None:
        if not self._handle_signals:
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except (NotImplementedError, RuntimeError):
                # Windows / non-main-thread loops have no signal handlers
                return
            self._installed_signals.append(sig)

    def _remove_signal_handlers(self) -> None:
        if not self._installed_signals:
            return
        loop = asyncio.get_running_loop()
        for sig in self._installed_signals:
            loop.remove_signal_handler(sig)
        self._installed_signals = []
