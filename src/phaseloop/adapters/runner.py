"""Subprocess protocol for the external agent.

One invocation: spawn the agent with the fixed flag set plus per-call
arguments, write the prompt to stdin, stream stdout/stderr while it runs,
and parse stdout as newline-delimited JSON records once it has exited.

A live invocation can be preempted with ``request_interrupt``: the
process is terminated and, when it exits, ``run`` starts it again with
the same arguments instead of reporting a failure. A prompt given as a
callable is rebuilt for every attempt.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import os
import shlex
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from phaseloop.coordinator.progress import ProgressChannel, ProgressEvent
from phaseloop.coordinator.recovery import mentions_rate_limit
from phaseloop.errors import (
    AgentOutputMalformed,
    AgentProcessFailed,
    AgentProducedNoOutput,
    ConfigurationError,
    RateLimited,
)
from phaseloop.protocol.models import AgentTurn

if TYPE_CHECKING:
    from phaseloop.config.schema import PhaseloopConfig

logger = logging.getLogger(__name__)

# Env vars that interfere with nested agent processes (running from inside
# another Claude session sets CLAUDECODE=1 and the child refuses to start).
_STRIP_ENV_VARS = {
    "CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT", "CLAUDE_REPL",
    "CLAUDE_CODE_PACKAGE_DIR",
}

_READ_SIZE = 65_536
_PROGRESS_INTERVAL_SECONDS = 2.0
_PROGRESS_CHUNK_BYTES = 500
_ACTIVITY_KINDS = frozenset({"assistant", "tool_use"})

PromptSource = str | Callable[[], str] | None


@dataclass(slots=True)
class Completed:
    turns: list[AgentTurn]


@dataclass(slots=True)
class PreemptedRestart:
    exit_code: int | None


RunOutcome = Completed | PreemptedRestart


class AgentRunner(Protocol):
    async def run(self, args: Sequence[str], prompt: PromptSource = None) -> list[AgentTurn]: ...

    def request_interrupt(self, reason: str = "") -> bool: ...


def build_agent_env(
    cfg: PhaseloopConfig,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    source = os.environ if base is None else base
    env = {k: v for k, v in source.items() if k not in _STRIP_ENV_VARS}
    if cfg.agent.api_key_env:
        env["ANTHROPIC_AUTH_TOKEN"] = source.get(cfg.agent.api_key_env, "")
    if cfg.agent.base_url:
        env["ANTHROPIC_BASE_URL"] = cfg.agent.base_url
    env["API_TIMEOUT_MS"] = str(cfg.agent.api_timeout_ms)
    env["CLAUDE_PROJECT_DIR"] = str(cfg.project_path.resolve())
    env.update({str(k): str(v) for k, v in cfg.agent.env.items()})
    return env


class ProcessRunner:
    """Runs the agent CLI as a subprocess speaking stream-json on stdout."""

    def __init__(
        self,
        binary: str,
        flags: Sequence[str] = (),
        *,
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        mcp_config: Path | None = None,
        progress: ProgressChannel | None = None,
        terminate_grace_seconds: float = 5.0,
    ) -> None:
        self._binary = binary
        self._flags = list(flags)
        self._cwd = str(cwd) if cwd is not None else None
        self._env = dict(env) if env is not None else None
        self._mcp_config = mcp_config
        self._progress = progress
        self._terminate_grace = terminate_grace_seconds
        self._process: asyncio.subprocess.Process | None = None
        self._interrupt_requested = False
        self.restart_count = 0

    @classmethod
    def from_config(
        cls,
        cfg: PhaseloopConfig,
        progress: ProgressChannel | None = None,
    ) -> ProcessRunner:
        mcp = cfg.project_path / cfg.agent.mcp_config if cfg.agent.mcp_config else None
        return cls(
            cfg.agent.binary,
            cfg.agent.flags,
            cwd=cfg.project_path,
            env=build_agent_env(cfg),
            mcp_config=mcp,
            progress=progress,
        )

    @property
    def interrupt_requested(self) -> bool:
        return self._interrupt_requested

    @property
    def live_process(self) -> asyncio.subprocess.Process | None:
        return self._process

    def build_argv(self, args: Sequence[str]) -> list[str]:
        argv = [self._binary, *self._flags]
        if self._mcp_config is not None and self._mcp_config.exists():
            argv.extend(["--mcp-config", str(self._mcp_config)])
        argv.extend(args)
        return argv

    async def run(self, args: Sequence[str], prompt: PromptSource = None) -> list[AgentTurn]:
        """Invoke the agent until one attempt finishes without being preempted."""
        args = list(args)
        while True:
            outcome = await self._invoke(args, prompt)
            if isinstance(outcome, Completed):
                return outcome.turns
            self.restart_count += 1
            logger.info("Process interrupted for feedback - restarting immediately with feedback")
            self._publish("restart", f"restart #{self.restart_count}")

    def request_interrupt(self, reason: str = "") -> bool:
        """Terminate the live invocation so ``run`` restarts it.

        Returns False when nothing is running; the flag is left clear so a
        later invocation is not restarted for stale feedback.
        """
        process = self._process
        if process is None or process.returncode is not None:
            return False
        self._interrupt_requested = True
        logger.info("Killing current agent process to handle feedback%s", f" ({reason})" if reason else "")
        try:
            process.terminate()
        except ProcessLookupError:
            return True
        asyncio.get_running_loop().call_later(self._terminate_grace, self._force_kill, process)
        return True

    async def _invoke(self, args: list[str], prompt: PromptSource) -> RunOutcome:
        text = prompt() if callable(prompt) else prompt
        argv = self.build_argv(args)
        logger.info("Running agent with args: %s", shlex.join(argv))
        if text:
            logger.info("Sending prompt to agent: %s...", text[:200])

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=self._env,
            )
        except FileNotFoundError as exc:
            raise ConfigurationError(f"Agent command not found: {argv[0]}") from exc
        self._process = process
        self._publish("spawn", f"pid {process.pid}")

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        try:
            await self._write_prompt(process, text)
            await asyncio.gather(
                self._pump_stdout(process.stdout, stdout_parts),
                self._pump_stderr(process.stderr, stderr_parts),
            )
            returncode = await process.wait()
        except asyncio.CancelledError:
            self._interrupt_requested = False
            await self._kill(process)
            raise
        finally:
            self._process = None

        stdout = "".join(stdout_parts)
        stderr = "".join(stderr_parts)

        if self._interrupt_requested:
            self._interrupt_requested = False
            return PreemptedRestart(returncode)

        logger.info("Agent process exited with code %s, received %d bytes", returncode, len(stdout))
        self._publish("exit", f"code {returncode}", exit_code=returncode)

        if returncode != 0:
            combined = stderr or stdout or "No error output available"
            logger.error("Agent error output: %s", combined[:1000])
            if mentions_rate_limit(f"{stderr}\n{stdout}"):
                logger.warning("Rate limit reported by agent")
                raise RateLimited(returncode, combined)
            raise AgentProcessFailed(returncode, combined)

        return Completed(parse_output(stdout))

    async def _write_prompt(self, process: asyncio.subprocess.Process, text: str | None) -> None:
        if process.stdin is None:
            return
        try:
            if text:
                process.stdin.write(text.encode("utf-8"))
                await process.stdin.drain()
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.debug("Agent stdin closed early: %s", exc)

    async def _pump_stdout(self, stream: asyncio.StreamReader | None, parts: list[str]) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        received = 0
        last_report = time.monotonic()
        while True:
            data = await stream.read(_READ_SIZE)
            if not data:
                parts.append(decoder.decode(b"", final=True))
                break
            chunk = decoder.decode(data)
            parts.append(chunk)
            received += len(data)

            now = time.monotonic()
            if now - last_report > _PROGRESS_INTERVAL_SECONDS or len(data) > _PROGRESS_CHUNK_BYTES:
                self._publish("progress", f"streaming response ({received} bytes received)", bytes=received)
                activity = _last_activity(chunk)
                if activity is not None:
                    self._publish("activity", activity)
                last_report = now

    async def _pump_stderr(self, stream: asyncio.StreamReader | None, parts: list[str]) -> None:
        if stream is None:
            return
        while True:
            data = await stream.read(_READ_SIZE)
            if not data:
                break
            chunk = data.decode("utf-8", errors="replace")
            parts.append(chunk)
            self._publish("stderr", chunk[:500])

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        logger.warning("Killing agent process %s", process.pid)
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()

    def _force_kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass

    def _publish(self, kind: str, message: str, **data: object) -> None:
        if self._progress is not None:
            self._progress.publish(ProgressEvent(kind=kind, message=message, data=dict(data)))


def parse_output(stdout: str) -> list[AgentTurn]:
    """Parse newline-delimited JSON records into agent turns."""
    lines = [line for line in stdout.strip().split("\n") if line.strip()]
    if not lines:
        raise AgentProducedNoOutput()

    turns: list[AgentTurn] = []
    for line in lines:
        try:
            record = json.loads(line)
        except json.JSONDecodeError as exc:
            logger.error("Failed to parse agent output: %s", exc)
            logger.debug("Raw output sample: %s", stdout[:1000])
            raise AgentOutputMalformed(str(exc), line) from exc
        if not isinstance(record, dict):
            raise AgentOutputMalformed("record is not a JSON object", line)
        turns.append(AgentTurn.from_record(record))

    assistant = [t for t in turns if t.kind == "assistant"]
    tool_uses = [t for t in turns if t.kind == "tool_use" or isinstance(t.raw_content, list)]
    logger.info(
        "Agent completed: %d turns, %d messages, %d tool uses",
        len(turns),
        len(assistant),
        len(tool_uses),
    )
    return turns


def _last_activity(chunk: str) -> str | None:
    lines = chunk.strip().split("\n")
    if not lines:
        return None
    try:
        parsed = json.loads(lines[-1])
    except json.JSONDecodeError:
        return None
    if isinstance(parsed, dict) and parsed.get("type") in _ACTIVITY_KINDS:
        return f"{parsed['type']} - {json.dumps(parsed)[:300]}"
    return None
