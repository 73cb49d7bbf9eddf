"""Session persistence and checkpoint snapshots."""

from __future__ import annotations

import itertools
import logging
import time
from pathlib import Path

from phaseloop.protocol.io import read_json, write_json_atomic
from phaseloop.protocol.models import Checkpoint, SessionState, utc_now_iso

logger = logging.getLogger(__name__)

SESSION_FILE = "session.json"
CHECKPOINT_PREFIX = "checkpoint_"


class SessionStore:
    """Loads and overwrites ``session.json`` in the state directory."""

    def __init__(self, state_dir: Path) -> None:
        self._path = state_dir / SESSION_FILE

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, goal: str, max_iterations: int) -> SessionState:
        """Resume the stored session, or start a fresh one.

        The goal always comes from the current run; every other missing or
        unreadable field falls back to its fresh-session value.
        """
        raw = read_json(self._path, default=None)
        if isinstance(raw, dict):
            state = SessionState.from_dict(raw, goal=goal, max_iterations=max_iterations)
            logger.info(
                "Resuming session %s, phase: %s, iteration: %d",
                state.session_handle,
                state.phase,
                state.iteration,
            )
            return state
        if raw is not None or self._path.exists():
            logger.warning("Could not load session state from %s, starting fresh", self._path)
        else:
            logger.info("Starting fresh session")
        return SessionState(goal=goal, max_iterations=max_iterations)

    def save(self, state: SessionState) -> None:
        try:
            write_json_atomic(self._path, state.to_dict())
        except OSError as exc:
            logger.error("Failed to save session state: %s", exc)


class CheckpointManager:
    """Writes one immutable snapshot per phase boundary and keeps the newest N."""

    def __init__(self, state_dir: Path, retention: int = 10) -> None:
        self._dir = state_dir
        self._retention = retention
        self._seq = itertools.count()

    @property
    def directory(self) -> Path:
        return self._dir

    def write(self, state: SessionState, status: str) -> Path | None:
        checkpoint = Checkpoint(
            session=state.to_dict(),
            timestamp=utc_now_iso(),
            status=status,
            uptime_ms=state.uptime_ms(),
        )
        path = self._dir / (
            f"{CHECKPOINT_PREFIX}{int(time.time() * 1000):013d}_{next(self._seq):06d}_{status}.json"
        )
        try:
            write_json_atomic(path, checkpoint.to_dict())
        except OSError as exc:
            logger.error("Failed to create checkpoint: %s", exc)
            return None
        self.prune()
        logger.debug("Created checkpoint: %s", status)
        return path

    def checkpoints(self) -> list[Path]:
        """Checkpoint files, newest first (mtime, then name)."""
        if not self._dir.exists():
            return []
        files: list[tuple[int, str, Path]] = []
        for p in self._dir.iterdir():
            if not (p.name.startswith(CHECKPOINT_PREFIX) and p.suffix == ".json"):
                continue
            try:
                files.append((p.stat().st_mtime_ns, p.name, p))
            except OSError:
                continue
        files.sort(reverse=True)
        return [p for _, _, p in files]

    def latest(self) -> dict | None:
        files = self.checkpoints()
        if not files:
            return None
        return read_json(files[0], default=None)

    def prune(self) -> list[Path]:
        removed: list[Path] = []
        for p in self.checkpoints()[self._retention:]:
            try:
                p.unlink()
            except OSError as exc:
                logger.warning("Failed to delete checkpoint %s: %s", p.name, exc)
                continue
            removed.append(p)
            logger.debug("Deleted old checkpoint: %s", p.name)
        return removed
