"""Session registry: the active session's state and its ordered stage history.

Only one session is active at a time.  ``init_session`` discards whatever
the previous session left behind, so nothing here outlives the next run
(or the process).  Pending approvals and repository configs are keyed by
session id elsewhere and stay isolated per session regardless.
"""

from __future__ import annotations

import threading
import uuid

from lodestar.core.logging import get_logger
from lodestar.core.state import (
    SessionPhase,
    SessionState,
    StageResult,
    StepRecord,
    utcnow,
)

logger = get_logger("core.session_registry")


class SessionNotFoundError(LookupError):
    """Raised when a session id does not name the active session."""


class SessionFrozenError(RuntimeError):
    """Raised when a stage result is recorded on a finished session."""


class SessionRegistry:
    """Thread-safe holder of the single active :class:`SessionState`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state: SessionState | None = None
        self._history: list[StageResult] = []
        self._feedback_history: list[StageResult] = []

    # ── Lifecycle ─────────────────────────────────────────────────────

    def init_session(self, session_id: str | None = None) -> SessionState:
        """Start a fresh session, discarding any previous in-memory state."""
        sid = session_id or uuid.uuid4().hex
        with self._lock:
            previous = self._state
            self._state = SessionState(session_id=sid, phase=SessionPhase.PLANNING)
            self._history = []
            self._feedback_history = []
        if previous is not None:
            logger.info("Session %s replaced by %s", previous.session_id, sid)
        else:
            logger.info("Session %s initialised", sid)
        return self._state

    @property
    def active(self) -> SessionState | None:
        with self._lock:
            return self._state

    def get(self, session_id: str) -> SessionState:
        with self._lock:
            return self._require(session_id)

    def is_running(self, session_id: str | None = None) -> bool:
        """True when *session_id* (or any session) is active and not frozen."""
        with self._lock:
            state = self._state
            if state is None or state.frozen:
                return False
            return session_id is None or state.session_id == session_id

    def is_frozen(self, session_id: str) -> bool:
        with self._lock:
            return self._require(session_id).frozen

    # ── Mutation ──────────────────────────────────────────────────────

    def set_phase(self, session_id: str, phase: SessionPhase, stage: str | None = None) -> None:
        with self._lock:
            state = self._require(session_id)
            if state.frozen:
                return
            state.phase = phase
            if stage is not None:
                state.current_stage = stage

    def set_plan(self, session_id: str, plan: str | None) -> None:
        with self._lock:
            self._require(session_id).plan = plan

    def record(self, session_id: str, result: StageResult) -> None:
        """Append a stage result to the history of a running session."""
        with self._lock:
            state = self._require(session_id)
            if state.frozen:
                raise SessionFrozenError(
                    f"Session {session_id} is finished; cannot record {result.stage_name}"
                )
            self._history.append(result)
            state.steps.append(StepRecord.from_result(result))

    def record_summary(self, session_id: str, result: StageResult) -> None:
        """Append the final summary entry (allowed after the session froze)."""
        with self._lock:
            state = self._require(session_id)
            self._history.append(result)
            state.steps.append(StepRecord.from_result(result))

    def record_feedback(self, session_id: str, result: StageResult) -> None:
        with self._lock:
            self._require(session_id)
            self._feedback_history.append(result)

    # Exactly one of the three terminal transitions succeeds per session.

    def mark_completed(self, session_id: str) -> bool:
        with self._lock:
            state = self._require(session_id)
            if state.frozen:
                return False
            state.completed = True
            state.phase = SessionPhase.COMPLETED
            state.ended_at = utcnow()
        logger.info("Session %s completed", session_id)
        return True

    def mark_terminated(self, session_id: str, reason: str, stage: str | None = None) -> bool:
        with self._lock:
            state = self._require(session_id)
            if state.frozen:
                return False
            state.terminated = True
            state.termination_reason = reason
            state.terminated_at_stage = stage
            state.phase = SessionPhase.TERMINATED
            state.ended_at = utcnow()
        logger.info("Session %s terminated at %s: %s", session_id, stage or "-", reason)
        return True

    def mark_errored(self, session_id: str, error: str) -> bool:
        with self._lock:
            state = self._require(session_id)
            if state.frozen:
                return False
            state.error = error
            state.phase = SessionPhase.ERRORED
            state.ended_at = utcnow()
        logger.error("Session %s errored: %s", session_id, error)
        return True

    # ── Read side ─────────────────────────────────────────────────────

    def history(self, session_id: str) -> list[StageResult]:
        with self._lock:
            self._require(session_id)
            return list(self._history)

    def feedback_history(self, session_id: str) -> list[StageResult]:
        with self._lock:
            self._require(session_id)
            return list(self._feedback_history)

    def snapshot(self, session_id: str) -> SessionState:
        """Return a deep copy of the session state, safe to serialise."""
        with self._lock:
            return self._require(session_id).model_copy(deep=True)

    def _require(self, session_id: str) -> SessionState:
        if self._state is None or self._state.session_id != session_id:
            raise SessionNotFoundError(f"No active session {session_id!r}")
        return self._state
