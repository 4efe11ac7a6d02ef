"""Approval gate: per-session, per-stage suspension points awaiting a human.

When a gated stage finishes, the pipeline calls :meth:`ApprovalGate.request_approval`
and awaits the returned future.  The web server (REST or WebSocket) settles
it later with :meth:`~ApprovalGate.resolve` or :meth:`~ApprovalGate.reject`.

Usage
-----
::

    # pipeline side
    approved = await gate.request_approval(session_id, "explanation", result)

    # transport side
    gate.resolve(session_id, "explanation", edited_text="shorter, please")
    gate.reject(session_id, "explanation", reason="off topic")

Every pending entry is keyed by ``(session_id, stage_name)`` and removed
from the map, under the lock, *before* its future is settled.  A second
resolve/reject for the same key therefore finds nothing and is a no-op.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from datetime import datetime

from lodestar.core.config import Settings
from lodestar.core.events import EventBus, EventCategory
from lodestar.core.logging import get_logger
from lodestar.core.state import StageResult, utcnow

logger = get_logger("core.approval_gate")

APPROVAL_MODES = ("all", "none", "subset")


class ApprovalRejected(Exception):
    """A human rejected a stage result.  Unwinds the whole run."""

    def __init__(self, session_id: str, stage_name: str, reason: str) -> None:
        super().__init__(f"{stage_name} rejected: {reason}")
        self.session_id = session_id
        self.stage_name = stage_name
        self.reason = reason


class ApprovalConflictError(RuntimeError):
    """A second approval was requested for a key that is still pending."""


@dataclass(frozen=True)
class ApprovalPolicy:
    """Which stages wait for a human: ``all``, ``none`` or an explicit subset."""

    mode: str = "all"
    stages: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if self.mode not in APPROVAL_MODES:
            raise ValueError(f"Unknown approval mode {self.mode!r}; expected one of {APPROVAL_MODES}")

    def requires(self, stage_name: str) -> bool:
        if self.mode == "all":
            return True
        if self.mode == "none":
            return False
        return stage_name in self.stages

    @classmethod
    def from_settings(cls, settings: Settings) -> "ApprovalPolicy":
        return cls(mode=settings.approval_mode.strip().lower(),
                   stages=frozenset(settings.approval_stage_names))


@dataclass
class PendingApproval:
    future: asyncio.Future
    loop: asyncio.AbstractEventLoop
    original: StageResult
    created_at: datetime = field(default_factory=utcnow)


def merge_edit(result: StageResult, edited_text: str | None) -> StageResult:
    """Return *result* with its human-facing text replaced by *edited_text*.

    The original is never mutated; applying the same edit twice gives an
    equal result.
    """
    if edited_text is None:
        return result
    return result.model_copy(update={"truncated_output": edited_text})


class ApprovalGate:
    """Holds the one-shot continuations of every stage awaiting review."""

    def __init__(self, events: EventBus | None = None, policy: ApprovalPolicy | None = None) -> None:
        self._lock = threading.Lock()
        self._pending: dict[tuple[str, str], PendingApproval] = {}
        self._policies: dict[str, ApprovalPolicy] = {}
        self._default_policy = policy or ApprovalPolicy()
        self._events = events

    # ── Policy ────────────────────────────────────────────────────────

    def set_policy(self, session_id: str, policy: ApprovalPolicy) -> None:
        with self._lock:
            self._policies[session_id] = policy

    def forget_session(self, session_id: str) -> None:
        with self._lock:
            self._policies.pop(session_id, None)

    def requires_approval(self, session_id: str, stage_name: str) -> bool:
        with self._lock:
            policy = self._policies.get(session_id, self._default_policy)
        return policy.requires(stage_name)

    # ── Suspension ────────────────────────────────────────────────────

    async def request_approval(self, session_id: str, stage_name: str, result: StageResult) -> StageResult:
        """Wait for a human decision on *result*, or return it straight away.

        Raises:
            ApprovalRejected: the human rejected the stage.
            ApprovalConflictError: *stage_name* is already pending for *session_id*.
        """
        if not self.requires_approval(session_id, stage_name):
            return result

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        key = (session_id, stage_name)
        with self._lock:
            if key in self._pending:
                raise ApprovalConflictError(f"Approval for {stage_name} in session {session_id} is already pending")
            self._pending[key] = PendingApproval(future=future, loop=loop, original=result)

        logger.info("Approval pending | session=%s | stage=%s", session_id, stage_name)
        self._emit(EventCategory.PROCESSING_STEP, session_id, step=stage_name, status="waiting")

        try:
            return await future
        finally:
            # Only reached with the key still present when the waiter itself
            # was cancelled; settlement always pops first.
            with self._lock:
                entry = self._pending.get(key)
                if entry is not None and entry.future is future:
                    del self._pending[key]

    # ── Resolution ────────────────────────────────────────────────────

    def resolve(self, session_id: str, stage_name: str, edited_text: str | None = None) -> bool:
        """Approve a pending stage, optionally replacing its human-facing text.

        Returns:
            ``True`` if something was pending and got resolved, ``False``
            otherwise (idempotent; safe to call twice).
        """
        entry = self._pop(session_id, stage_name)
        if entry is None:
            logger.warning("resolve() for %s/%s but nothing is pending, ignoring", session_id, stage_name)
            return False

        was_edited = edited_text is not None
        self._settle(entry, result=merge_edit(entry.original, edited_text))
        logger.info("Approval granted | session=%s | stage=%s | edited=%s", session_id, stage_name, was_edited)
        self._emit(EventCategory.STEP_APPROVED, session_id, step=stage_name, wasEdited=was_edited)
        return True

    def reject(self, session_id: str, stage_name: str, reason: str = "Rejected by user") -> bool:
        """Reject a pending stage; the awaiting pipeline receives :class:`ApprovalRejected`."""
        entry = self._pop(session_id, stage_name)
        if entry is None:
            logger.warning("reject() for %s/%s but nothing is pending, ignoring", session_id, stage_name)
            return False

        self._settle(entry, error=ApprovalRejected(session_id, stage_name, reason))
        logger.info("Approval rejected | session=%s | stage=%s | reason=%s", session_id, stage_name, reason)
        return True

    def reject_session(self, session_id: str, reason: str) -> list[str]:
        """Reject every approval still pending for *session_id*."""
        with self._lock:
            keys = [k for k in self._pending if k[0] == session_id]
            entries = [(k[1], self._pending.pop(k)) for k in keys]
        for stage_name, entry in entries:
            self._settle(entry, error=ApprovalRejected(session_id, stage_name, reason))
        if entries:
            logger.info("Unwound %d pending approval(s) for session %s", len(entries), session_id)
        return [stage_name for stage_name, _ in entries]

    # ── Read side ─────────────────────────────────────────────────────

    def pending_stages(self, session_id: str) -> list[str]:
        with self._lock:
            return [stage for (sid, stage) in self._pending if sid == session_id]

    def pending_result(self, session_id: str, stage_name: str) -> StageResult | None:
        with self._lock:
            entry = self._pending.get((session_id, stage_name))
            return entry.original if entry is not None else None

    def is_pending(self, session_id: str, stage_name: str) -> bool:
        with self._lock:
            return (session_id, stage_name) in self._pending

    # ── Internals ─────────────────────────────────────────────────────

    def _pop(self, session_id: str, stage_name: str) -> PendingApproval | None:
        with self._lock:
            return self._pending.pop((session_id, stage_name), None)

    @staticmethod
    def _settle(entry: PendingApproval, result: StageResult | None = None,
                error: BaseException | None = None) -> None:
        def _apply() -> None:
            if entry.future.done():
                return
            if error is not None:
                entry.future.set_exception(error)
            else:
                entry.future.set_result(result)

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is entry.loop:
            _apply()
            return
        try:
            entry.loop.call_soon_threadsafe(_apply)
        except RuntimeError:
            logger.warning("Event loop of a pending approval is closed; dropping settlement")

    def _emit(self, category: EventCategory, session_id: str, **data) -> None:
        if self._events is not None:
            self._events.emit(category, session_id, **data)
