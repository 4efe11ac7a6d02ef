"""Tests for the SessionRegistry lifecycle and terminal transitions."""

from __future__ import annotations

import pytest

from lodestar.core.session_registry import SessionFrozenError, SessionNotFoundError, SessionRegistry
from lodestar.core.state import SessionPhase, StageResult


@pytest.fixture
def reg():
    return SessionRegistry()


def _ok(stage: str = "contentAnalysis") -> StageResult:
    return StageResult(stage_name=stage, processed=True, output="x", truncated_output="x", duration_ms=5)


class TestInit:
    def test_generates_unique_ids(self, reg):
        a = reg.init_session().session_id
        b = reg.init_session().session_id
        assert a != b

    def test_explicit_id(self, reg):
        assert reg.init_session("abc").session_id == "abc"

    def test_new_session_discards_previous(self, reg):
        reg.init_session("old")
        reg.record("old", _ok())
        reg.init_session("new")
        with pytest.raises(SessionNotFoundError):
            reg.history("old")
        assert reg.history("new") == []

    def test_starts_in_planning(self, reg):
        state = reg.init_session("s")
        assert state.phase == SessionPhase.PLANNING
        assert reg.is_running("s") is True


class TestRecord:
    def test_record_appends_history_and_steps(self, reg):
        reg.init_session("s")
        reg.record("s", _ok("contentAnalysis"))
        reg.record("s", _ok("explanation"))
        assert [r.stage_name for r in reg.history("s")] == ["contentAnalysis", "explanation"]
        steps = reg.snapshot("s").steps
        assert [st.stage_name for st in steps] == ["contentAnalysis", "explanation"]
        assert steps[0].success is True
        assert steps[0].duration_ms == 5

    def test_record_failed_stage(self, reg):
        reg.init_session("s")
        reg.record("s", StageResult(stage_name="explanation", processed=False, error="boom"))
        step = reg.snapshot("s").steps[0]
        assert step.success is False
        assert step.has_error is True

    def test_record_on_frozen_session_raises(self, reg):
        reg.init_session("s")
        reg.mark_completed("s")
        with pytest.raises(SessionFrozenError):
            reg.record("s", _ok())

    def test_summary_allowed_after_freeze(self, reg):
        reg.init_session("s")
        reg.mark_terminated("s", "rejected", "explanation")
        reg.record_summary("s", _ok("summary"))
        assert reg.history("s")[-1].stage_name == "summary"

    def test_unknown_session(self, reg):
        reg.init_session("s")
        with pytest.raises(SessionNotFoundError):
            reg.record("other", _ok())


class TestTerminalTransitions:
    def test_completed_then_terminated_is_refused(self, reg):
        reg.init_session("s")
        assert reg.mark_completed("s") is True
        assert reg.mark_terminated("s", "late") is False
        state = reg.snapshot("s")
        assert state.completed is True
        assert state.terminated is False

    def test_terminated_then_completed_is_refused(self, reg):
        reg.init_session("s")
        assert reg.mark_terminated("s", "user said no", "explanation") is True
        assert reg.mark_completed("s") is False
        state = reg.snapshot("s")
        assert state.terminated is True
        assert state.completed is False
        assert state.termination_reason == "user said no"
        assert state.terminated_at_stage == "explanation"
        assert state.phase == SessionPhase.TERMINATED

    def test_errored_freezes(self, reg):
        reg.init_session("s")
        assert reg.mark_errored("s", "kaboom") is True
        assert reg.is_frozen("s") is True
        assert reg.is_running("s") is False
        assert reg.mark_completed("s") is False

    def test_phase_ignored_after_freeze(self, reg):
        reg.init_session("s")
        reg.mark_completed("s")
        reg.set_phase("s", SessionPhase.RUNNING, "explanation")
        assert reg.snapshot("s").phase == SessionPhase.COMPLETED

    def test_snapshot_is_a_copy(self, reg):
        reg.init_session("s")
        snap = reg.snapshot("s")
        snap.completed = True
        assert reg.snapshot("s").completed is False


class TestFeedbackHistory:
    def test_feedback_kept_separately(self, reg):
        reg.init_session("s")
        reg.mark_completed("s")
        reg.record_feedback("s", _ok("userFeedback"))
        assert reg.history("s") == []
        assert [r.stage_name for r in reg.feedback_history("s")] == ["userFeedback"]
