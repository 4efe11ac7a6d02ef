"""Pipeline data model: stage results, session state and the graph state."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Stage(StrEnum):
    """Stage names as they appear on the event channel and in history."""
    REPOSITORY_ANALYSIS = "repositoryAnalysis"
    CONTENT_ANALYSIS = "contentAnalysis"
    KNOWLEDGE_RETRIEVAL = "knowledgeRetrieval"
    ANALOGY_GENERATION = "analogyGeneration"
    ANALOGY_VALIDATION = "analogyValidation"
    ANALOGY_REFINEMENT = "analogyRefinement"
    EXPLANATION = "explanation"
    USER_FEEDBACK = "userFeedback"
    LEARNING = "learning"
    # Supervisor calls
    PLANNING = "planning"
    HEALTH_CHECK = "healthCheck"
    SUMMARY = "summary"
    TERMINATION = "termination"


# Fixed execution order of the main pipeline.  The repository stage, when
# enabled, runs first so its findings can feed analogy generation.
PIPELINE_ORDER: tuple[Stage, ...] = (
    Stage.REPOSITORY_ANALYSIS,
    Stage.CONTENT_ANALYSIS,
    Stage.KNOWLEDGE_RETRIEVAL,
    Stage.ANALOGY_GENERATION,
    Stage.ANALOGY_VALIDATION,
    Stage.ANALOGY_REFINEMENT,
    Stage.EXPLANATION,
)


class SessionPhase(StrEnum):
    IDLE = "idle"
    PLANNING = "planning"
    RUNNING = "running"
    APPROVAL_PENDING = "approval_pending"
    COMPLETED = "completed"
    TERMINATED = "terminated"
    ERRORED = "errored"


class _WireModel(BaseModel):
    """Snake_case in Python, camelCase on the wire (``model_dump(by_alias=True)``)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StageResult(_WireModel):
    """Outcome of one stage execution.

    ``output`` is the full text; ``truncated_output`` is the human-facing
    copy (capped, cleaned, and possibly edited by a reviewer).
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    stage_name: str
    processed: bool
    output: str | None = None
    truncated_output: str | None = None
    error: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    duration_ms: int = 0

    @model_validator(mode="after")
    def _processed_iff_no_error(self) -> "StageResult":
        if self.processed != (self.error is None):
            raise ValueError("processed must be True exactly when error is None")
        return self

    @property
    def display_text(self) -> str:
        return self.truncated_output or self.output or ""


class StageStatus(_WireModel):
    """Lightweight projection of a stage agent for the health monitor."""
    stage_name: str
    processed: bool = False
    has_error: bool = False
    duration_ms: int | None = None
    last_run_at: datetime | None = None


class StepRecord(_WireModel):
    stage_name: str
    timestamp: datetime = Field(default_factory=utcnow)
    duration_ms: int = 0
    success: bool = True
    has_error: bool = False

    @classmethod
    def from_result(cls, result: StageResult) -> "StepRecord":
        return cls(
            stage_name=result.stage_name,
            duration_ms=result.duration_ms,
            success=result.processed,
            has_error=result.error is not None,
        )


class SessionState(_WireModel):
    """Mutable per-session state, owned by the SessionRegistry."""
    session_id: str
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: datetime | None = None
    phase: SessionPhase = SessionPhase.IDLE
    current_stage: str | None = None
    completed: bool = False
    terminated: bool = False
    termination_reason: str | None = None
    terminated_at_stage: str | None = None
    error: str | None = None
    plan: str | None = None
    steps: list[StepRecord] = Field(default_factory=list)

    @property
    def frozen(self) -> bool:
        return self.completed or self.terminated or self.error is not None


class WorkflowOptions(_WireModel):
    """Per-run options supplied by the caller of ``run_workflow``."""
    stages: list[str] | None = None            # None → every pipeline stage
    approval_mode: str | None = None           # None → settings.approval_mode
    approval_stages: list[str] | None = None
    repository_enabled: bool = False
    repository: dict[str, Any] = Field(default_factory=dict)


class WorkflowOutcome(_WireModel):
    session_id: str
    phase: SessionPhase
    history: list[StageResult] = Field(default_factory=list)
    summary: StageResult | None = None
    termination_reason: str | None = None


class FeedbackOutcome(_WireModel):
    feedback: StageResult | None = None
    learning_insights: StageResult | None = None
    terminated: bool = False


class PipelineState(BaseModel):
    """State threaded through the LangGraph stage graph."""
    session_id: str
    inputs: dict[str, Any] = Field(default_factory=dict)
    # Human-facing (possibly edited) text of every stage that already ran,
    # keyed by stage name.  Downstream stages read from here.
    outputs: dict[str, str] = Field(default_factory=dict)
    last_stage: str = ""
    halted: bool = False
