"""Supervisor agent: plans a run, checks its health, and writes the final summary."""

from __future__ import annotations

import time
from typing import Any, Sequence

from lodestar.agents.base import StageAgent
from lodestar.agents.models import TextGenerator
from lodestar.core.logging import get_logger
from lodestar.core.state import Stage, StageResult, StageStatus, utcnow

logger = get_logger("agents.supervisor")

# Words in a health summary that mean a human should look.
ANOMALY_KEYWORDS = ("alert", "bottleneck", "intervention")


def signals_anomaly(text: str | None) -> bool:
    lowered = (text or "").lower()
    return any(word in lowered for word in ANOMALY_KEYWORDS)


_MONITOR_INSTRUCTIONS = """
{terminated}You are now monitoring a running pipeline.
1. Look at the state of every stage and identify stalls or bottlenecks.
2. Point out any stage that is not progressing as the plan expects.
3. Say whether human intervention might be needed.

If something needs attention, start your response with "ALERT: " followed by a
concise description.  Otherwise reply with a one-line status summary."""

_SUMMARY_INSTRUCTIONS = """
{terminated}Summarise the whole run:
1. Overall effectiveness of the pipeline
2. Contribution of each stage
3. Bottlenecks or failures that occurred
4. Impact of human edits
5. Recommendations for future runs

Use clearly labelled sections."""

_TERMINATION_INSTRUCTIONS = """
The run was stopped early because the reviewer rejected the {stage} stage.
1. Acknowledge the termination.
2. Summarise what was completed before it.
3. Suggest what could be done differently next time.

Format the response as a short termination report."""


class SupervisorAgent(StageAgent):
    """Oversees a run.  Keeps a monitoring log that is cleared by ``reset``."""

    def __init__(self, generate: TextGenerator, **kwargs: Any) -> None:
        super().__init__("supervisor", "coordinates the stages of the pipeline", generate, **kwargs)
        self.monitoring_history: list[dict[str, Any]] = []
        self.terminated = False
        self._last_check: float | None = None

    def _log(self, event: str, **details: Any) -> None:
        self.monitoring_history.append({"timestamp": utcnow().isoformat(), "event": event, **details})

    async def plan_workflow(self, input_summary: dict[str, Any]) -> StageResult:
        self._last_check = time.monotonic()
        result = await self.run(input_summary, as_stage=Stage.PLANNING)
        self.monitoring_history = []
        self._log("Workflow initialised", details="Initial plan created")
        return result

    async def monitor_workflow(self, statuses: Sequence[StageStatus], plan: str | None) -> StageResult:
        now = time.monotonic()
        since = int(now - self._last_check) if self._last_check is not None else 0
        self._last_check = now
        self._log("Monitoring check", secondsSinceLastCheck=since)

        prompt = self.prompt + _MONITOR_INSTRUCTIONS.format(
            terminated="This workflow has been terminated. " if self.terminated else "",
        )
        payload = {
            "currentState": [s.model_dump(mode="json", by_alias=True) for s in statuses],
            "originalPlan": plan or "No original plan available",
            "monitoringHistory": self.monitoring_history[-20:],
            "secondsSinceLastCheck": since,
            "isTerminated": self.terminated,
        }
        return await self.run(payload, prompt=prompt, as_stage=Stage.HEALTH_CHECK)

    async def summarize_workflow(self, history: Sequence[StageResult]) -> StageResult:
        prompt = self.prompt + _SUMMARY_INSTRUCTIONS.format(
            terminated="Note: the run was terminated early by the reviewer. " if self.terminated else "",
        )
        steps = [
            {
                "stage": r.stage_name,
                "durationMs": r.duration_ms,
                "success": r.processed,
                "hasError": r.error is not None,
            }
            for r in history
        ]
        payload = {
            "processingSteps": steps,
            "monitoringHistory": self.monitoring_history,
            "totalDurationMs": sum(r.duration_ms for r in history),
            "successRate": (sum(1 for r in history if r.processed) / len(history)) if history else 0.0,
            "isTerminated": self.terminated,
        }
        return await self.run(payload, prompt=prompt, as_stage=Stage.SUMMARY)

    async def handle_termination(self, stage_name: str, reason: str) -> StageResult:
        self.terminated = True
        self._log("Workflow terminated", reason=reason, rejectedStep=stage_name)
        prompt = self.prompt + _TERMINATION_INSTRUCTIONS.format(stage=stage_name)
        return await self.run(
            {"rejectedStep": stage_name, "reason": reason},
            prompt=prompt,
            as_stage=Stage.TERMINATION,
        )

    def reset(self) -> None:
        super().reset()
        self.monitoring_history = []
        self.terminated = False
        self._last_check = None
