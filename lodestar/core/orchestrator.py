"""Workflow orchestrator: runs the stage pipeline of one session.

State machine per session::

    Planning → Running(stage) → [ApprovalPending(stage)] → Running(next) → …
             → Completed | Terminated | Errored

The enabled stages are compiled into a linear LangGraph ``StateGraph``.
Every node goes through :meth:`WorkflowOrchestrator._execute_stage`: run the
agent, append the result to history, emit progress, wait at the approval
gate, and thread the approved (possibly edited) text into the next stage.
The repository poll loop injects extra repository-analysis runs through the
same path, so they are recorded and gated like any other stage.

Two background loops run alongside the pipeline (health monitor and
repository poll).  Both are stopped in one ``finally`` block whatever way
the run ends.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Callable

from langgraph.graph import END, StateGraph

from infra.provisioner import SessionRepoProvisioner, load_repository_defaults
from lodestar.agents.base import StageAgent
from lodestar.agents.models import TextGenerator, llm_generator
from lodestar.agents.stages import build_stage_agents
from lodestar.agents.supervisor import SupervisorAgent, signals_anomaly
from lodestar.core.approval_gate import ApprovalGate, ApprovalPolicy, ApprovalRejected
from lodestar.core.config import Settings, get_settings
from lodestar.core.events import EventBus, EventCategory
from lodestar.core.logging import get_logger
from lodestar.core.monitors import PeriodicTask
from lodestar.core.session_registry import SessionNotFoundError, SessionRegistry
from lodestar.core.state import (
    PIPELINE_ORDER,
    FeedbackOutcome,
    PipelineState,
    SessionPhase,
    Stage,
    StageResult,
    StageStatus,
    WorkflowOptions,
    WorkflowOutcome,
    utcnow,
)
from lodestar.repository.monitor import RepositoryConnectionError, RepositoryMonitor, RepositoryReport

logger = get_logger("core.orchestrator")

MonitorFactory = Callable[[str], RepositoryMonitor]

# Feedback that ends the session instead of going through the learning stages.
TERMINATION_PHRASES = (
    "terminate the process",
    "finish it",
    "i am done",
    "end process",
    "stop it",
    "that's enough",
    "that's all",
    "i'm finished",
)


def is_termination_phrase(feedback: str) -> bool:
    lowered = feedback.strip().lower()
    return any(phrase in lowered for phrase in TERMINATION_PHRASES)


def resolve_stages(options: WorkflowOptions) -> list[str]:
    """Enabled stages in pipeline order.  Unknown names raise ``ValueError``."""
    known = {s.value for s in PIPELINE_ORDER}
    if options.stages is None:
        requested = {s.value for s in PIPELINE_ORDER if s is not Stage.REPOSITORY_ANALYSIS}
    else:
        unknown = [s for s in options.stages if s not in known]
        if unknown:
            raise ValueError(f"Unknown stage(s): {', '.join(unknown)}")
        requested = set(options.stages)
    if options.repository_enabled:
        requested.add(Stage.REPOSITORY_ANALYSIS.value)
    else:
        requested.discard(Stage.REPOSITORY_ANALYSIS.value)
    stages = [s.value for s in PIPELINE_ORDER if s.value in requested]
    if not stages:
        raise ValueError("No stages enabled")
    return stages


class WorkflowOrchestrator:
    """Owns the registry, the approval gate, the agents and the background loops.

    One instance is built per process and handed to the web server.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        events: EventBus | None = None,
        generate: TextGenerator | None = None,
        supervisor_generate: TextGenerator | None = None,
        provisioner: SessionRepoProvisioner | None = None,
        monitor_factory: MonitorFactory | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.events = events or EventBus()
        self.registry = SessionRegistry()
        self.gate = ApprovalGate(self.events, ApprovalPolicy.from_settings(self.settings))
        self.agents: dict[str, StageAgent] = build_stage_agents(
            generate or llm_generator("stage"), word_cap=self.settings.stage_word_cap,
        )
        self.supervisor = SupervisorAgent(
            supervisor_generate or generate or llm_generator("supervisor"),
            word_cap=self.settings.stage_word_cap,
        )
        self._provisioner = provisioner
        self._monitor_factory = monitor_factory
        self._monitors: dict[str, RepositoryMonitor] = {}
        self._repo_overrides: dict[str, dict[str, Any]] = {}
        # Approved (possibly edited) text per stage of the active session.
        self._outputs: dict[str, str] = {}
        self._repo_lock = asyncio.Lock()
        self._loops: list[PeriodicTask] = []
        # Queued manual-trigger stages, by the session they belong to.
        self._background: dict[asyncio.Task, str] = {}

    # ── Collaborators ─────────────────────────────────────────────────

    @property
    def provisioner(self) -> SessionRepoProvisioner:
        if self._provisioner is None:
            self._provisioner = SessionRepoProvisioner(load_repository_defaults(self.settings))
        return self._provisioner

    def monitor_for(self, session_id: str) -> RepositoryMonitor:
        monitor = self._monitors.get(session_id)
        if monitor is None:
            if self._monitor_factory is not None:
                monitor = self._monitor_factory(session_id)
            else:
                monitor = RepositoryMonitor(session_id, self.provisioner, self.settings)
            self._monitors[session_id] = monitor
        return monitor

    def _emit(self, category: EventCategory, session_id: str | None, **data: Any) -> None:
        self.events.emit(category, session_id, **data)

    # ── Session lifecycle ─────────────────────────────────────────────

    def init_session(self, session_id: str | None = None) -> str:
        """Start a new session.  A still-running previous session is terminated first."""
        previous = self.registry.active
        if previous is not None:
            if not previous.frozen:
                self._finalize_termination(previous.session_id, previous.current_stage,
                                           "Superseded by a new session")
            self._teardown_repository(previous.session_id)
            self.gate.forget_session(previous.session_id)

        for agent in self.agents.values():
            agent.reset()
        self.supervisor.reset()
        self._outputs = {}
        return self.registry.init_session(session_id).session_id

    def _teardown_repository(self, session_id: str) -> None:
        monitor = self._monitors.pop(session_id, None)
        self._repo_overrides.pop(session_id, None)
        if monitor is not None:
            monitor.cleanup()

    def _finalize_termination(self, session_id: str, stage_name: str | None, reason: str) -> bool:
        """Freeze the session as terminated.  Only the first call per session does anything."""
        try:
            won = self.registry.mark_terminated(session_id, reason, stage_name)
        except SessionNotFoundError:
            return False
        if not won:
            return False
        self.gate.reject_session(session_id, reason)
        self._emit(
            EventCategory.WORKFLOW_TERMINATED, session_id,
            reason=reason,
            step=stage_name,
            message=f"Workflow terminated at {stage_name or 'start'}: {reason}",
        )
        return True

    # ── Main pipeline ─────────────────────────────────────────────────

    async def run_workflow(
        self,
        data: dict[str, Any],
        options: WorkflowOptions | None = None,
        session_id: str | None = None,
    ) -> WorkflowOutcome:
        """Run every enabled stage in order for *data*.

        Raises:
            ValueError: *options* name no valid stage.
            Exception: any unexpected failure, after the session is marked errored.
        """
        options = options or WorkflowOptions()
        stages = resolve_stages(options)
        if session_id is None or not self.registry.is_running(session_id):
            session_id = self.init_session(session_id)
        sid = session_id

        self.gate.set_policy(sid, ApprovalPolicy(
            mode=(options.approval_mode or self.settings.approval_mode).strip().lower(),
            stages=frozenset(options.approval_stages if options.approval_stages is not None
                             else self.settings.approval_stage_names),
        ))
        if options.repository_enabled:
            self._repo_overrides[sid] = dict(options.repository)

        logger.info("Session %s starting | stages=%s", sid, ",".join(stages))
        loops = self._start_loops(sid, options.repository_enabled)
        try:
            await self._plan(sid, data, stages, options)
            self.registry.set_phase(sid, SessionPhase.RUNNING)

            graph = self.build_stage_graph(stages)
            await graph.ainvoke(PipelineState(session_id=sid, inputs=data))

            try:
                state = self.registry.snapshot(sid)
            except SessionNotFoundError:
                logger.info("Session %s was superseded before it finished", sid)
                return WorkflowOutcome(session_id=sid, phase=SessionPhase.TERMINATED,
                                       termination_reason="Superseded by a new session")

            if state.terminated:
                return await self._wrap_up_terminated(sid, state.terminated_at_stage,
                                                      state.termination_reason or "")
            return await self._wrap_up_completed(sid)

        except Exception as exc:
            try:
                errored = self.registry.mark_errored(sid, str(exc) or exc.__class__.__name__)
            except SessionNotFoundError:
                errored = False
            if errored:
                self.gate.reject_session(sid, "Workflow failed")
                self._emit(EventCategory.ERROR, sid, message=f"Workflow failed: {exc}")
            raise
        finally:
            for loop in loops:
                await loop.stop()
                if loop in self._loops:
                    self._loops.remove(loop)
            await self._cancel_background(sid)
            # Nothing of this run may stay pending once it is over.
            self.gate.reject_session(sid, "Workflow finished")

    def _start_loops(self, session_id: str, repository_enabled: bool) -> list[PeriodicTask]:
        loops = [PeriodicTask(
            f"health-monitor-{session_id[:8]}",
            self.settings.health_interval_seconds,
            lambda: self.health_check_once(session_id),
            lambda: self.registry.is_running(session_id),
        )]
        if repository_enabled:
            loops.append(PeriodicTask(
                f"repository-poll-{session_id[:8]}",
                self.provisioner.scan_interval,
                lambda: self._poll_tick(session_id),
                lambda: self.registry.is_running(session_id),
            ))
        for loop in loops:
            loop.start()
        self._loops.extend(loops)
        return loops

    async def _plan(self, session_id: str, data: dict[str, Any], stages: list[str],
                    options: WorkflowOptions) -> None:
        self.registry.set_phase(session_id, SessionPhase.PLANNING)
        plan = await self.supervisor.plan_workflow({
            "likedItemCount": len(data.get("likedItems") or []),
            "watchHistoryCount": len(data.get("watchHistory") or []),
            "stages": stages,
            "repositoryAnalysis": options.repository_enabled,
        })
        self.registry.set_plan(session_id, plan.display_text or None)
        self._emit(EventCategory.ORCHESTRATOR_UPDATE, session_id,
                   timestamp=utcnow().isoformat(),
                   message="Workflow plan ready" if plan.processed else f"Planning failed: {plan.error}",
                   plan=plan.display_text)

    def build_stage_graph(self, stages: list[str]):
        """Compile a linear graph over *stages* that stops as soon as the session halts."""
        graph = StateGraph(PipelineState)
        for name in stages:
            graph.add_node(name, self._make_node(name))
        graph.set_entry_point(stages[0])
        for current, following in zip(stages, stages[1:]):
            graph.add_conditional_edges(current, self._route_to(following),
                                        {following: following, "stopped": END})
        graph.add_edge(stages[-1], END)
        return graph.compile()

    def _route_to(self, following: str) -> Callable[[PipelineState], str]:
        def route(state: PipelineState) -> str:
            if state.halted or not self.registry.is_running(state.session_id):
                return "stopped"
            return following
        return route

    def _make_node(self, stage_name: str):
        async def node(state: PipelineState) -> dict[str, Any]:
            if stage_name == Stage.REPOSITORY_ANALYSIS:
                async with self._repo_lock:
                    report = await self._baseline_report(state.session_id)
                    if report is None:
                        return {"last_stage": stage_name}
                    return await self._run_node(state, stage_name, report)
            data = {"input": state.inputs, **state.outputs, **self._outputs}
            return await self._run_node(state, stage_name, data)
        return node

    async def _run_node(self, state: PipelineState, stage_name: str, data: Any) -> dict[str, Any]:
        sid = state.session_id
        try:
            approved = await self._execute_stage(sid, stage_name, data)
        except ApprovalRejected as exc:
            self._finalize_termination(sid, exc.stage_name, exc.reason)
            return {"halted": True, "last_stage": stage_name}
        if approved is None:
            return {"halted": True, "last_stage": stage_name}
        return {
            "outputs": {**state.outputs, stage_name: approved.display_text},
            "last_stage": stage_name,
        }

    async def _baseline_report(self, session_id: str) -> RepositoryReport | None:
        """Connect and take the baseline report; ``None`` when the repository is unreachable."""
        monitor = self.monitor_for(session_id)
        try:
            if not monitor.connected:
                await monitor.connect(self._repo_overrides.get(session_id))
            return await monitor.collect(is_first_run=True)
        except RepositoryConnectionError as exc:
            logger.warning("Repository unavailable for session %s: %s", session_id, exc)
            self._emit(EventCategory.ORCHESTRATOR_UPDATE, session_id,
                       timestamp=utcnow().isoformat(),
                       message=f"Repository analysis skipped: {exc}")
            return None

    async def _execute_stage(self, session_id: str, stage_name: str, data: Any) -> StageResult | None:
        """Run one stage, record it and wait for approval.

        Returns the approved result, or ``None`` when the session finished
        while the stage was running (the result is then discarded unseen).

        Raises:
            ApprovalRejected: the reviewer rejected this stage.
        """
        agent = self.agents[stage_name]
        self.registry.set_phase(session_id, SessionPhase.RUNNING, stage_name)
        self._emit(EventCategory.PROCESSING_STEP, session_id, step=stage_name, status="started")

        result = await agent.run(data)

        if not self.registry.is_running(session_id):
            logger.info("Session %s finished during %s; discarding its result", session_id, stage_name)
            return None

        self.registry.record(session_id, result)
        self._emit(
            EventCategory.STATE_UPDATE, session_id,
            agent=stage_name,
            result=result.model_dump(mode="json", by_alias=True),
            state=self.registry.snapshot(session_id).model_dump(mode="json", by_alias=True),
        )

        review = self.gate.requires_approval(session_id, stage_name)
        self._emit(
            EventCategory.ORCHESTRATOR_UPDATE, session_id,
            timestamp=utcnow().isoformat(),
            message=f"{stage_name} finished; {'awaiting review' if review else 'continuing'}",
            stage=stage_name,
            requiresApproval=review,
        )
        if review:
            self.registry.set_phase(session_id, SessionPhase.APPROVAL_PENDING, stage_name)

        approved = await self.gate.request_approval(session_id, stage_name, result)

        self.registry.set_phase(session_id, SessionPhase.RUNNING)
        self._outputs[stage_name] = approved.display_text
        self._emit(EventCategory.PROCESSING_STEP, session_id, step=stage_name, status="completed")
        return approved

    async def _wrap_up_completed(self, session_id: str) -> WorkflowOutcome:
        self.registry.mark_completed(session_id)
        summary = await self.supervisor.summarize_workflow(self.registry.history(session_id))
        self.registry.record_summary(session_id, summary)
        self._emit(EventCategory.ORCHESTRATOR_UPDATE, session_id,
                   timestamp=utcnow().isoformat(),
                   message="Workflow completed",
                   summary=summary.display_text)
        return WorkflowOutcome(
            session_id=session_id,
            phase=SessionPhase.COMPLETED,
            history=self.registry.history(session_id),
            summary=summary,
        )

    async def _wrap_up_terminated(self, session_id: str, stage_name: str | None, reason: str) -> WorkflowOutcome:
        """Best-effort partial summary of a run a reviewer stopped."""
        report = await self.supervisor.handle_termination(stage_name or "unknown", reason)
        summary = await self.supervisor.summarize_workflow(self.registry.history(session_id))
        self.registry.record_summary(session_id, summary)
        self._emit(EventCategory.ORCHESTRATOR_UPDATE, session_id,
                   timestamp=utcnow().isoformat(),
                   message=report.display_text or f"Workflow terminated: {reason}",
                   summary=summary.display_text)
        return WorkflowOutcome(
            session_id=session_id,
            phase=SessionPhase.TERMINATED,
            history=self.registry.history(session_id),
            summary=summary,
            termination_reason=reason,
        )

    # ── Background loops ──────────────────────────────────────────────

    def agent_statuses(self) -> list[StageStatus]:
        return [agent.status() for agent in self.agents.values()]

    async def health_check_once(self, session_id: str) -> StageResult | None:
        """One health tick.  Emits only when the summary signals an anomaly."""
        try:
            plan = self.registry.get(session_id).plan
        except SessionNotFoundError:
            return None
        result = await self.supervisor.monitor_workflow(self.agent_statuses(), plan)
        if signals_anomaly(result.output) and self.registry.is_running(session_id):
            self._emit(EventCategory.ORCHESTRATOR_UPDATE, session_id,
                       timestamp=utcnow().isoformat(),
                       message=result.display_text,
                       alert=True)
        return result

    async def _poll_tick(self, session_id: str) -> None:
        await self.poll_repository_once(session_id)

    async def poll_repository_once(self, session_id: str) -> StageResult | None:
        """One repository poll.

        Connection failures are logged and left for the next tick.  When
        something changed, observers are notified; a running session also
        gets an extra repository-analysis stage.
        """
        # The working copy belongs to whoever holds the lock.  Skipping before
        # the fetch leaves new commits unseen, so the next free tick finds them.
        if self._repo_lock.locked():
            logger.info("Repository stage already in flight for %s; skipping this poll", session_id)
            return None

        async with self._repo_lock:
            monitor = self.monitor_for(session_id)
            try:
                if not monitor.connected:
                    await monitor.connect(self._repo_overrides.get(session_id))
                change_set = await monitor.check_for_changes()
            except RepositoryConnectionError as exc:
                logger.warning("Repository poll for %s failed, retrying next tick: %s", session_id, exc)
                return None

            if not change_set.has_changes:
                return None

            self._emit(EventCategory.REPOSITORY_CHANGES_DETECTED, session_id,
                       timestamp=utcnow().isoformat(),
                       changeSummary=change_set.summary())

            if not self.registry.is_running(session_id):
                return None
            report = await monitor.analyze(change_set)
            return await self._run_injected(session_id, report)

    async def _run_injected(self, session_id: str, report: RepositoryReport) -> StageResult | None:
        try:
            return await self._execute_stage(session_id, Stage.REPOSITORY_ANALYSIS.value, report)
        except ApprovalRejected as exc:
            self._finalize_termination(session_id, exc.stage_name, exc.reason)
            return None

    # ── Out-of-band operations ────────────────────────────────────────

    async def trigger_repository_analysis(self, session_id: str) -> StageResult | None:
        """Manual poll.

        For a running session the whole analysis is queued as an injected
        stage (it goes through review, once the working copy is free) and
        ``None`` is returned.  Otherwise the repository stage runs directly
        and its result is returned.

        Raises:
            RepositoryConnectionError: the repository could not be reached
                (direct runs only; a queued run reports it as an update).
        """
        if self.registry.is_running(session_id):
            task = asyncio.create_task(self._triggered_stage(session_id))
            self._background[task] = session_id
            task.add_done_callback(self._forget_background)
            return None
        async with self._repo_lock:
            report = await self._manual_report(session_id)
        return await self.agents[Stage.REPOSITORY_ANALYSIS.value].run(report)

    async def _manual_report(self, session_id: str) -> RepositoryReport:
        """Caller holds ``_repo_lock``."""
        monitor = self.monitor_for(session_id)
        if not monitor.connected:
            await monitor.connect(self._repo_overrides.get(session_id))
        change_set = await monitor.check_for_changes()
        if change_set.has_changes:
            self._emit(EventCategory.REPOSITORY_CHANGES_DETECTED, session_id,
                       timestamp=utcnow().isoformat(),
                       changeSummary=change_set.summary())
        else:
            # Nothing new: analyse the whole working copy instead.
            change_set = await monitor.check_for_changes(is_first_run=True)
        return await monitor.analyze(change_set)

    async def _triggered_stage(self, session_id: str) -> StageResult | None:
        async with self._repo_lock:
            if not self.registry.is_running(session_id):
                return None
            try:
                report = await self._manual_report(session_id)
            except RepositoryConnectionError as exc:
                logger.warning("Manual repository analysis for %s failed: %s", session_id, exc)
                self._emit(EventCategory.ORCHESTRATOR_UPDATE, session_id,
                           timestamp=utcnow().isoformat(),
                           message=f"Repository analysis skipped: {exc}")
                return None
            return await self._run_injected(session_id, report)

    def _forget_background(self, task: asyncio.Task) -> None:
        session_id = self._background.pop(task, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Queued repository analysis for %s failed: %s", session_id, task.exception())

    async def _cancel_background(self, session_id: str) -> None:
        tasks = [task for task, owner in self._background.items() if owner == session_id]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for task in tasks:
            self._background.pop(task, None)

    async def test_repository_connection(self, settings: dict[str, Any]) -> tuple[bool, str]:
        """Connect with *settings* under a throwaway id; nothing else is touched.

        The check runs on a detached provisioner, so live session configs are
        never merged into or evicted.

        Raises:
            RepositorySafetyViolation: the derived path is unsafe.
        """
        check_id = f"connection-test-{uuid.uuid4().hex[:12]}"
        monitor = (self._monitor_factory(check_id) if self._monitor_factory is not None
                   else RepositoryMonitor(check_id, self.provisioner.detached(), self.settings))
        try:
            config = await monitor.connect(settings)
            return True, f"Connected to {config.repo_url} on branch {config.target_branch}"
        except RepositoryConnectionError as exc:
            return False, str(exc)
        finally:
            monitor.cleanup()

    async def process_feedback(self, session_id: str, feedback: str) -> FeedbackOutcome:
        """Assess reviewer feedback on the explanation and derive learning insights.

        A termination phrase ends the session instead.

        Raises:
            SessionNotFoundError: *session_id* is not the active session.
            ValueError: there is no explanation to give feedback on.
        """
        self.registry.get(session_id)
        if is_termination_phrase(feedback):
            self._finalize_termination(session_id, Stage.USER_FEEDBACK.value, "Ended by user feedback")
            self._emit(EventCategory.FEEDBACK_PROCESSED, session_id, terminated=True)
            return FeedbackOutcome(terminated=True)

        explanation = self._outputs.get(Stage.EXPLANATION.value)
        if not explanation:
            raise ValueError("No explanation available to give feedback on")

        assessed = await self.agents[Stage.USER_FEEDBACK.value].run(
            {"feedback": feedback, "explanation": explanation}
        )
        steps = [s.model_dump(mode="json", by_alias=True) for s in self.registry.get(session_id).steps]
        insights = await self.agents[Stage.LEARNING.value].run(
            {"processedFeedback": assessed.display_text, "steps": steps}
        )
        self.registry.record_feedback(session_id, assessed)
        self.registry.record_feedback(session_id, insights)
        self._emit(
            EventCategory.FEEDBACK_PROCESSED, session_id,
            feedback=assessed.model_dump(mode="json", by_alias=True),
            learningInsights=insights.model_dump(mode="json", by_alias=True),
        )
        return FeedbackOutcome(feedback=assessed, learning_insights=insights)

    # ── Read side ─────────────────────────────────────────────────────

    def status(self, session_id: str) -> dict[str, Any]:
        state = self.registry.snapshot(session_id)
        return {
            "state": state.model_dump(mode="json", by_alias=True),
            "pendingApprovals": self.gate.pending_stages(session_id),
            "agentStatuses": [s.model_dump(mode="json", by_alias=True) for s in self.agent_statuses()],
        }

    def pending(self, session_id: str, step: str) -> StageResult | None:
        return self.gate.pending_result(session_id, step)

    # ── Shutdown ──────────────────────────────────────────────────────

    async def shutdown(self) -> None:
        active = self.registry.active
        if active is not None and not active.frozen:
            self._finalize_termination(active.session_id, active.current_stage, "Server shutting down")
        for loop in list(self._loops):
            await loop.stop()
        self._loops.clear()
        for task in list(self._background):
            task.cancel()
        for session_id in list(self._monitors):
            self._teardown_repository(session_id)
        if self._provisioner is not None:
            self._provisioner.flush_cleanups()
        logger.info("Orchestrator shut down")
