"""FastAPI transport: REST endpoints plus a session-scoped WebSocket channel.

Every event published on the orchestrator's bus is forwarded to the
WebSocket clients subscribed to that event's session (the "room").  Events
without a session go to every client.  Outbound frames look like::

    {"event": "processingStep", "data": {"step": "explanation", "status": "waiting"}, "ts": "..."}

Inbound frames carry a ``type``: ``subscribe``, ``approveStep``,
``rejectStep`` or ``submitFeedback``.

The orchestrator is passed in explicitly (:func:`create_app`); nothing here
is a module-level singleton.
"""

from __future__ import annotations

import asyncio
import json
import secrets
from contextlib import asynccontextmanager, suppress
from datetime import UTC, datetime
from typing import Any, Callable

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from infra.provisioner import RepositorySafetyViolation
from lodestar.core.events import EventCategory, WorkflowEvent
from lodestar.core.logging import get_logger
from lodestar.core.orchestrator import WorkflowOrchestrator, resolve_stages
from lodestar.core.session_registry import SessionNotFoundError
from lodestar.core.state import WorkflowOptions
from lodestar.repository.monitor import RepositoryConnectionError
from lodestar.sources.feed import FeedClient, FeedError

logger = get_logger("web.server")

FeedFactory = Callable[[str], FeedClient]


# ── Models ────────────────────────────────────────────────────────────────

class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProcessRequest(_Body):
    liked_items: bool = True
    watch_history: bool = False
    max_results: int = Field(default=50, ge=1, le=500)
    repository_enabled: bool = False
    repository: dict[str, Any] = Field(default_factory=dict)
    stages: list[str] | None = None
    approval_mode: str | None = None
    approval_stages: list[str] | None = None
    access_token: str = ""

    def options(self) -> WorkflowOptions:
        return WorkflowOptions(
            stages=self.stages,
            approval_mode=self.approval_mode,
            approval_stages=self.approval_stages,
            repository_enabled=self.repository_enabled,
            repository=self.repository,
        )


class ApproveRequest(_Body):
    session_id: str
    step: str
    edited_content: str | None = None


class TerminateRequest(_Body):
    session_id: str
    step: str
    reason: str = "Rejected by user"


class FeedbackRequest(_Body):
    session_id: str
    feedback: str


class TriggerRequest(_Body):
    session_id: str


# ── WebSocket rooms ───────────────────────────────────────────────────────

def _frame(event: str, data: Any, ts: str | None = None) -> str:
    return json.dumps({"event": event, "data": data, "ts": ts or datetime.now(UTC).isoformat()}, default=str)


class ConnectionHub:
    """Session rooms of WebSocket clients with an ordered outbound queue."""

    def __init__(self) -> None:
        self._rooms: dict[str, set[WebSocket]] = {}
        self._clients: set[WebSocket] = set()
        self._outbox: asyncio.Queue | None = None
        self._pump_task: asyncio.Task | None = None

    def connect(self, ws: WebSocket) -> None:
        self._clients.add(ws)

    def join(self, ws: WebSocket, session_id: str) -> None:
        self._rooms.setdefault(session_id, set()).add(ws)

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.discard(ws)
        for room, members in list(self._rooms.items()):
            members.discard(ws)
            if not members:
                del self._rooms[room]

    def members(self, session_id: str | None) -> set[WebSocket]:
        if session_id is None:
            return set(self._clients)
        return set(self._rooms.get(session_id, ()))

    async def _fanout(self, targets: set[WebSocket], message: str, label: str) -> None:
        dead: set[WebSocket] = set()
        for ws in targets:
            try:
                await ws.send_text(message)
            except Exception as exc:
                logger.warning("WS send failed | %s | %s", label, exc)
                dead.add(ws)
        for ws in dead:
            self.disconnect(ws)

    async def broadcast_event(self, event: WorkflowEvent) -> None:
        """Event-bus listener: queue *event* for the clients of its session."""
        targets = self.members(event.session_id)
        if not targets:
            return
        message = _frame(event.category.value, event.data, event.timestamp)
        label = f"{event.category.value} session={event.session_id}"
        if self._outbox is None:
            await self._fanout(targets, message, label)
            return
        await self._outbox.put((targets, message, label))

    async def _pump(self) -> None:
        """Serialise sends so message order is preserved per client."""
        assert self._outbox is not None
        while True:
            targets, message, label = await self._outbox.get()
            try:
                await self._fanout(targets, message, label)
            finally:
                self._outbox.task_done()

    def start(self) -> None:
        self._outbox = asyncio.Queue()
        self._pump_task = asyncio.create_task(self._pump())

    async def stop(self) -> None:
        if self._pump_task is not None:
            self._pump_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._pump_task
        self._pump_task = None
        self._outbox = None


# ── App factory ───────────────────────────────────────────────────────────

def _bearer(header: str | None) -> str:
    if header and header.lower().startswith("bearer "):
        return header[7:].strip()
    return ""


def _token_accepted(supplied: str, expected: str) -> bool:
    if not supplied:
        return False
    return not expected or secrets.compare_digest(supplied.encode(), expected.encode())


def create_app(
    orchestrator: WorkflowOrchestrator | None = None,
    feed_factory: FeedFactory | None = None,
) -> FastAPI:
    orch = orchestrator or WorkflowOrchestrator()
    make_feed: FeedFactory = feed_factory or (lambda token: FeedClient(token))
    hub = ConnectionHub()
    runs: set[asyncio.Task] = set()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        orch.events.set_event_loop(asyncio.get_running_loop())
        hub.start()
        orch.events.subscribe_async(hub.broadcast_event)
        logger.info("Web server started, event bus wired")
        yield
        orch.events.unsubscribe(hub.broadcast_event)
        await orch.shutdown()
        for task in list(runs):
            task.cancel()
        for task in list(runs):
            with suppress(asyncio.CancelledError, Exception):
                await task
        await hub.stop()
        logger.info("Lifespan cleanup complete")

    def require_token(request: Request) -> str:
        """Demand a bearer token (matching ``api_token`` when one is configured) and return it."""
        token = _bearer(request.headers.get("authorization"))
        if not _token_accepted(token, orch.settings.api_token):
            raise HTTPException(status_code=401, detail="Invalid or missing bearer token")
        return token

    app = FastAPI(title="Lodestar", version="0.3.0", lifespan=lifespan)
    router = APIRouter(prefix="/api", dependencies=[Depends(require_token)])
    app.state.orchestrator = orch
    app.state.hub = hub

    async def _run_session(session_id: str, req: ProcessRequest, token: str) -> None:
        try:
            async with make_feed(req.access_token or token) as feed:
                data = await feed.fetch_input(liked=req.liked_items, history=req.watch_history,
                                              max_results=req.max_results)
        except FeedError as exc:
            logger.error("Feed fetch failed for session %s: %s", session_id, exc)
            if orch.registry.mark_errored(session_id, str(exc)):
                orch.events.emit(EventCategory.ERROR, session_id, message=f"Could not fetch input: {exc}")
            return
        try:
            await orch.run_workflow(data, req.options(), session_id=session_id)
        except Exception as exc:
            # Already recorded on the session and emitted as an error event.
            logger.error("Session %s failed: %s", session_id, exc)

    # ── REST ─────────────────────────────────────────────────────────

    @router.post("/process")
    async def process(req: ProcessRequest, token: str = Depends(require_token)):
        try:
            resolve_stages(req.options())
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        session_id = orch.init_session()
        task = asyncio.create_task(_run_session(session_id, req, token))
        runs.add(task)
        task.add_done_callback(runs.discard)
        return {"sessionId": session_id}

    @router.post("/approve")
    async def approve(req: ApproveRequest):
        if not orch.gate.resolve(req.session_id, req.step, req.edited_content):
            raise HTTPException(status_code=404, detail=f"No pending approval for {req.step}")
        return {"status": "approved", "step": req.step, "wasEdited": req.edited_content is not None}

    @router.post("/terminate")
    async def terminate(req: TerminateRequest):
        if not orch.gate.reject(req.session_id, req.step, req.reason):
            raise HTTPException(status_code=404, detail=f"No pending approval for {req.step}")
        return {"status": "terminated", "step": req.step}

    @router.post("/feedback")
    async def feedback(req: FeedbackRequest):
        try:
            outcome = await orch.process_feedback(req.session_id, req.feedback)
        except SessionNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if outcome.terminated:
            return {"terminated": True}
        return {
            "feedback": outcome.feedback.model_dump(mode="json", by_alias=True) if outcome.feedback else None,
            "learningInsights": (outcome.learning_insights.model_dump(mode="json", by_alias=True)
                                 if outcome.learning_insights else None),
        }

    @router.get("/status/{session_id}")
    async def status(session_id: str):
        try:
            return orch.status(session_id)
        except SessionNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @router.get("/pending/{session_id}/{step}")
    async def pending(session_id: str, step: str):
        result = orch.pending(session_id, step)
        if result is None:
            raise HTTPException(status_code=404, detail=f"No pending approval for {step}")
        return {"step": step, "result": result.model_dump(mode="json", by_alias=True)}

    @router.get("/repository/config")
    async def repository_config():
        try:
            config = orch.provisioner.get_config(None)
        except RepositorySafetyViolation as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return {
            "repoUrl": config.repo_url,
            "targetBranch": config.target_branch,
            "scanInterval": orch.provisioner.scan_interval,
        }

    @router.post("/repository/test-connection")
    async def test_connection(settings: dict[str, Any]):
        try:
            success, message = await orch.test_repository_connection(settings)
        except RepositorySafetyViolation as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"success": success, "message": message}

    @router.post("/repository/trigger")
    async def trigger(req: TriggerRequest):
        queued = orch.registry.is_running(req.session_id)
        try:
            result = await orch.trigger_repository_analysis(req.session_id)
        except RepositoryConnectionError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        except RepositorySafetyViolation as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "result": result.model_dump(mode="json", by_alias=True) if result else None,
            "queued": queued,
        }

    @router.get("/events")
    async def events(limit: int = 100, session_id: str | None = None):
        return {"events": orch.events.history(limit=limit, session_id=session_id)}

    app.include_router(router)

    # ── WebSocket ────────────────────────────────────────────────────

    async def _handle_message(ws: WebSocket, msg: dict[str, Any]) -> None:
        kind = msg.get("type")
        session_id = msg.get("sessionId") or ""

        if kind == "subscribe":
            hub.join(ws, session_id)
            await ws.send_text(_frame("subscribed", {"sessionId": session_id}))
        elif kind == "approveStep":
            if not orch.gate.resolve(session_id, msg.get("step", ""), msg.get("editedContent")):
                await ws.send_text(_frame("error", {"message": f"No pending approval for {msg.get('step')}"}))
        elif kind == "rejectStep":
            if not orch.gate.reject(session_id, msg.get("step", ""), msg.get("reason") or "Rejected by user"):
                await ws.send_text(_frame("error", {"message": f"No pending approval for {msg.get('step')}"}))
        elif kind == "submitFeedback":
            # Results arrive through the feedbackProcessed event.
            try:
                await orch.process_feedback(session_id, msg.get("feedback", ""))
            except (SessionNotFoundError, ValueError) as exc:
                await ws.send_text(_frame("error", {"message": str(exc)}))
        else:
            await ws.send_text(_frame("error", {"message": f"Unknown message type {kind!r}"}))

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket):
        supplied = ws.query_params.get("token") or _bearer(ws.headers.get("authorization"))
        if not _token_accepted(supplied, orch.settings.api_token):
            await ws.close(code=1008)
            return

        await ws.accept()
        hub.connect(ws)
        logger.info("WebSocket client connected")
        try:
            while True:
                data = await ws.receive_text()
                try:
                    msg = json.loads(data)
                except json.JSONDecodeError:
                    continue
                if isinstance(msg, dict):
                    await _handle_message(ws, msg)
        except WebSocketDisconnect:
            logger.info("WebSocket client disconnected")
        finally:
            hub.disconnect(ws)

    return app
