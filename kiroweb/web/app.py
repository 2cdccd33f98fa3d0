"""FastAPI web application for kiroweb.

Key properties:
- Sessions drive kiro-cli workers; the worker's conversation log is the single
  source of history
- Global SSE bus: `GET /event` (reconnect + replay from the persisted event log)
- SQLite persistence: sessions, messages, permission requests and events
"""

from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Literal

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from loguru import logger
from pydantic import BaseModel

from kiroweb import __version__
from kiroweb.errors import ConversationLogError, KiroBinaryNotFoundError
from kiroweb.kiro.conversation import ConversationLog, ConversationSynchronizer
from kiroweb.kiro.process import resolve_kiro_binary
from kiroweb.web.controller import SessionController
from kiroweb.web.database import SessionStore
from kiroweb.web.event_bus import EventDispatcher
from kiroweb.web.permissions import PermissionManager
from kiroweb.web.runner import KiroRunner
from kiroweb.web.settings import KiroWebSettings


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionStartRequest(BaseModel):
    prompt: str
    cwd: str | None = None
    title: str | None = None
    interactive: bool = False
    allowed_tools: str | None = None


class SessionContinueRequest(BaseModel):
    prompt: str
    interactive: bool | None = None


class PermissionDecisionRequest(BaseModel):
    behavior: Literal["allow", "deny"]
    message: str = ""


def _sse_frame(kind: str, item: dict[str, Any]) -> str:
    data = json.dumps(item, ensure_ascii=False)
    if kind == "event":
        return f"id: {item.get('id')}\nevent: event\ndata: {data}\n\n"
    return f"event: {kind}\ndata: {data}\n\n"


async def sse_event_stream(
    dispatcher: EventDispatcher,
    *,
    session_id: str | None,
    last_id: int | None,
    wait_timeout_s: float,
    is_disconnected: Callable[[], Awaitable[bool]],
) -> AsyncIterator[str]:
    """SSE frames for persisted events after `last_id`.

    The event log is re-read on every pass, so an event published while a
    frame is being sent is picked up on the next pass even if its wakeup was
    missed. A heartbeat goes out only when a wait timed out and the re-read
    found nothing.
    """
    # connected (not persisted)
    yield _sse_frame(
        "connected",
        {
            "id": 0,
            "seq": 0,
            "ts": time.time(),
            "type": "connected",
            "session_id": session_id or "",
            "payload": {"server_time": _now_iso(), "latest_id": last_id or 0},
        },
    )

    idle = False
    while True:
        if await is_disconnected():
            break

        items = dispatcher.get_events_since(session_id=session_id, since_id=last_id)
        if items:
            for item in items:
                last_id = int(item.get("id", last_id or 0) or 0)
                yield _sse_frame("event", item)
            idle = False
            continue

        if idle:
            yield _sse_frame(
                "heartbeat",
                {"id": 0, "seq": 0, "ts": time.time(), "type": "heartbeat", "session_id": session_id or "", "payload": {}},
            )
        idle = not await dispatcher.wait_for_new(timeout_s=wait_timeout_s)


def create_app(settings: KiroWebSettings | None = None) -> FastAPI:
    settings = settings or KiroWebSettings()

    data_dir = settings.resolved_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)

    store = SessionStore(settings.resolved_db_path())
    dispatcher = EventDispatcher(store)
    conversation_log = ConversationLog(settings.resolved_kiro_data_path)
    synchronizer = ConversationSynchronizer(conversation_log)
    permissions = PermissionManager(store=store, timeout_s=settings.permission_timeout_s)
    runner = KiroRunner(store=store, dispatcher=dispatcher, synchronizer=synchronizer, settings=settings)
    controller = SessionController(
        store=store,
        dispatcher=dispatcher,
        synchronizer=synchronizer,
        permissions=permissions,
        runner=runner,
        settings=settings,
    )

    app = FastAPI(title="kiroweb api", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.store = store
    app.state.dispatcher = dispatcher
    app.state.controller = controller
    app.state.permissions = permissions

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        controller.shutdown()
        conversation_log.invalidate()
        store.close()

    def _require_session(session_id: str) -> None:
        if not store.session_exists(session_id):
            raise HTTPException(status_code=404, detail="session not found")

    # ── Health ───────────────────────────────────────────────────

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        try:
            kiro_cli = resolve_kiro_binary(settings.kiro_cli_path)
        except KiroBinaryNotFoundError:
            kiro_cli = None
        return {
            "ok": True,
            "time": _now_iso(),
            "version": __version__,
            "kiro_cli": kiro_cli,
            "kiro_data_path": str(settings.resolved_kiro_data_path()),
        }

    # ── Sessions ─────────────────────────────────────────────────

    @app.get("/api/sessions")
    async def list_sessions() -> list[dict[str, Any]]:
        await controller.handle_client_event({"type": "session.list"})
        return [s.to_dict() for s in store.list_sessions()]

    @app.post("/api/sessions")
    async def start_session(payload: SessionStartRequest) -> dict[str, Any]:
        session = await controller.handle_client_event({"type": "session.start", "payload": payload.model_dump()})
        return session.to_dict()

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str) -> dict[str, Any]:
        _require_session(session_id)
        await controller.handle_client_event({"type": "session.history", "payload": {"session_id": session_id}})
        history = store.get_session_history(session_id)
        if history is None:
            raise HTTPException(status_code=404, detail="session not found")
        return {"session": history["session"].to_dict(), "messages": history["messages"]}

    @app.post("/api/sessions/{session_id}/continue")
    async def continue_session(session_id: str, payload: SessionContinueRequest) -> dict[str, Any]:
        _require_session(session_id)
        rejection = await controller.handle_client_event(
            {
                "type": "session.continue",
                "payload": {"session_id": session_id, **payload.model_dump()},
            }
        )
        if rejection:
            raise HTTPException(status_code=409, detail=rejection)
        session = store.get_session(session_id)
        return session.to_dict() if session else {"id": session_id}

    @app.post("/api/sessions/{session_id}/stop")
    async def stop_session(session_id: str) -> dict[str, Any]:
        _require_session(session_id)
        await controller.handle_client_event({"type": "session.stop", "payload": {"session_id": session_id}})
        return {"ok": True}

    @app.delete("/api/sessions/{session_id}")
    async def delete_session(session_id: str) -> dict[str, Any]:
        existed = store.session_exists(session_id)
        await controller.handle_client_event({"type": "session.delete", "payload": {"session_id": session_id}})
        return {"ok": True, "deleted": existed}

    # ── Permissions ──────────────────────────────────────────────

    @app.get("/api/sessions/{session_id}/permissions/pending")
    async def list_pending_permissions(session_id: str) -> list[dict[str, Any]]:
        _require_session(session_id)
        return store.list_pending_permission_requests(session_id)

    @app.post("/api/sessions/{session_id}/permissions/{tool_use_id}")
    async def resolve_permission(session_id: str, tool_use_id: str, payload: PermissionDecisionRequest) -> dict[str, Any]:
        _require_session(session_id)
        resolved = await controller.handle_client_event(
            {
                "type": "permission.response",
                "payload": {
                    "session_id": session_id,
                    "tool_use_id": tool_use_id,
                    "result": {"behavior": payload.behavior, "message": payload.message},
                },
            }
        )
        return {"ok": True, "resolved": bool(resolved)}

    # ── kiro-cli conversations ───────────────────────────────────

    @app.get("/api/kiro/conversations")
    async def list_kiro_conversations(limit: int = 20) -> list[dict[str, Any]]:
        try:
            records = conversation_log.list_recent(limit=max(1, min(limit, 200)))
        except ConversationLogError as e:
            logger.warning(f"Failed to list kiro conversations: {e}")
            raise HTTPException(status_code=503, detail=str(e))
        return [
            {
                "key": r.key,
                "conversation_id": r.conversation_id,
                "model": r.default_model,
                "entries": len(r.history),
                "updated_at": r.updated_at,
            }
            for r in records
        ]

    # ── Events (Replay) ──────────────────────────────────────────

    @app.get("/api/sessions/{session_id}/events")
    async def get_session_events(session_id: str, since: int | None = None, since_seq: int | None = None) -> list[dict[str, Any]]:
        _require_session(session_id)
        return dispatcher.get_events_since(session_id=session_id, since_id=since, since_seq=since_seq)

    # ── SSE: Global Event Stream ──────────────────────────────────

    @app.get("/event")
    async def stream_events(request: Request, session_id: str | None = None, since: int | None = None):
        header_last_id = request.headers.get("last-event-id")
        initial_last_id: int | None = None
        if since is not None:
            initial_last_id = int(since)
        elif header_last_id:
            try:
                initial_last_id = int(header_last_id)
            except ValueError:
                initial_last_id = None

        return StreamingResponse(
            sse_event_stream(
                dispatcher,
                session_id=session_id,
                last_id=initial_last_id,
                wait_timeout_s=settings.sse_wait_timeout_s,
                is_disconnected=request.is_disconnected,
            ),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache, no-transform",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    return app
