"""Client request handling.

`SessionController.handle_client_event` is the single entry point for client
requests (`session.list`, `session.history`, `session.start`,
`session.continue`, `session.stop`, `session.delete`, `permission.response`).
It owns the map of active runs; start/continue/stop/delete are expected to be
serialized per session by the caller.
"""

from __future__ import annotations

import os
from typing import Any

from loguru import logger

from kiroweb.errors import ConversationLogError, ConversationNotFoundError
from kiroweb.kiro.conversation import ConversationSynchronizer
from kiroweb.kiro.process import generate_session_title, normalize_working_directory
from kiroweb.web.database import SessionStore
from kiroweb.web.event_bus import EventDispatcher
from kiroweb.web.models import PermissionResult, Session, SessionStatus
from kiroweb.web.permissions import PermissionManager
from kiroweb.web.protocol import (
    evt_runner_error,
    evt_session_deleted,
    evt_session_history,
    evt_session_list,
    evt_session_status,
    evt_user_prompt,
)
from kiroweb.web.runner import KiroRun, KiroRunner
from kiroweb.web.settings import KiroWebSettings


class SessionController:
    def __init__(
        self,
        *,
        store: SessionStore,
        dispatcher: EventDispatcher,
        synchronizer: ConversationSynchronizer,
        permissions: PermissionManager,
        runner: KiroRunner,
        settings: KiroWebSettings,
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._synchronizer = synchronizer
        self._permissions = permissions
        self._runner = runner
        self._settings = settings
        self._runs: dict[str, KiroRun] = {}

    def active_run(self, session_id: str) -> KiroRun | None:
        run = self._runs.get(session_id)
        if run is not None and run.done:
            self._runs.pop(session_id, None)
            return None
        return run

    # ── Hydration ─────────────────────────────────────────────────

    def hydrate_session(self, session: Session | None) -> bool:
        """Rebuild a session's history from the kiro log, if it has one.

        Skipped while a run is active, since the live poll loop owns the
        cursor then.
        """
        if session is None or not session.cwd or self.active_run(session.id) is not None:
            return False
        cwd = normalize_working_directory(session.cwd)
        if not cwd:
            return False
        try:
            result = self._synchronizer.sync(cwd, 0, fallback_model=session.selected_model)
        except ConversationNotFoundError:
            return False
        except ConversationLogError as e:
            logger.warning(f"Failed to hydrate session {session.id}: {e}")
            return False
        self._store.replace_session_messages(session.id, result.messages)
        self._store.update_session(
            session.id,
            kiro_conversation_id=result.conversation_id,
            kiro_history_cursor=result.cursor,
        )
        return True

    # ── Dispatch ──────────────────────────────────────────────────

    async def handle_client_event(self, event: dict[str, Any]) -> Any:
        evt_type = event.get("type")
        payload = event.get("payload") or {}
        handler = {
            "session.list": self._list_sessions,
            "session.history": self._session_history,
            "session.start": self._start_session,
            "session.continue": self._continue_session,
            "session.stop": self._stop_session,
            "session.delete": self._delete_session,
            "permission.response": self._permission_response,
        }.get(str(evt_type))
        if handler is None:
            logger.warning(f"Ignoring unknown client event type: {evt_type}")
            return None
        return await handler(payload)

    async def _list_sessions(self, payload: dict[str, Any]) -> None:
        for session in self._store.list_sessions():
            self.hydrate_session(session)
        await self._dispatcher.publish(evt_session_list([s.to_dict() for s in self._store.list_sessions()]))

    async def _session_history(self, payload: dict[str, Any]) -> None:
        session_id = str(payload.get("session_id") or "")
        self.hydrate_session(self._store.get_session(session_id))
        history = self._store.get_session_history(session_id)
        if history is None:
            await self._dispatcher.publish(evt_runner_error("Unknown session"))
            return
        session = history["session"]
        await self._dispatcher.publish(evt_session_history(session.id, session.status.value, history["messages"]))

    async def _start_session(self, payload: dict[str, Any]) -> Session:
        prompt = str(payload.get("prompt") or "")
        cwd = (
            normalize_working_directory(payload.get("cwd"))
            or normalize_working_directory(self._settings.default_cwd)
            or os.getcwd()
        )
        session = self._store.create_session(
            cwd=cwd,
            title=str(payload.get("title") or "").strip() or generate_session_title(prompt),
            prompt=prompt,
            interactive=bool(payload.get("interactive")),
            allowed_tools=payload.get("allowed_tools"),
        )
        await self._launch(session, prompt)
        return session

    async def _continue_session(self, payload: dict[str, Any]) -> str | None:
        """Resume the session's conversation; returns the rejection reason, if any."""
        session_id = str(payload.get("session_id") or "")
        session = self._store.get_session(session_id)
        if session is None:
            await self._dispatcher.publish(evt_runner_error("Unknown session"))
            return "Unknown session"
        if not session.kiro_conversation_id:
            await self._dispatcher.publish(evt_runner_error("Session has no resume id yet.", session_id=session.id))
            return "Session has no resume id yet."
        if self.active_run(session.id) is not None:
            await self._dispatcher.publish(evt_runner_error("Session is already running.", session_id=session.id))
            return "Session is already running."

        if payload.get("interactive") is not None:
            self._store.update_session(session.id, interactive=bool(payload["interactive"]))
        await self._launch(session, str(payload.get("prompt") or ""), resume=True)
        return None

    async def _launch(self, session: Session, prompt: str, *, resume: bool = False) -> None:
        self._store.update_session(session.id, status=SessionStatus.RUNNING, last_prompt=prompt)
        await self._dispatcher.publish(
            evt_session_status(session.id, SessionStatus.RUNNING.value, title=session.title, cwd=session.cwd)
        )
        await self._dispatcher.publish(evt_user_prompt(session.id, prompt))

        model = self._settings.resolved_model()
        if session.selected_model and session.selected_model != model and session.cwd:
            self._synchronizer.log.update_default_model(session.cwd, model)
        self._store.update_session(session.id, selected_model=model)

        try:
            run = await self._runner.start(
                session,
                prompt,
                model=model,
                resume=resume,
                on_finished=self._forget_run,
            )
        except Exception as e:
            logger.exception(f"Failed to start kiro-cli for session {session.id}")
            await self._dispatcher.publish(
                evt_session_status(
                    session.id,
                    SessionStatus.ERROR.value,
                    title=session.title,
                    cwd=session.cwd,
                    error=str(e),
                )
            )
            return
        if not run.done:
            self._runs[session.id] = run

    def _forget_run(self, run: KiroRun) -> None:
        if self._runs.get(run.session.id) is run:
            self._runs.pop(run.session.id, None)

    async def _stop_session(self, payload: dict[str, Any]) -> None:
        session = self._store.get_session(str(payload.get("session_id") or ""))
        if session is None:
            return
        run = self._runs.pop(session.id, None)
        if run is not None:
            run.abort()
        if session.status != SessionStatus.RUNNING:
            return
        await self._dispatcher.publish(
            evt_session_status(session.id, SessionStatus.IDLE.value, title=session.title, cwd=session.cwd)
        )

    async def _delete_session(self, payload: dict[str, Any]) -> None:
        session_id = str(payload.get("session_id") or "")
        run = self._runs.pop(session_id, None)
        if run is not None:
            run.abort()
        self._permissions.release_session(session_id)
        self._store.delete_session(session_id)
        await self._dispatcher.publish(evt_session_deleted(session_id))

    async def _permission_response(self, payload: dict[str, Any]) -> bool:
        session_id = str(payload.get("session_id") or "")
        tool_use_id = str(payload.get("tool_use_id") or "")
        result = payload.get("result") or {}
        if isinstance(result, PermissionResult):
            decision = result
        else:
            decision = PermissionResult(
                approved=str(result.get("behavior", "deny")) == "allow",
                message=str(result.get("message") or ""),
            )
        return self._permissions.resolve(session_id=session_id, tool_use_id=tool_use_id, result=decision)

    def shutdown(self) -> None:
        """Interrupt every active worker; called when the server stops."""
        for session_id, run in list(self._runs.items()):
            logger.info(f"Stopping kiro-cli for session {session_id}")
            run.abort()
        self._runs.clear()
