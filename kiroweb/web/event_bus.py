"""Event dispatcher for kiroweb.

The dispatcher is:
- persistent: the matching store mutation (status change, message append) and
  the event record itself are written before anyone is told about the event
- ordered: publishes are serialized, so every listener sees events in the
  order they were published
- realtime: SSE subscribers wait on an asyncio.Condition and read the
  persisted event log on wakeups
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any, Awaitable, Callable

from loguru import logger

from kiroweb.errors import InvalidStatusTransition
from kiroweb.web.database import SessionStore
from kiroweb.web.protocol import ServerEvent, ServerEventType

Listener = Callable[[ServerEvent], Awaitable[None] | None]


class EventDispatcher:
    def __init__(self, store: SessionStore):
        self._store = store
        self._listeners: list[Listener] = []
        self._listeners_lock = threading.Lock()
        self._publish_lock = asyncio.Lock()
        self._cond = asyncio.Condition()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it again."""
        with self._listeners_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _apply(self, event: ServerEvent) -> None:
        payload = event.payload
        session_id = event.session_id
        if event.type == ServerEventType.SESSION_STATUS:
            self._store.update_session(session_id, status=payload["status"])
        elif event.type == ServerEventType.STREAM_MESSAGE:
            self._store.record_message(session_id, payload["message"])
        elif event.type == ServerEventType.STREAM_USER_PROMPT:
            self._store.record_message(session_id, {"type": "user_prompt", "prompt": payload["prompt"], "uuid": payload["uuid"]})

    async def publish(self, event: ServerEvent) -> dict[str, Any] | None:
        """Persist, then fan out. Returns the stored envelope, or None if rejected."""
        async with self._publish_lock:
            # session.deleted outlives its session, so it is logged globally
            log_session_id = event.session_id
            if event.type == ServerEventType.SESSION_DELETED:
                log_session_id = ""
            elif log_session_id and not self._store.session_exists(log_session_id):
                logger.debug(f"Dropping {event.type.value} event for deleted session {log_session_id}")
                return None

            try:
                self._apply(event)
            except InvalidStatusTransition as e:
                logger.warning(f"Dropping {event.type.value} event: {e}")
                return None

            envelope = self._store.insert_event(
                session_id=log_session_id,
                evt_type=event.type.value,
                ts=event.ts,
                payload=event.payload,
            )

            with self._listeners_lock:
                listeners = list(self._listeners)
            for listener in listeners:
                try:
                    result = listener(event)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception:
                    logger.exception("Server event listener failed")

        async with self._cond:
            self._cond.notify_all()
        return envelope

    async def wait_for_new(self, timeout_s: float) -> bool:
        try:
            async with self._cond:
                await asyncio.wait_for(self._cond.wait(), timeout=timeout_s)
            return True
        except asyncio.TimeoutError:
            return False

    def get_events_since(
        self,
        *,
        session_id: str | None,
        since_id: int | None,
        since_seq: int | None = None,
        limit: int = 2000,
    ) -> list[dict[str, Any]]:
        return self._store.get_events(session_id=session_id, since_id=since_id, since_seq=since_seq, limit=limit)
