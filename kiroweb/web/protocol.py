"""Server event protocol.

Every event a client can receive shares one envelope:
  { type, ts, payload }
and is built through one of the `evt_*` helpers below.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ServerEventType(str, Enum):
    SESSION_STATUS = "session.status"
    STREAM_MESSAGE = "stream.message"
    STREAM_USER_PROMPT = "stream.user_prompt"
    RUNNER_ERROR = "runner.error"
    SESSION_LIST = "session.list"
    SESSION_HISTORY = "session.history"
    SESSION_DELETED = "session.deleted"


@dataclass
class ServerEvent:
    type: ServerEventType
    payload: dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=time.time)

    @property
    def session_id(self) -> str:
        return str(self.payload.get("session_id") or "")

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "ts": self.ts, "payload": self.payload}


# ── Factory helpers ──────────────────────────────────────────────

def evt_session_status(
    session_id: str,
    status: str,
    *,
    title: str = "",
    cwd: str | None = None,
    error: str | None = None,
) -> ServerEvent:
    payload: dict[str, Any] = {"session_id": session_id, "status": str(status), "title": title, "cwd": cwd}
    if error:
        payload["error"] = error
    return ServerEvent(type=ServerEventType.SESSION_STATUS, payload=payload)


def evt_stream_message(session_id: str, message: dict[str, Any]) -> ServerEvent:
    return ServerEvent(
        type=ServerEventType.STREAM_MESSAGE,
        payload={"session_id": session_id, "message": message},
    )


def evt_user_prompt(session_id: str, prompt: str, *, message_uuid: str | None = None) -> ServerEvent:
    return ServerEvent(
        type=ServerEventType.STREAM_USER_PROMPT,
        payload={"session_id": session_id, "prompt": prompt, "uuid": message_uuid or str(uuid.uuid4())},
    )


def evt_runner_error(message: str, session_id: str | None = None) -> ServerEvent:
    payload: dict[str, Any] = {"message": message}
    if session_id:
        payload["session_id"] = session_id
    return ServerEvent(type=ServerEventType.RUNNER_ERROR, payload=payload)


def evt_session_list(sessions: list[dict[str, Any]]) -> ServerEvent:
    return ServerEvent(type=ServerEventType.SESSION_LIST, payload={"sessions": sessions})


def evt_session_history(session_id: str, status: str, messages: list[dict[str, Any]]) -> ServerEvent:
    return ServerEvent(
        type=ServerEventType.SESSION_HISTORY,
        payload={"session_id": session_id, "status": str(status), "messages": messages},
    )


def evt_session_deleted(session_id: str) -> ServerEvent:
    return ServerEvent(type=ServerEventType.SESSION_DELETED, payload={"session_id": session_id})


def stream_event_for(session_id: str, message: dict[str, Any]) -> ServerEvent:
    """User prompts travel as their own event type; everything else as stream.message."""
    if message.get("type") == "user_prompt":
        return evt_user_prompt(session_id, str(message.get("prompt") or ""), message_uuid=message.get("uuid"))
    return evt_stream_message(session_id, message)


def model_selection_message(session_id: str, *, model: str, interactive: bool, cwd: str) -> dict[str, Any]:
    """Synthetic system message announcing the model a run starts with."""
    msg_id = str(uuid.uuid4())
    return {
        "type": "system",
        "subtype": "meta",
        "uuid": msg_id,
        "session_id": session_id,
        "model": model,
        "permission_mode": "interactive" if interactive else "non-interactive",
        "cwd": cwd,
        "message": {
            "id": msg_id,
            "role": "system",
            "content": [{"type": "text", "text": f"**Model:** {model or 'unknown'}"}],
        },
    }
