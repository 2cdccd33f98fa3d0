"""Session entity and its status state machine."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.IDLE: frozenset({SessionStatus.RUNNING}),
    SessionStatus.RUNNING: frozenset({SessionStatus.COMPLETED, SessionStatus.ERROR, SessionStatus.IDLE}),
    SessionStatus.COMPLETED: frozenset({SessionStatus.RUNNING}),
    SessionStatus.ERROR: frozenset({SessionStatus.RUNNING}),
}


def can_transition(current: SessionStatus | str, requested: SessionStatus | str) -> bool:
    current = SessionStatus(current)
    requested = SessionStatus(requested)
    return current == requested or requested in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class PermissionResult:
    approved: bool
    message: str = ""


@dataclass
class Session:
    """One user-facing conversation backed by a single kiro-cli log."""
    id: str
    title: str
    cwd: str | None
    status: SessionStatus = SessionStatus.IDLE
    selected_model: str | None = None
    kiro_conversation_id: str | None = None
    kiro_history_cursor: int = 0
    last_prompt: str | None = None
    interactive: bool = False
    allowed_tools: str | None = None
    created_at: str = ""
    updated_at: str = ""
    pending_permissions: dict[str, asyncio.Future[PermissionResult]] = field(
        default_factory=dict, repr=False, compare=False
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "cwd": self.cwd,
            "status": self.status.value,
            "selected_model": self.selected_model,
            "kiro_conversation_id": self.kiro_conversation_id,
            "kiro_history_cursor": self.kiro_history_cursor,
            "last_prompt": self.last_prompt,
            "interactive": self.interactive,
            "allowed_tools": self.allowed_tools,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
