"""Human-in-the-loop permission correlation.

A pending request is keyed by the worker's tool-use id and lives on the
owning session's `pending_permissions` map as an asyncio future. It is
resolved exactly once: by a client decision, by timeout, or by session
deletion. Resolving something that is no longer pending is a no-op.

Workers launched with `--trust-all-tools` never ask for confirmation, so
nothing in the request path calls `create_request`/`wait` today. They are
the hook for a worker integration that surfaces tool-approval prompts (one
`create_request` when the prompt appears, then `wait` for the decision),
while `resolve` and `release_session` already serve client decisions and
session deletion.
"""

from __future__ import annotations

import asyncio
from typing import Any

from kiroweb.errors import SessionNotFoundError
from kiroweb.web.database import SessionStore
from kiroweb.web.models import PermissionResult


class PermissionManager:
    def __init__(self, *, store: SessionStore, timeout_s: float = 120.0):
        self._store = store
        self._timeout_s = timeout_s

    async def create_request(
        self,
        *,
        session_id: str,
        tool_use_id: str,
        tool_name: str,
        input_data: dict[str, Any] | None = None,
    ) -> asyncio.Future[PermissionResult]:
        session = self._store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        existing = session.pending_permissions.get(tool_use_id)
        if existing is not None and not existing.done():
            return existing

        self._store.create_permission_request(session_id, tool_use_id, tool_name, input_data or {})
        fut: asyncio.Future[PermissionResult] = asyncio.get_running_loop().create_future()
        session.pending_permissions[tool_use_id] = fut
        return fut

    async def wait(self, *, session_id: str, tool_use_id: str, timeout_s: float | None = None) -> PermissionResult:
        session = self._store.get_session(session_id)
        fut = session.pending_permissions.get(tool_use_id) if session else None
        if fut is None:
            return PermissionResult(approved=False, message="No pending permission request")
        try:
            return await asyncio.wait_for(asyncio.shield(fut), timeout=timeout_s or self._timeout_s)
        except asyncio.TimeoutError:
            self._finalize(session_id, tool_use_id, PermissionResult(approved=False, message="Permission request expired"), "expired")
            return PermissionResult(approved=False, message="Permission request expired")

    def resolve(self, *, session_id: str, tool_use_id: str, result: PermissionResult) -> bool:
        """Deliver a decision. Returns False when nothing was waiting."""
        return self._finalize(session_id, tool_use_id, result, "approved" if result.approved else "denied")

    def release_session(self, session_id: str) -> int:
        """Deny every pending request of a session; used before deleting it."""
        session = self._store.get_session(session_id)
        if session is None:
            return 0
        released = 0
        for tool_use_id in list(session.pending_permissions):
            if self._finalize(session_id, tool_use_id, PermissionResult(approved=False, message="Session deleted"), "cancelled"):
                released += 1
        return released

    def _finalize(self, session_id: str, tool_use_id: str, result: PermissionResult, status: str) -> bool:
        session = self._store.get_session(session_id)
        if session is None:
            return False
        fut = session.pending_permissions.pop(tool_use_id, None)
        if fut is None or fut.done():
            return False
        self._store.resolve_permission_request(session_id, tool_use_id, status)
        fut.set_result(result)
        return True
