"""Exception hierarchy for kiroweb.

Each failure mode of a session run has its own type so callers can decide what
is fatal. Message normalization never raises; it has no entry here.
"""
from __future__ import annotations


class KiroWebError(Exception):
    """Base exception for all kiroweb errors."""


class KiroBinaryNotFoundError(KiroWebError):
    """The kiro-cli executable could not be located."""
    def __init__(self, searched: list[str] | None = None):
        self.searched = list(searched or [])
        super().__init__("Could not find the kiro-cli binary on PATH or in /Applications.")


class WorkerSpawnError(KiroWebError):
    """The OS refused to launch the worker process."""
    def __init__(self, binary: str, reason: str):
        self.binary = binary
        self.reason = reason
        super().__init__(f"Failed to launch {binary}: {reason}")


class ConversationLogError(KiroWebError):
    """The kiro conversation store could not be read or written."""


class ConversationNotFoundError(ConversationLogError):
    """No conversation has been written for the given working directory yet."""
    def __init__(self, key: str):
        self.key = key
        super().__init__("No conversation history was written by kiro-cli.")


class SessionNotFoundError(KiroWebError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Unknown session: {session_id}")


class InvalidStatusTransition(KiroWebError):
    """A status change that the session state machine does not allow."""
    def __init__(self, session_id: str, current: str, requested: str):
        self.session_id = session_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Session {session_id} cannot move from {current} to {requested}"
        )
