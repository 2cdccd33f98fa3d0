"""Read side of kiro-cli's conversation store, plus cursor-based sync.

kiro-cli keeps one conversation per working directory in the SQLite table
`conversations_v2`; the `value` column holds a JSON document whose `history`
list grows by one entry per turn. This module only ever reads that store,
except for `ConversationLog.update_default_model`.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from kiroweb.errors import ConversationLogError, ConversationNotFoundError
from kiroweb.kiro.adapter import convert_history_entries
from kiroweb.kiro.process import default_data_path


@dataclass
class ConversationRecord:
    key: str
    conversation_id: str
    history: list[dict[str, Any]]
    raw: dict[str, Any]
    updated_at: Any = None

    @property
    def default_model(self) -> str | None:
        params = self.raw.get("default_params")
        if isinstance(params, dict) and isinstance(params.get("model"), str):
            return params["model"] or None
        return None


@dataclass
class SyncResult:
    messages: list[dict[str, Any]]
    cursor: int
    conversation_id: str


def _parse_row(row: sqlite3.Row | None) -> ConversationRecord | None:
    if row is None:
        return None
    try:
        parsed = json.loads(row["value"])
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse kiro conversation payload for {row['key']}: {e}")
        return None
    if not isinstance(parsed, dict):
        logger.warning(f"Kiro conversation payload for {row['key']} is not an object")
        return None
    history = parsed.get("history")
    return ConversationRecord(
        key=str(row["key"]),
        conversation_id=str(row["conversation_id"] or ""),
        history=history if isinstance(history, list) else [],
        raw=parsed,
        updated_at=row["updated_at"],
    )


class ConversationLog:
    """Owns the cached read-only handle to kiro-cli's data store.

    The handle lives until `invalidate()` (called after every write) or until
    the resolved data path changes.
    """

    def __init__(self, path_resolver: Callable[[], Path | None] | None = None):
        self._resolve_path = path_resolver or default_data_path
        self._conn: sqlite3.Connection | None = None
        self._conn_path: Path | None = None
        self._lock = threading.RLock()

    # ── Connection ────────────────────────────────────────────────

    def _read_conn(self) -> sqlite3.Connection | None:
        path = self._resolve_path()
        if path is None or not Path(path).is_file():
            return None
        path = Path(path)
        if self._conn is not None and self._conn_path == path:
            return self._conn
        self._close()
        try:
            conn = sqlite3.connect(f"{path.as_uri()}?mode=ro", uri=True, check_same_thread=False, timeout=5.0)
        except sqlite3.Error as e:
            raise ConversationLogError(f"Cannot open kiro data store {path}: {e}") from e
        conn.row_factory = sqlite3.Row
        self._conn = conn
        self._conn_path = path
        return conn

    def _close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except sqlite3.Error:
                logger.debug("closing cached kiro data store handle failed")
        self._conn = None
        self._conn_path = None

    def invalidate(self) -> None:
        with self._lock:
            self._close()

    # ── Reads ─────────────────────────────────────────────────────

    def load(self, key: str) -> ConversationRecord | None:
        """Conversation stored for `key`, or None if absent or unusable."""
        with self._lock:
            conn = self._read_conn()
            if conn is None:
                return None
            try:
                row = conn.execute(
                    "SELECT key, conversation_id, value, updated_at FROM conversations_v2 WHERE key = ?",
                    (key,),
                ).fetchone()
            except sqlite3.Error as e:
                raise ConversationLogError(f"Failed to read kiro conversation for {key}: {e}") from e
            return _parse_row(row)

    def list_recent(self, limit: int = 20) -> list[ConversationRecord]:
        with self._lock:
            conn = self._read_conn()
            if conn is None:
                return []
            try:
                rows = conn.execute(
                    "SELECT key, conversation_id, value, updated_at FROM conversations_v2 "
                    "ORDER BY updated_at DESC LIMIT ?",
                    (int(limit),),
                ).fetchall()
            except sqlite3.Error as e:
                raise ConversationLogError(f"Failed to list kiro conversations: {e}") from e
            return [rec for rec in (_parse_row(r) for r in rows) if rec is not None]

    # ── Writes ────────────────────────────────────────────────────

    def update_default_model(self, key: str, model: str) -> bool:
        """Rewrite `default_params.model` for one conversation.

        Read-modify-write runs inside BEGIN IMMEDIATE on a separate writable
        connection; the cached read handle is dropped afterwards.
        """
        path = self._resolve_path()
        if path is None or not model.strip() or not Path(path).is_file():
            return False

        conn: sqlite3.Connection | None = None
        try:
            conn = sqlite3.connect(str(path), timeout=30.0, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT key, value FROM conversations_v2 WHERE key = ?", (key,)).fetchone()
            if row is None:
                conn.execute("ROLLBACK")
                return False
            try:
                parsed = json.loads(row["value"])
            except (json.JSONDecodeError, TypeError):
                parsed = None
            if not isinstance(parsed, dict):
                conn.execute("ROLLBACK")
                return False
            params = parsed.get("default_params")
            params = dict(params) if isinstance(params, dict) else {}
            params["model"] = model
            parsed["default_params"] = params
            conn.execute(
                "UPDATE conversations_v2 SET value = ? WHERE key = ?",
                (json.dumps(parsed, ensure_ascii=False), key),
            )
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            logger.warning(f"Failed to update conversation model for {key}: {e}")
            if conn is not None and conn.in_transaction:
                conn.execute("ROLLBACK")
            return False
        finally:
            if conn is not None:
                conn.close()

        self.invalidate()
        return True


class ConversationSynchronizer:
    """Turns the unread suffix of a conversation into canonical messages."""

    def __init__(self, log: ConversationLog):
        self._log = log

    @property
    def log(self) -> ConversationLog:
        return self._log

    def sync(self, cwd: str, cursor: int, *, fallback_model: str | None = None) -> SyncResult:
        """Adapt `history[cursor:]` for the conversation keyed by `cwd`.

        The returned cursor is the full history length at read time, so an
        entry below the cursor is never adapted twice. Raises
        ConversationNotFoundError when kiro-cli has not written a log yet.
        """
        record = self._log.load(cwd)
        if record is None:
            raise ConversationNotFoundError(cwd)

        total = len(record.history)
        start = min(max(0, int(cursor or 0)), total)
        messages = convert_history_entries(
            record.history[start:],
            record.conversation_id,
            fallback_model=fallback_model,
        )
        return SyncResult(
            messages=messages,
            cursor=total,
            conversation_id=record.conversation_id,
        )
