"""SQLite session store: sessions, their canonical message history, pending
permission requests and the persisted server-event log used for SSE replay.

Live `Session` objects are cached per id so that runtime-only state (pending
permission waiters) and persisted fields are always read from one object.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger

from kiroweb.errors import InvalidStatusTransition
from kiroweb.web.models import Session, SessionStatus, can_transition


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# Columns that update_session may touch.
_UPDATABLE = (
    "title",
    "cwd",
    "status",
    "selected_model",
    "kiro_conversation_id",
    "kiro_history_cursor",
    "last_prompt",
    "interactive",
    "allowed_tools",
)


def _decode_json(raw: Any, default: Any) -> Any:
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return default


class SessionStore:
    """Thread-safe SQLite DAO for sessions and their history."""

    def __init__(self, db_path: str | Path):
        self._db_path = str(db_path)
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._live: dict[str, Session] = {}
        self._ensure_schema()

    # ── Connection ────────────────────────────────────────────────

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False, timeout=30.0)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute("PRAGMA busy_timeout=30000")
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _ensure_schema(self) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    id                   TEXT PRIMARY KEY,
                    title                TEXT NOT NULL DEFAULT 'New Session',
                    cwd                  TEXT,
                    status               TEXT NOT NULL DEFAULT 'idle',
                    selected_model       TEXT,
                    kiro_conversation_id TEXT,
                    kiro_history_cursor  INTEGER NOT NULL DEFAULT 0,
                    last_prompt          TEXT,
                    interactive          INTEGER NOT NULL DEFAULT 0,
                    allowed_tools        TEXT,
                    created_at           TEXT NOT NULL,
                    updated_at           TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS messages (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id  TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                    data_json   TEXT NOT NULL,
                    created_at  TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, id);

                CREATE TABLE IF NOT EXISTS permission_requests (
                    id          TEXT PRIMARY KEY,
                    session_id  TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                    tool_use_id TEXT NOT NULL,
                    tool_name   TEXT NOT NULL,
                    input_json  TEXT NOT NULL DEFAULT '{}',
                    status      TEXT NOT NULL DEFAULT 'pending',
                    created_at  TEXT NOT NULL,
                    resolved_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_permission_requests_session ON permission_requests(session_id, created_at);

                CREATE TABLE IF NOT EXISTS events (
                    id           INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id   TEXT NOT NULL DEFAULT '',
                    seq          INTEGER NOT NULL,
                    ts           REAL NOT NULL,
                    type         TEXT NOT NULL,
                    payload_json TEXT NOT NULL DEFAULT '{}'
                );
                CREATE UNIQUE INDEX IF NOT EXISTS idx_events_session_seq ON events(session_id, seq);
                CREATE INDEX IF NOT EXISTS idx_events_session_id ON events(session_id, id);
                """
            )
            conn.commit()

    # ── Sessions ──────────────────────────────────────────────────

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> Session:
        return Session(
            id=str(row["id"]),
            title=str(row["title"]),
            cwd=row["cwd"],
            status=SessionStatus(row["status"]),
            selected_model=row["selected_model"],
            kiro_conversation_id=row["kiro_conversation_id"],
            kiro_history_cursor=int(row["kiro_history_cursor"] or 0),
            last_prompt=row["last_prompt"],
            interactive=bool(row["interactive"]),
            allowed_tools=row["allowed_tools"],
            created_at=str(row["created_at"]),
            updated_at=str(row["updated_at"]),
        )

    def create_session(
        self,
        *,
        cwd: str | None,
        title: str = "New Session",
        prompt: str | None = None,
        interactive: bool = False,
        allowed_tools: str | None = None,
        selected_model: str | None = None,
    ) -> Session:
        with self._lock:
            now = _now_iso()
            session = Session(
                id=str(uuid.uuid4()),
                title=title,
                cwd=cwd,
                last_prompt=prompt,
                interactive=interactive,
                allowed_tools=allowed_tools,
                selected_model=selected_model,
                created_at=now,
                updated_at=now,
            )
            conn = self._get_conn()
            conn.execute(
                "INSERT INTO sessions (id, title, cwd, status, selected_model, last_prompt, interactive, "
                "allowed_tools, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    session.id,
                    title,
                    cwd,
                    session.status.value,
                    selected_model,
                    prompt,
                    1 if interactive else 0,
                    allowed_tools,
                    now,
                    now,
                ),
            )
            conn.commit()
            self._live[session.id] = session
            return session

    def get_session(self, session_id: str) -> Session | None:
        with self._lock:
            live = self._live.get(session_id)
            if live is not None:
                return live
            row = self._get_conn().execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
            if not row:
                return None
            session = self._row_to_session(row)
            self._live[session.id] = session
            return session

    def list_sessions(self) -> list[Session]:
        with self._lock:
            rows = self._get_conn().execute("SELECT id FROM sessions ORDER BY updated_at DESC").fetchall()
            sessions = [self.get_session(str(r["id"])) for r in rows]
            return [s for s in sessions if s is not None]

    def session_exists(self, session_id: str) -> bool:
        return self.get_session(session_id) is not None

    def update_session(self, session_id: str, **fields: Any) -> Session | None:
        """Merge the given fields into one session.

        Only the supplied columns are written, so concurrent updates to
        different fields never overwrite each other. Status changes must follow
        the session state machine; a conversation id, once set, is kept.
        """
        unknown = set(fields) - set(_UPDATABLE)
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")

        with self._lock:
            session = self.get_session(session_id)
            if session is None:
                return None

            if "status" in fields:
                requested = SessionStatus(fields["status"])
                if not can_transition(session.status, requested):
                    raise InvalidStatusTransition(session_id, session.status.value, requested.value)
                fields["status"] = requested

            conv_id = fields.get("kiro_conversation_id")
            if conv_id is not None and session.kiro_conversation_id and conv_id != session.kiro_conversation_id:
                logger.warning(
                    f"Session {session_id} is bound to conversation {session.kiro_conversation_id}; ignoring {conv_id}"
                )
                fields.pop("kiro_conversation_id")

            if not fields:
                return session

            columns: list[str] = []
            params: list[Any] = []
            for name, value in fields.items():
                columns.append(f"{name} = ?")
                if isinstance(value, SessionStatus):
                    params.append(value.value)
                elif name == "interactive":
                    params.append(1 if value else 0)
                else:
                    params.append(value)
            now = _now_iso()
            columns.append("updated_at = ?")
            params.append(now)

            conn = self._get_conn()
            conn.execute(f"UPDATE sessions SET {', '.join(columns)} WHERE id = ?", (*params, session_id))
            conn.commit()

            for name, value in fields.items():
                setattr(session, name, bool(value) if name == "interactive" else value)
            session.updated_at = now
            return session

    def delete_session(self, session_id: str) -> bool:
        """Remove a session with its history, permission requests and events."""
        with self._lock:
            conn = self._get_conn()
            try:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
                conn.execute("DELETE FROM permission_requests WHERE session_id = ?", (session_id,))
                conn.execute("DELETE FROM events WHERE session_id = ?", (session_id,))
                cur = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            self._live.pop(session_id, None)
            return cur.rowcount > 0

    # ── Messages ──────────────────────────────────────────────────

    def record_message(self, session_id: str, message: dict[str, Any]) -> None:
        with self._lock:
            if not self.session_exists(session_id):
                return
            conn = self._get_conn()
            now = _now_iso()
            conn.execute(
                "INSERT INTO messages (session_id, data_json, created_at) VALUES (?, ?, ?)",
                (session_id, json.dumps(message, ensure_ascii=False), now),
            )
            conn.execute("UPDATE sessions SET updated_at = ? WHERE id = ?", (now, session_id))
            conn.commit()
            self._live[session_id].updated_at = now

    def replace_session_messages(self, session_id: str, messages: list[dict[str, Any]]) -> None:
        """Swap the whole stored history in one transaction."""
        with self._lock:
            if not self.session_exists(session_id):
                return
            conn = self._get_conn()
            now = _now_iso()
            try:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
                conn.executemany(
                    "INSERT INTO messages (session_id, data_json, created_at) VALUES (?, ?, ?)",
                    [(session_id, json.dumps(m, ensure_ascii=False), now) for m in messages],
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def get_messages(self, session_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT data_json FROM messages WHERE session_id = ? ORDER BY id ASC",
                (session_id,),
            ).fetchall()
            return [_decode_json(r["data_json"], {}) for r in rows]

    def get_session_history(self, session_id: str) -> dict[str, Any] | None:
        with self._lock:
            session = self.get_session(session_id)
            if session is None:
                return None
            return {"session": session, "messages": self.get_messages(session_id)}

    # ── Permission requests ───────────────────────────────────────

    def create_permission_request(
        self,
        session_id: str,
        tool_use_id: str,
        tool_name: str,
        input_data: dict[str, Any],
    ) -> dict[str, Any]:
        with self._lock:
            pr_id = f"pr_{uuid.uuid4().hex[:12]}"
            now = _now_iso()
            conn = self._get_conn()
            conn.execute(
                "INSERT INTO permission_requests (id, session_id, tool_use_id, tool_name, input_json, status, created_at) "
                "VALUES (?, ?, ?, ?, ?, 'pending', ?)",
                (pr_id, session_id, tool_use_id, tool_name, json.dumps(input_data, ensure_ascii=False), now),
            )
            conn.commit()
            return {"id": pr_id, "tool_use_id": tool_use_id, "status": "pending", "created_at": now}

    def resolve_permission_request(self, session_id: str, tool_use_id: str, status: str) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                "UPDATE permission_requests SET status = ?, resolved_at = ? "
                "WHERE session_id = ? AND tool_use_id = ? AND status = 'pending'",
                (status, _now_iso(), session_id, tool_use_id),
            )
            conn.commit()

    def list_pending_permission_requests(self, session_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT * FROM permission_requests WHERE session_id = ? AND status = 'pending' ORDER BY created_at ASC",
                (session_id,),
            ).fetchall()
            out: list[dict[str, Any]] = []
            for r in rows:
                d = dict(r)
                d["input"] = _decode_json(d.pop("input_json", "{}"), {})
                out.append(d)
            return out

    # ── Events ────────────────────────────────────────────────────

    def _next_session_seq(self, conn: sqlite3.Connection, session_id: str) -> int:
        row = conn.execute(
            "SELECT COALESCE(MAX(seq), 0) AS m FROM events WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        return int(row["m"] if row else 0) + 1

    def insert_event(self, session_id: str, evt_type: str, ts: float, payload: dict[str, Any]) -> dict[str, Any]:
        """Persist a server event and return its envelope (with id + seq)."""
        with self._lock:
            conn = self._get_conn()
            payload_json = json.dumps(payload, ensure_ascii=False, default=str)
            for _attempt in range(3):
                try:
                    conn.execute("BEGIN IMMEDIATE")
                    seq = self._next_session_seq(conn, session_id)
                    cur = conn.execute(
                        "INSERT INTO events (session_id, seq, ts, type, payload_json) VALUES (?, ?, ?, ?, ?)",
                        (session_id, seq, float(ts), evt_type, payload_json),
                    )
                    conn.commit()
                    return {
                        "id": int(cur.lastrowid),
                        "seq": seq,
                        "ts": float(ts),
                        "type": evt_type,
                        "session_id": session_id,
                        "payload": payload,
                    }
                except sqlite3.IntegrityError:
                    conn.rollback()
                    continue
                except Exception:
                    conn.rollback()
                    raise
            raise sqlite3.IntegrityError("failed to allocate per-session event seq")

    def get_events(
        self,
        session_id: str | None = None,
        since_id: int | None = None,
        since_seq: int | None = None,
        limit: int = 2000,
    ) -> list[dict[str, Any]]:
        """Persisted events after a global id or per-session seq (exclusive)."""
        with self._lock:
            where: list[str] = []
            params: list[Any] = []
            if session_id:
                where.append("session_id = ?")
                params.append(session_id)
            if since_id is not None:
                where.append("id > ?")
                params.append(int(since_id))
            elif since_seq is not None and session_id:
                where.append("seq > ?")
                params.append(int(since_seq))
            where_sql = "WHERE " + " AND ".join(where) if where else ""
            rows = self._get_conn().execute(
                f"SELECT * FROM events {where_sql} ORDER BY id ASC LIMIT ?",
                (*params, int(limit)),
            ).fetchall()
            out: list[dict[str, Any]] = []
            for r in rows:
                d = dict(r)
                d["payload"] = _decode_json(d.pop("payload_json", "{}"), {})
                out.append(d)
            return out
