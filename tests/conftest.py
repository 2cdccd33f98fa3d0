from __future__ import annotations

import json
import os
import sqlite3
from pathlib import Path
from typing import Any

import pytest

from kiroweb.kiro.conversation import ConversationLog, ConversationSynchronizer
from kiroweb.web.database import SessionStore
from kiroweb.web.event_bus import EventDispatcher
from kiroweb.web.settings import KiroWebSettings


class KiroDataStore:
    """Throwaway stand-in for kiro-cli's data.sqlite3."""

    def __init__(self, path: Path):
        self.path = path
        conn = sqlite3.connect(str(path))
        conn.execute(
            "CREATE TABLE IF NOT EXISTS conversations_v2 ("
            "key TEXT PRIMARY KEY, conversation_id TEXT NOT NULL, value TEXT NOT NULL, "
            "created_at INTEGER NOT NULL DEFAULT 0, updated_at INTEGER NOT NULL DEFAULT 0)"
        )
        conn.commit()
        conn.close()
        self._clock = 0

    def put_raw(self, key: str, value: str, *, conversation_id: str = "conv-1") -> None:
        self._clock += 1
        conn = sqlite3.connect(str(self.path))
        conn.execute(
            "INSERT INTO conversations_v2 (key, conversation_id, value, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET conversation_id = excluded.conversation_id, "
            "value = excluded.value, updated_at = excluded.updated_at",
            (key, conversation_id, value, self._clock, self._clock),
        )
        conn.commit()
        conn.close()

    def put(
        self,
        key: str,
        history: list[dict[str, Any]],
        *,
        conversation_id: str = "conv-1",
        model: str | None = None,
    ) -> None:
        value: dict[str, Any] = {"conversation_id": conversation_id, "history": history}
        if model:
            value["default_params"] = {"model": model}
        self.put_raw(key, json.dumps(value), conversation_id=conversation_id)

    def value(self, key: str) -> dict[str, Any]:
        conn = sqlite3.connect(str(self.path))
        try:
            row = conn.execute("SELECT value FROM conversations_v2 WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        return json.loads(row[0])


def prompt_entry(text: str, message_id: str | None = None, **metadata: Any) -> dict[str, Any]:
    meta = dict(metadata)
    if message_id:
        meta["message_id"] = message_id
    return {"user": {"content": {"Prompt": {"prompt": text}}}, "request_metadata": meta}


def response_entry(text: Any, message_id: str | None = None, **metadata: Any) -> dict[str, Any]:
    response: dict[str, Any] = {"content": text}
    if message_id:
        response["message_id"] = message_id
    return {"assistant": {"Response": response}, "request_metadata": dict(metadata)}


@pytest.fixture
def project_dir(tmp_path) -> str:
    p = tmp_path / "project"
    p.mkdir()
    return str(p.resolve())


@pytest.fixture
def kiro_data(tmp_path) -> KiroDataStore:
    return KiroDataStore(tmp_path / "kiro-data.sqlite3")


@pytest.fixture
def conversation_log(kiro_data) -> ConversationLog:
    log = ConversationLog(lambda: kiro_data.path)
    yield log
    log.invalidate()


@pytest.fixture
def synchronizer(conversation_log) -> ConversationSynchronizer:
    return ConversationSynchronizer(conversation_log)


@pytest.fixture
def store(tmp_path) -> SessionStore:
    s = SessionStore(tmp_path / "data" / "sessions.db")
    yield s
    s.close()


@pytest.fixture
def dispatcher(store) -> EventDispatcher:
    return EventDispatcher(store)


@pytest.fixture
def fake_kiro(tmp_path):
    """Write an executable /bin/sh script that stands in for kiro-cli."""

    def _make(body: str, name: str = "kiro-cli") -> str:
        script = tmp_path / "bin" / name
        script.parent.mkdir(exist_ok=True)
        script.write_text(f"#!/bin/sh\n{body}\n")
        os.chmod(script, 0o755)
        return str(script)

    return _make


@pytest.fixture
def make_settings(tmp_path, kiro_data, project_dir):
    def _make(**overrides: Any) -> KiroWebSettings:
        values: dict[str, Any] = {
            "data_dir": str(tmp_path / "data"),
            "kiro_data_path": str(kiro_data.path),
            "kiro_cli_path": str(tmp_path / "bin" / "missing-kiro-cli"),
            "default_cwd": project_dir,
            "poll_interval_s": 0.05,
            "sse_wait_timeout_s": 0.2,
        }
        values.update(overrides)
        return KiroWebSettings(**values)

    return _make
