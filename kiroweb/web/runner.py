"""kiro-cli session runner.

One `KiroRun` owns one worker process. While the process lives, a poll loop
re-reads kiro-cli's conversation store every `poll_interval_s` and publishes
whatever entries appeared since the session's cursor. The worker's own
stdout/stderr are only logged; the conversation store is the single source
of messages. The prompt a run was launched with is published by the caller
before the run starts, so its first copy in the log is not published again.

When the process exits, a one-shot close guard stops polling, runs one last
sync (which must find a log) and publishes exactly one terminal status,
unless the run was aborted, in which case no terminal status is published.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from typing import Any, Callable

from loguru import logger

from kiroweb.errors import ConversationNotFoundError, KiroBinaryNotFoundError, WorkerSpawnError
from kiroweb.kiro.conversation import ConversationSynchronizer
from kiroweb.kiro.process import build_chat_args, enhanced_env, normalize_working_directory, resolve_kiro_binary
from kiroweb.web.database import SessionStore
from kiroweb.web.event_bus import EventDispatcher
from kiroweb.web.models import Session, SessionStatus
from kiroweb.web.protocol import (
    evt_runner_error,
    evt_session_status,
    evt_stream_message,
    model_selection_message,
    stream_event_for,
)
from kiroweb.web.settings import KiroWebSettings


def _exit_message(returncode: int | None) -> str:
    if returncode is None:
        return "kiro-cli exited with code unknown"
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f"kiro-cli was terminated by signal {name}"
    return f"kiro-cli exited with code {returncode}"


class KiroRun:
    """Handle for one worker process and its poll loop."""

    def __init__(
        self,
        *,
        session: Session,
        cwd: str,
        model: str,
        prompt: str = "",
        store: SessionStore,
        dispatcher: EventDispatcher,
        synchronizer: ConversationSynchronizer,
        poll_interval_s: float,
        on_finished: Callable[[KiroRun], None] | None = None,
    ):
        self.session = session
        self.cwd = cwd
        self.model = model
        self._echo_prompt = prompt.strip() or None
        self._store = store
        self._dispatcher = dispatcher
        self._synchronizer = synchronizer
        self._poll_interval_s = poll_interval_s
        self._on_finished = on_finished

        self._process: asyncio.subprocess.Process | None = None
        self._stop_polling = asyncio.Event()
        self._poll_task: asyncio.Task[None] | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._closed = False
        self._aborted = False

    @property
    def done(self) -> bool:
        return self._closed and (self._watch_task is None or self._watch_task.done())

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    # ── Lifecycle ─────────────────────────────────────────────────

    def attach(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self._poll_task = asyncio.create_task(self._poll_loop())
        self._watch_task = asyncio.create_task(self._watch())

    async def fail(self, message: str) -> None:
        """Terminal failure before any process exists."""
        self._closed = True
        await self._emit_error(message)
        self._finish()

    def abort(self) -> None:
        """Interrupt the worker; suppresses this run's terminal status."""
        if self._closed:
            return
        self._aborted = True
        self._stop_polling.set()
        if self._process is None or self._process.returncode is not None:
            return
        try:
            if sys.platform == "win32":
                self._process.terminate()
            else:
                self._process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            logger.debug(f"kiro-cli for session {self.session.id} already exited")

    async def wait(self) -> None:
        if self._watch_task is not None:
            await asyncio.shield(self._watch_task)

    def _finish(self) -> None:
        if self._on_finished is not None:
            try:
                self._on_finished(self)
            except Exception:
                logger.exception("runner finish callback failed")

    # ── Sync ──────────────────────────────────────────────────────

    async def sync(self, *, required: bool) -> bool:
        """Publish log entries past the session cursor; True if any were new."""
        try:
            result = self._synchronizer.sync(
                self.cwd,
                self.session.kiro_history_cursor,
                fallback_model=self.model,
            )
        except ConversationNotFoundError:
            if required:
                raise
            return False

        for message in result.messages:
            if self._is_prompt_echo(message):
                continue
            await self._dispatcher.publish(stream_event_for(self.session.id, message))

        self._store.update_session(
            self.session.id,
            kiro_conversation_id=result.conversation_id,
            kiro_history_cursor=result.cursor,
        )
        return bool(result.messages)

    def _is_prompt_echo(self, message: dict[str, Any]) -> bool:
        if self._echo_prompt is None or message.get("type") != "user_prompt":
            return False
        if str(message.get("prompt") or "").strip() != self._echo_prompt:
            return False
        self._echo_prompt = None
        return True

    async def _poll_loop(self) -> None:
        while not self._stop_polling.is_set():
            try:
                await asyncio.wait_for(self._stop_polling.wait(), timeout=self._poll_interval_s)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.sync(required=False)
            except Exception as e:
                logger.warning(f"Failed to sync kiro conversation for session {self.session.id}: {e}")

    # ── Process ───────────────────────────────────────────────────

    async def _drain(self, stream: asyncio.StreamReader | None, level: str) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace").strip()
            if text:
                logger.log(level, f"[kiro-cli] {text}")

    async def _watch(self) -> None:
        assert self._process is not None
        try:
            await asyncio.gather(
                self._drain(self._process.stdout, "INFO"),
                self._drain(self._process.stderr, "WARNING"),
                return_exceptions=True,
            )
            returncode = await self._process.wait()
            await self._on_close(returncode)
        finally:
            self._finish()

    async def _on_close(self, returncode: int | None) -> None:
        if self._closed:
            return
        self._closed = True

        self._stop_polling.set()
        if self._poll_task is not None:
            await asyncio.gather(self._poll_task, return_exceptions=True)

        try:
            await self.sync(required=True)
        except Exception as e:
            if self._aborted:
                logger.info(f"Final sync after abort for session {self.session.id} failed: {e}")
                return
            await self._emit_error(str(e) or "Failed to read kiro-cli conversation log.")
            return

        if self._aborted:
            return

        if returncode == 0:
            await self._publish_status(SessionStatus.COMPLETED)
        else:
            await self._publish_status(SessionStatus.ERROR, error=_exit_message(returncode))

    # ── Events ────────────────────────────────────────────────────

    async def _publish_status(self, status: SessionStatus, error: str | None = None) -> None:
        await self._dispatcher.publish(
            evt_session_status(
                self.session.id,
                status.value,
                title=self.session.title,
                cwd=self.session.cwd,
                error=error,
            )
        )

    async def _emit_error(self, message: str) -> None:
        await self._dispatcher.publish(evt_runner_error(message, session_id=self.session.id))
        await self._publish_status(SessionStatus.ERROR, error=message)


class KiroRunner:
    """Spawns kiro-cli for a session and wires it to the store and dispatcher."""

    def __init__(
        self,
        *,
        store: SessionStore,
        dispatcher: EventDispatcher,
        synchronizer: ConversationSynchronizer,
        settings: KiroWebSettings,
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._synchronizer = synchronizer
        self._settings = settings

    def _working_directory(self, session: Session) -> str:
        return (
            normalize_working_directory(session.cwd)
            or normalize_working_directory(self._settings.default_cwd)
            or os.getcwd()
        )

    async def start(
        self,
        session: Session,
        prompt: str,
        *,
        model: str,
        resume: bool = False,
        on_finished: Callable[[KiroRun], None] | None = None,
    ) -> KiroRun:
        cwd = self._working_directory(session)
        run = KiroRun(
            session=session,
            cwd=cwd,
            model=model,
            prompt=prompt,
            store=self._store,
            dispatcher=self._dispatcher,
            synchronizer=self._synchronizer,
            poll_interval_s=self._settings.poll_interval_s,
            on_finished=on_finished,
        )

        try:
            binary = resolve_kiro_binary(self._settings.kiro_cli_path)
        except KiroBinaryNotFoundError as e:
            await run.fail(str(e))
            return run

        args = build_chat_args(
            prompt=prompt,
            interactive=session.interactive,
            model=model,
            agent=self._settings.kiro_agent,
            resume=resume,
        )
        logger.info(f"Starting kiro-cli for session {session.id} in {cwd} (model={model or 'default'}, resume={resume})")

        try:
            process = await asyncio.create_subprocess_exec(
                binary,
                *args,
                cwd=cwd,
                env=enhanced_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            await run.fail(str(WorkerSpawnError(binary, e.strerror or str(e))))
            return run

        await self._dispatcher.publish(
            evt_stream_message(
                session.id,
                model_selection_message(session.id, model=model, interactive=session.interactive, cwd=cwd),
            )
        )
        run.attach(process)
        return run
