"""access_import.upload_session

Per-connection upload state machine.

  IDLE               waiting for {"action": "INIT_UPLOAD", fileName, fileSize}
  EXPECTING_PAYLOAD  the next message, text or binary, is the file content
  RELAYING           a processing unit is running; its events are forwarded

The session never blocks the event loop: staging runs in a thread and the
processing unit runs on an executor, talking back only through an
asyncio.Queue fed with loop.call_soon_threadsafe.  A new INIT_UPLOAD may
arrive while a previous file is still relaying; each unit labels its own
events with the file name it was started with.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import uuid
from concurrent.futures import Executor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

from access_import.file_processor import StagedFile
from access_import.shared import (
    INIT_UPLOAD,
    Emit,
    StatusUpdate,
    TransportError,
    WorkerFault,
)

log = logging.getLogger(__name__)

UPLOAD_INITIATED = "File upload initiated"
UPLOAD_COMPLETED = "File upload completed"

Send = Callable[[dict[str, Any]], Awaitable[None]]
RunUnit = Callable[[StagedFile, Emit], Any]


class SessionState(enum.Enum):
    IDLE = "idle"
    EXPECTING_PAYLOAD = "expecting_payload"
    RELAYING = "relaying"


@dataclass(frozen=True)
class UploadMetadata:
    file_name: str
    file_size: int | float | None = None


def _parse_action(message: str | bytes) -> dict[str, Any] | None:
    try:
        data = json.loads(message)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _stage(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


class UploadSession:
    def __init__(
        self,
        send: Send,
        run_unit: RunUnit,
        executor: Executor,
        upload_dir: Path,
        keep_uploads: bool = False,
    ) -> None:
        self._send_message = send
        self._run_unit = run_unit
        self._executor = executor
        self._upload_dir = upload_dir
        self._keep_uploads = keep_uploads
        self._pending: UploadMetadata | None = None
        self._relays: set[asyncio.Task[None]] = set()
        self._connected = True
        self.state = SessionState.IDLE

    # -- inbound ------------------------------------------------------------

    async def receive(self, message: str | bytes) -> None:
        if self.state is SessionState.EXPECTING_PAYLOAD:
            data = message.encode("utf-8") if isinstance(message, str) else message
            await self._accept_payload(data)
            return

        action = _parse_action(message)
        if action is None:
            log.warning("Received %d bytes with no upload initiated", len(message))
            await self._send(StatusUpdate("", status="No upload has been initiated."))
            return
        if action.get("action") == INIT_UPLOAD:
            await self._init_upload(action)
        else:
            log.info("Ignoring unknown action %r", action.get("action"))

    async def _init_upload(self, action: dict[str, Any]) -> None:
        file_name = action.get("fileName")
        file_size = action.get("fileSize")
        if not isinstance(file_name, str) or not file_name.strip():
            await self._send(StatusUpdate("", status="Invalid upload metadata."))
            return
        if isinstance(file_size, bool) or not isinstance(file_size, (int, float, type(None))):
            await self._send(StatusUpdate(file_name, status="Invalid upload metadata."))
            return
        self._pending = UploadMetadata(file_name, file_size)
        self.state = SessionState.EXPECTING_PAYLOAD
        log.info("Preparing to receive file: %s", file_name)
        await self._send(StatusUpdate(
            file_name, file_size=file_size, status=UPLOAD_INITIATED, progress=0,
        ))

    async def _accept_payload(self, data: bytes) -> None:
        meta = self._pending
        self._pending = None
        if meta is None:
            log.warning("Payload of %d bytes arrived with no pending upload", len(data))
            self.state = SessionState.RELAYING if self._relays else SessionState.IDLE
            await self._send(StatusUpdate("", status="No upload has been initiated."))
            return
        path = self._upload_dir / uuid.uuid4().hex
        try:
            await asyncio.to_thread(_stage, path, data)
        except OSError as exc:
            error = TransportError(f"Failed to save the file: {exc}")
            log.error("Staging %s failed: %s", meta.file_name, exc)
            self.state = SessionState.RELAYING if self._relays else SessionState.IDLE
            await self._send(StatusUpdate(meta.file_name, status=str(error), terminal=True))
            return

        log.info("File received and saved: %s (%s)", path.name, meta.file_name)
        await self._send(StatusUpdate(meta.file_name, status=UPLOAD_COMPLETED, progress=100))

        staged = StagedFile(meta.file_name, path, meta.file_size)
        self.state = SessionState.RELAYING
        task = asyncio.create_task(self._run_and_relay(staged))
        self._relays.add(task)
        task.add_done_callback(self._relay_finished)

    # -- processing unit relay ---------------------------------------------

    async def _run_and_relay(self, staged: StagedFile) -> None:
        loop = asyncio.get_running_loop()
        events: asyncio.Queue[StatusUpdate | None] = asyncio.Queue()

        def emit(event: StatusUpdate) -> None:
            loop.call_soon_threadsafe(events.put_nowait, event)

        unit = loop.run_in_executor(self._executor, self._run_unit, staged, emit)
        unit.add_done_callback(lambda _: events.put_nowait(None))

        terminal_seen = False
        try:
            while (event := await events.get()) is not None:
                terminal_seen = terminal_seen or event.terminal
                await self._send(event)
            try:
                await unit
            except Exception as exc:
                log.error("Processing unit for %s failed", staged.file_name, exc_info=exc)
                if not terminal_seen:
                    fault = WorkerFault("Processing failed unexpectedly.")
                    await self._send(StatusUpdate(staged.file_name, status=str(fault), terminal=True))
        finally:
            if not self._keep_uploads:
                await asyncio.to_thread(staged.path.unlink, missing_ok=True)

    def _relay_finished(self, task: asyncio.Task[None]) -> None:
        self._relays.discard(task)
        if not self._relays and self.state is SessionState.RELAYING:
            self.state = SessionState.IDLE

    # -- outbound -----------------------------------------------------------

    async def _send(self, event: StatusUpdate) -> None:
        if not self._connected:
            return
        try:
            await self._send_message(event.to_message())
        except Exception as exc:
            log.info("Client connection lost; dropping further events: %s", exc)
            self._connected = False

    def close(self) -> None:
        """Stop sending.  Running units are not cancelled."""
        self._connected = False

    async def drain(self) -> None:
        """Wait until every running unit has finished relaying."""
        while self._relays:
            await asyncio.gather(*list(self._relays), return_exceptions=True)
