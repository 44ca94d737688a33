"""Unit tests for access_import.upload_session.

Each test drives a session with asyncio.run; the processing unit is a plain
function on a real thread pool.
"""

from __future__ import annotations

import asyncio
import json
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from access_import.shared import ImportReport, StatusUpdate
from access_import.upload_session import (
    UPLOAD_COMPLETED,
    UPLOAD_INITIATED,
    SessionState,
    UploadSession,
)


def _init(name="people.csv", size=12):
    return json.dumps({"action": "INIT_UPLOAD", "fileName": name, "fileSize": size})


class Client:
    """Collects outbound messages; optionally fails after `fail_after` sends."""

    def __init__(self, fail_after: int | None = None):
        self.messages = []
        self._fail_after = fail_after

    async def send(self, message):
        if self._fail_after is not None and len(self.messages) >= self._fail_after:
            raise ConnectionError("client went away")
        self.messages.append(message)


def _finishing_unit(seen: list):
    """Unit that records what it was given and emits one progress + terminal event."""

    def run(staged, emit):
        seen.append((staged.file_name, staged.path.read_bytes(), staged.path))
        emit(StatusUpdate(staged.file_name, status="Processing...", progress=100.0))
        final = StatusUpdate(
            staged.file_name, status="Done!", report=ImportReport(1, 0, 0), terminal=True,
        )
        emit(final)
        return final

    return run


def _run(coro_factory):
    with ThreadPoolExecutor(max_workers=2) as executor:
        return asyncio.run(coro_factory(executor))


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------

class TestHandshake:
    def test_init_then_payload(self, tmp_path):
        client = Client()
        seen = []

        async def scenario(executor):
            session = UploadSession(client.send, _finishing_unit(seen), executor, tmp_path)
            await session.receive(_init())
            assert session.state is SessionState.EXPECTING_PAYLOAD
            await session.receive(b"first,last\n")
            await session.drain()
            return session

        session = _run(scenario)

        assert client.messages == [
            {"action": "STATUS_UPDATE", "fileName": "people.csv", "fileSize": 12,
             "status": UPLOAD_INITIATED, "progress": 0},
            {"action": "STATUS_UPDATE", "fileName": "people.csv",
             "status": UPLOAD_COMPLETED, "progress": 100},
            {"action": "STATUS_UPDATE", "fileName": "people.csv",
             "status": "Processing...", "progress": 100.0},
            {"action": "STATUS_UPDATE", "fileName": "people.csv", "status": "Done!",
             "report": {"recordsCreated": 1, "recordsUpdated": 0, "credentialCount": 0}},
        ]
        assert session.state is SessionState.IDLE
        (name, data, path) = seen[0]
        assert name == "people.csv"
        assert data == b"first,last\n"
        assert path.parent == tmp_path
        assert path.name != "people.csv"
        assert not path.exists()

    def test_text_payload_is_accepted(self, tmp_path):
        client = Client()
        seen = []

        async def scenario(executor):
            session = UploadSession(client.send, _finishing_unit(seen), executor, tmp_path)
            await session.receive(_init())
            await session.receive("first,last\nA,B\n")
            await session.drain()

        _run(scenario)
        assert seen[0][1] == b"first,last\nA,B\n"

    def test_keep_uploads(self, tmp_path):
        seen = []

        async def scenario(executor):
            session = UploadSession(
                Client().send, _finishing_unit(seen), executor, tmp_path, keep_uploads=True,
            )
            await session.receive(_init())
            await session.receive(b"x")
            await session.drain()

        _run(scenario)
        assert seen[0][2].exists()

    def test_payload_without_init(self, tmp_path):
        client = Client()
        seen = []

        async def scenario(executor):
            session = UploadSession(client.send, _finishing_unit(seen), executor, tmp_path)
            await session.receive(b"\x00\x01 raw bytes")
            return session

        session = _run(scenario)
        assert client.messages == [
            {"action": "STATUS_UPDATE", "fileName": "", "status": "No upload has been initiated."},
        ]
        assert session.state is SessionState.IDLE
        assert seen == []

    def test_expecting_payload_without_metadata(self, tmp_path):
        client = Client()
        seen = []

        async def scenario(executor):
            session = UploadSession(client.send, _finishing_unit(seen), executor, tmp_path)
            session.state = SessionState.EXPECTING_PAYLOAD
            await session.receive(b"first,last\n")
            return session

        session = _run(scenario)
        assert client.messages == [
            {"action": "STATUS_UPDATE", "fileName": "", "status": "No upload has been initiated."},
        ]
        assert session.state is SessionState.IDLE
        assert seen == []
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.parametrize("message", [
        json.dumps({"action": "INIT_UPLOAD"}),
        json.dumps({"action": "INIT_UPLOAD", "fileName": "  "}),
        json.dumps({"action": "INIT_UPLOAD", "fileName": "a.csv", "fileSize": "big"}),
        json.dumps({"action": "INIT_UPLOAD", "fileName": "a.csv", "fileSize": True}),
    ])
    def test_invalid_metadata(self, tmp_path, message):
        client = Client()

        async def scenario(executor):
            session = UploadSession(client.send, _finishing_unit([]), executor, tmp_path)
            await session.receive(message)
            return session

        session = _run(scenario)
        assert client.messages[0]["status"] == "Invalid upload metadata."
        assert session.state is SessionState.IDLE

    def test_unknown_action_ignored(self, tmp_path):
        client = Client()

        async def scenario(executor):
            session = UploadSession(client.send, _finishing_unit([]), executor, tmp_path)
            await session.receive(json.dumps({"action": "PING"}))

        _run(scenario)
        assert client.messages == []


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------

class TestRelay:
    def test_unit_crash_without_terminal_event(self, tmp_path):
        client = Client()

        def crashing(staged, emit):
            emit(StatusUpdate(staged.file_name, status="Processing...", progress=50.0))
            raise RuntimeError("boom")

        async def scenario(executor):
            session = UploadSession(client.send, crashing, executor, tmp_path)
            await session.receive(_init())
            await session.receive(b"x")
            await session.drain()

        _run(scenario)
        assert client.messages[-1] == {
            "action": "STATUS_UPDATE",
            "fileName": "people.csv",
            "status": "Processing failed unexpectedly.",
        }
        assert client.messages[-2]["progress"] == 50.0
        assert list(tmp_path.iterdir()) == []

    def test_crash_after_terminal_event_not_reported_twice(self, tmp_path):
        client = Client()

        def crashing(staged, emit):
            emit(StatusUpdate(staged.file_name, status="Done!", terminal=True))
            raise RuntimeError("late failure")

        async def scenario(executor):
            session = UploadSession(client.send, crashing, executor, tmp_path)
            await session.receive(_init())
            await session.receive(b"x")
            await session.drain()

        _run(scenario)
        assert client.messages[-1]["status"] == "Done!"

    def test_second_upload_while_relaying(self, tmp_path):
        client = Client()
        release = threading.Event()

        def slow(staged, emit):
            if staged.file_name == "first.csv":
                release.wait(timeout=5)
            final = StatusUpdate(staged.file_name, status="Done!", terminal=True)
            emit(final)
            return final

        async def scenario(executor):
            session = UploadSession(client.send, slow, executor, tmp_path)
            await session.receive(_init("first.csv"))
            await session.receive(b"1")
            assert session.state is SessionState.RELAYING
            await session.receive(_init("second.csv"))
            await session.receive(b"2")
            # let the second unit finish before releasing the first
            while not any(
                m["fileName"] == "second.csv" and m.get("status") == "Done!"
                for m in client.messages
            ):
                await asyncio.sleep(0.01)
            release.set()
            await session.drain()
            return session

        session = _run(scenario)
        done = [m["fileName"] for m in client.messages if m.get("status") == "Done!"]
        assert done == ["second.csv", "first.csv"]
        assert session.state is SessionState.IDLE

    def test_disconnect_stops_sending_but_unit_finishes(self, tmp_path):
        client = Client(fail_after=2)
        seen = []

        async def scenario(executor):
            session = UploadSession(client.send, _finishing_unit(seen), executor, tmp_path)
            await session.receive(_init())
            await session.receive(b"x")
            await session.drain()

        _run(scenario)
        assert len(client.messages) == 2
        assert len(seen) == 1

    def test_staging_failure_reported(self, tmp_path):
        client = Client()
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")

        async def scenario(executor):
            session = UploadSession(client.send, _finishing_unit([]), executor, blocker / "uploads")
            await session.receive(_init())
            await session.receive(b"x")
            return session

        session = _run(scenario)
        assert client.messages[-1]["status"].startswith("Failed to save the file:")
        assert session.state is SessionState.IDLE
