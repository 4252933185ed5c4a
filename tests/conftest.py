"""Pytest configuration and fixtures for all tests."""

import json
import stat
import sys
import textwrap
from collections.abc import AsyncIterator, Awaitable
from pathlib import Path
from typing import Any, Callable, Optional

import anyio
import pytest

from agentpipe._errors import TransportError
from agentpipe._internal.transport import Transport

# Echoes every user turn back as system/assistant/result messages and acks
# control requests. Set FAKE_IGNORE_INTERRUPT=1 to leave interrupts unanswered.
ECHO_AGENT = """
import json
import os
import sys

ANSWERS = {"What is 2+2?": "4"}
IGNORE_INTERRUPT = os.environ.get("FAKE_IGNORE_INTERRUPT") == "1"
turns = 0


def emit(obj):
    sys.stdout.write(json.dumps(obj) + "\\n")
    sys.stdout.flush()


for line in sys.stdin:
    line = line.strip()
    if not line:
        continue
    msg = json.loads(line)
    kind = msg.get("type")
    if kind == "control_request":
        subtype = msg["request"]["subtype"]
        if subtype == "interrupt" and IGNORE_INTERRUPT:
            continue
        if subtype == "set_model" and msg["request"].get("model") == "bogus":
            emit({"type": "control_response", "response": {
                "subtype": "error", "request_id": msg["request_id"], "error": "unknown model"}})
            continue
        emit({"type": "control_response", "response": {
            "subtype": "success", "request_id": msg["request_id"], "response": {}}})
        continue
    if kind != "user":
        continue
    turns += 1
    prompt = msg["message"]["content"]
    answer = ANSWERS.get(prompt, "echo: " + str(prompt))
    emit({"type": "system", "subtype": "init", "session_id": "fake-session", "cwd": os.getcwd(),
          "pid": os.getpid()})
    emit({"type": "assistant", "message": {
        "model": "fake-model", "content": [{"type": "text", "text": answer}]}})
    emit({"type": "result", "subtype": "success", "duration_ms": 12, "duration_api_ms": 10,
          "is_error": False, "num_turns": turns, "session_id": "fake-session",
          "result": answer, "total_cost_usd": 0.001})
"""

# Reads one prompt and answers with a single result line.
RESULT_ONLY_AGENT = """
import sys

sys.stdin.readline()
sys.stdout.write(
    '{"type":"result","subtype":"success","duration_ms":100,"duration_api_ms":80,'
    '"is_error":false,"num_turns":1,"session_id":"s-1","result":"4","total_cost_usd":0.001}\\n'
)
sys.stdout.flush()
"""

# Reads one prompt, complains on stderr and exits with status 3.
FAILING_AGENT = """
import sys

sys.stdin.readline()
sys.stderr.write("boom: model unavailable\\n")
sys.stderr.flush()
sys.exit(3)
"""


@pytest.fixture
def fake_cli(tmp_path: Path) -> Callable[..., str]:
    """Write an executable Python script and return its path."""

    def _make(body: str, name: str = "fake_cli") -> str:
        path = tmp_path / name
        path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body), encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make


@pytest.fixture
def echo_cli(fake_cli: Callable[..., str]) -> str:
    return fake_cli(ECHO_AGENT, name="echo_cli")


@pytest.fixture
def result_only_cli(fake_cli: Callable[..., str]) -> str:
    return fake_cli(RESULT_ONLY_AGENT, name="result_only_cli")


@pytest.fixture
def failing_cli(fake_cli: Callable[..., str]) -> str:
    return fake_cli(FAILING_AGENT, name="failing_cli")


class MockTransport(Transport):
    """In-memory transport: tests feed inbound messages and inspect writes."""

    def __init__(self) -> None:
        self.written: list[dict[str, Any]] = []
        self.on_write: Optional[Callable[[dict[str, Any]], Awaitable[None]]] = None
        self.connected = False
        self.closed = False
        self.killed = False
        self.input_ended = False
        self._send, self._receive = anyio.create_memory_object_stream[Any](max_buffer_size=100)

    async def connect(self) -> None:
        self.connected = True

    async def write(self, data: str) -> None:
        if self.closed:
            raise TransportError("closed")
        message = json.loads(data)
        self.written.append(message)
        if self.on_write is not None:
            await self.on_write(message)

    def read_messages(self) -> AsyncIterator[Any]:
        return self._reader()

    async def _reader(self) -> AsyncIterator[Any]:
        async with self._receive:
            async for item in self._receive:
                if isinstance(item, Exception):
                    raise item
                yield item

    async def feed(self, *messages: Any) -> None:
        for message in messages:
            await self._send.send(message)

    async def finish(self) -> None:
        await self._send.aclose()

    async def close(self) -> None:
        self.closed = True
        self._send.close()

    async def kill(self) -> None:
        self.killed = True
        self._send.close()

    def is_ready(self) -> bool:
        return self.connected and not self.closed

    async def end_input(self) -> None:
        self.input_ended = True

    def written_of_type(self, message_type: str) -> list[dict[str, Any]]:
        return [message for message in self.written if message.get("type") == message_type]


@pytest.fixture
def mock_transport() -> MockTransport:
    return MockTransport()


async def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.01)


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll a predicate until it holds, failing after a timeout."""
    return _wait_until
