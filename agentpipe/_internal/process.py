"""Ownership of the CLI child process and its three pipes.

``ProcessSession`` starts the child, serializes writes to stdin, hands out raw
stdout chunks, drains stderr in the background and guarantees the child is
reaped on ``terminate``.
"""

from __future__ import annotations

import logging
import subprocess
import weakref
from collections import deque
from collections.abc import Callable, Sequence
from contextlib import suppress
from enum import Enum
from pathlib import Path

import anyio
from anyio.abc import ByteReceiveStream, Process
from anyio.streams.text import TextReceiveStream, TextSendStream

from agentpipe._errors import (
    CLIConnectionError,
    CLINotFoundError,
    ProcessError,
    TransportError,
)
from agentpipe._internal.tasks import BackgroundTasks
from agentpipe._internal.timeouts import (
    DEFAULT_MAX_STDERR_SIZE,
    GRACEFUL_SHUTDOWN_TIMEOUT_SEC,
    STDERR_FLUSH_TIMEOUT_SEC,
    TERMINATE_TIMEOUT_SEC,
)

logger = logging.getLogger(__name__)

_STDOUT_READ_SIZE = 65536


class ProcessState(str, Enum):
    """Lifecycle of the child process handle."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    TERMINATED = "terminated"


class StderrCapture:
    """Bounded accumulator for stderr text.

    When full, the oldest text is dropped so that the tail, which usually
    holds the actual failure, survives.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_STDERR_SIZE) -> None:
        self.max_size = max_size
        self.truncated = False
        self._chunks: deque[str] = deque()
        self._size = 0

    def append(self, text: str) -> None:
        if not text:
            return
        if len(text) >= self.max_size:
            self._chunks.clear()
            self._chunks.append(text[-self.max_size :])
            self._size = self.max_size
            self.truncated = True
            return

        self._chunks.append(text)
        self._size += len(text)
        while self._size > self.max_size:
            overflow = self._size - self.max_size
            head = self._chunks[0]
            if len(head) <= overflow:
                self._chunks.popleft()
                self._size -= len(head)
            else:
                self._chunks[0] = head[overflow:]
                self._size -= overflow
            self.truncated = True

    def getvalue(self) -> str:
        return "".join(self._chunks)

    def __len__(self) -> int:
        return self._size


def _reap_orphan(process: Process) -> None:
    """Best-effort kill for a session that was dropped without terminate()."""
    if process.returncode is None:
        with suppress(ProcessLookupError, OSError):
            process.kill()


class ProcessSession:
    """A single child process and its stdin/stdout/stderr endpoints.

    Every successful ``start`` must be paired with one ``terminate``. A
    garbage-collection hook kills the child if that never happens, but that
    path is a safety net only and gives no completion guarantee.
    """

    def __init__(
        self,
        stderr_callback: Callable[[str], None] | None = None,
        max_stderr_size: int | None = None,
    ) -> None:
        self._stderr_callback = stderr_callback
        self._stderr = StderrCapture(
            max_stderr_size if max_stderr_size is not None else DEFAULT_MAX_STDERR_SIZE
        )

        self._state = ProcessState.NOT_STARTED
        self._process: Process | None = None
        self._stdin_stream: TextSendStream | None = None
        self._stdout_stream: ByteReceiveStream | None = None
        self._stderr_stream: ByteReceiveStream | None = None
        self._returncode: int | None = None

        self._write_lock = anyio.Lock()
        self._tasks = BackgroundTasks("stderr")
        self._stderr_done = anyio.Event()
        self._terminating = False
        self._terminated = anyio.Event()
        self._finalizer: weakref.finalize | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        if self._process is not None and self._process.returncode is not None:
            return self._process.returncode
        return self._returncode

    @property
    def is_running(self) -> bool:
        return self._state is ProcessState.RUNNING and self.returncode is None

    async def start(
        self,
        command: Sequence[str],
        cwd: str | Path | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        """Spawn the child with all three pipes attached.

        Raises:
            CLINotFoundError: The executable does not exist.
            CLIConnectionError: Any other reason the child could not start.
        """
        if self._state is not ProcessState.NOT_STARTED:
            raise CLIConnectionError(f"Process already {self._state.value}")
        if not command:
            raise CLIConnectionError("Cannot start a process without a command")

        executable = str(command[0])
        if cwd is not None and not Path(cwd).is_dir():
            raise CLIConnectionError(f"Working directory does not exist: {cwd}")

        try:
            self._process = await anyio.open_process(
                [str(part) for part in command],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(cwd) if cwd is not None else None,
                env=env,
            )
        except FileNotFoundError as e:
            # The directory may have vanished between the check and the spawn.
            if cwd is not None and not Path(cwd).is_dir():
                raise CLIConnectionError(f"Working directory does not exist: {cwd}") from e
            raise CLINotFoundError("CLI not found", cli_path=executable) from e
        except PermissionError as e:
            raise CLIConnectionError(f"Permission denied starting CLI: {executable}") from e
        except OSError as e:
            raise CLIConnectionError(f"Failed to start CLI {executable}: {e}") from e

        self._state = ProcessState.RUNNING
        self._finalizer = weakref.finalize(self, _reap_orphan, self._process)
        if self._process.stdin:
            self._stdin_stream = TextSendStream(self._process.stdin)
        self._stdout_stream = self._process.stdout
        self._stderr_stream = self._process.stderr

        if self._stderr_stream:
            self._tasks.start_soon(self._drain_stderr, self._stderr_stream)
        else:
            self._stderr_done.set()

        logger.info(f"Started CLI process (pid={self._process.pid}): {executable}")

    async def wait(self) -> int:
        """Wait for the child to exit and return its exit status."""
        if self._process is None:
            if self._returncode is not None:
                return self._returncode
            raise TransportError("Process has not been started")
        returncode = await self._process.wait()
        self._returncode = returncode
        return returncode

    async def terminate(self, timeout: float | None = None) -> int | None:
        """Shut the child down and release every pipe.

        Closes stdin and gives the child ``timeout`` seconds to exit, then
        escalates to SIGTERM and finally SIGKILL. Safe to call repeatedly, from
        any task, from cancelled or timed-out scopes, and after the child
        already exited on its own. Concurrent callers all return once the
        first one has finished.
        """
        if self._terminating:
            with anyio.CancelScope(shield=True):
                await self._terminated.wait()
            return self._returncode
        process = self._process
        if process is None:
            # Never started.
            return self._returncode

        self._terminating = True
        grace = GRACEFUL_SHUTDOWN_TIMEOUT_SEC if timeout is None else timeout

        try:
            with anyio.CancelScope(shield=True):
                await self.close_stdin()

                if process.returncode is None:
                    with anyio.move_on_after(grace):
                        await process.wait()

                if process.returncode is None:
                    logger.warning(
                        f"CLI process (pid={process.pid}) did not exit within {grace:.1f}s, terminating"
                    )
                    with suppress(ProcessLookupError):
                        process.terminate()
                    with anyio.move_on_after(TERMINATE_TIMEOUT_SEC):
                        await process.wait()

                if process.returncode is None:
                    logger.warning(f"CLI process (pid={process.pid}) ignored SIGTERM, killing")
                    with suppress(ProcessLookupError):
                        process.kill()
                    await process.wait()

                self._returncode = process.returncode
                if self._stdout_stream is not None:
                    with suppress(Exception):
                        await self._stdout_stream.aclose()
                    self._stdout_stream = None

                await self._tasks.aclose()
                if self._stderr_stream is not None:
                    with suppress(Exception):
                        await self._stderr_stream.aclose()
                    self._stderr_stream = None
        finally:
            if self._finalizer is not None:
                self._finalizer.detach()
            self._process = None
            self._state = ProcessState.TERMINATED
            self._terminated.set()

        logger.debug(f"CLI process (pid={process.pid}) exited with code {self._returncode}")
        return self._returncode

    async def kill(self) -> None:
        """Force-kill the child immediately.

        Pipes stay open so the read side observes EOF and the exit status;
        ``terminate`` still has to run afterwards to release them.
        """
        process = self._process
        if process is None or process.returncode is not None:
            return
        logger.warning(f"Killing CLI process (pid={process.pid})")
        with suppress(ProcessLookupError):
            process.kill()

    # ------------------------------------------------------------------
    # stdin
    # ------------------------------------------------------------------

    async def write(self, data: str) -> None:
        """Write ``data`` to the child's stdin.

        Raises:
            TransportError: stdin is unavailable or the pipe broke.
        """
        async with self._write_lock:
            # All checks inside lock to prevent TOCTOU races
            if self._state is not ProcessState.RUNNING or self._process is None:
                raise TransportError(f"Cannot write to process in state {self._state.value}")
            if self._process.returncode is not None:
                raise TransportError(
                    f"Cannot write to terminated process (exit code: {self._process.returncode})"
                )
            if self._stdin_stream is None:
                raise TransportError("Cannot write after stdin was closed")

            try:
                await self._stdin_stream.send(data)
            except (anyio.BrokenResourceError, anyio.ClosedResourceError, OSError) as e:
                raise TransportError(f"Failed to write to process: {e}") from e

    async def close_stdin(self) -> None:
        """Close stdin so the child sees EOF. Idempotent."""
        async with self._write_lock:
            if self._stdin_stream is not None:
                with suppress(Exception):
                    await self._stdin_stream.aclose()
                self._stdin_stream = None

    @property
    def stdin_open(self) -> bool:
        return self._stdin_stream is not None

    # ------------------------------------------------------------------
    # stdout / stderr
    # ------------------------------------------------------------------

    async def read_stdout_chunk(self) -> bytes | None:
        """Return the next raw stdout chunk, or ``None`` at end of stream."""
        stream = self._stdout_stream
        if stream is None:
            if self._state is ProcessState.NOT_STARTED:
                raise TransportError("Process has not been started")
            return None
        try:
            return await stream.receive(_STDOUT_READ_SIZE)
        except (anyio.EndOfStream, anyio.ClosedResourceError, anyio.BrokenResourceError):
            return None

    async def _drain_stderr(self, stream: ByteReceiveStream) -> None:
        """Copy stderr into the capture buffer until the child closes it."""
        pending = ""
        try:
            async for text in TextReceiveStream(stream, errors="replace"):
                self._stderr.append(text)
                pending += text
                *lines, pending = pending.split("\n")
                for line in lines:
                    self._emit_stderr_line(line)
                if len(pending) > self._stderr.max_size:
                    pending = pending[-self._stderr.max_size :]
            if pending:
                self._emit_stderr_line(pending)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            pass  # Stream closed during teardown
        finally:
            self._stderr_done.set()

    def _emit_stderr_line(self, line: str) -> None:
        line_str = line.rstrip()
        if not line_str:
            return
        logger.debug(f"[CLI stderr] {line_str}")
        if self._stderr_callback:
            try:
                self._stderr_callback(line_str)
            except Exception:
                logger.exception("stderr callback raised")

    async def wait_stderr_closed(self, timeout: float = STDERR_FLUSH_TIMEOUT_SEC) -> None:
        """Give the stderr drain a bounded chance to reach EOF."""
        with anyio.move_on_after(timeout):
            await self._stderr_done.wait()

    @property
    def stderr_output(self) -> str:
        return self._stderr.getvalue()

    @property
    def stderr_truncated(self) -> bool:
        return self._stderr.truncated

    def failure(self, returncode: int | None, message: str | None = None) -> ProcessError:
        """Build the error reported for an abnormal exit."""
        if message is None:
            if returncode is not None and returncode < 0:
                message = f"CLI process was killed by signal {-returncode}"
            else:
                message = "CLI process exited with an error"
        stderr = self.stderr_output
        if self.stderr_truncated:
            stderr = f"[stderr truncated]\n{stderr}"
        return ProcessError(message, exit_code=returncode, stderr=stderr or None)


__all__ = ["ProcessSession", "ProcessState", "StderrCapture"]
