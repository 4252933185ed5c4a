"""Subprocess transport implementation using anyio for clean async I/O.

This module implements stdio transport for communicating with an agent CLI
subprocess. The process itself is owned by ``ProcessSession``; stdout is
framed by ``JSONFrameReader``.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from agentpipe._errors import CLINotFoundError, NotConnectedError, TransportError
from agentpipe._internal.framing import JSONFrameReader
from agentpipe._internal.process import ProcessSession
from agentpipe._internal.timeouts import DEFAULT_MAX_BUFFER_SIZE
from agentpipe._internal.transport import Transport
from agentpipe.types import AgentOptions

logger = logging.getLogger(__name__)

ENTRYPOINT_ENV = "AGENTPIPE_ENTRYPOINT"


def find_cli(name: str = "claude") -> str:
    """Find the agent CLI binary.

    Returns:
        Path to the CLI executable.

    Raises:
        CLINotFoundError: If CLI cannot be found.
    """
    # Check system PATH first
    if cli := shutil.which(name):
        return cli

    # Common installation locations
    locations = [
        Path.home() / ".local" / "bin" / name,
        Path.home() / ".npm-global" / "bin" / name,
        Path("/usr/local") / "bin" / name,
        Path.home() / ".bin" / name,
    ]

    for path in locations:
        if path.exists() and path.is_file():
            return str(path)

    raise CLINotFoundError(
        f"{name} CLI not found on PATH or in common install locations.\n"
        "Provide the path via AgentOptions:\n"
        "  AgentOptions(cli_path='/path/to/cli')"
    )


def build_command(cli_path: str, options: AgentOptions) -> list[str]:
    """Build the CLI command with all arguments.

    The CLI always runs in stream-json mode in both directions; prompts are
    written to stdin rather than passed on the command line.
    """
    cmd = [
        cli_path,
        "--output-format",
        "stream-json",
        "--verbose",
        "--input-format",
        "stream-json",
    ]

    if options.model:
        cmd.extend(["--model", options.model])

    if options.permission_mode:
        cmd.extend(["--permission-mode", options.permission_mode])

    if options.max_turns:
        cmd.extend(["--max-turns", str(options.max_turns)])

    if options.system_prompt:
        cmd.extend(["--system-prompt", options.system_prompt])

    if options.allowed_tools:
        cmd.extend(["--allowedTools", ",".join(options.allowed_tools)])

    if options.disallowed_tools:
        cmd.extend(["--disallowedTools", ",".join(options.disallowed_tools)])

    for flag, value in options.extra_args.items():
        if value is None:
            cmd.append(f"--{flag}")
        else:
            cmd.extend([f"--{flag}", str(value)])

    return cmd


class SubprocessCLITransport(Transport):
    """Stdio subprocess transport.

    Starts the agent CLI and exchanges newline-delimited JSON with it over
    stdin/stdout. stderr is captured concurrently and attached to any
    ``ProcessError`` raised for an abnormal exit. A transport is single-use:
    once closed it cannot be connected again.
    """

    def __init__(self, options: AgentOptions | None = None):
        self._options = options or AgentOptions()
        self._cwd = str(self._options.cwd) if self._options.cwd else None
        max_buffer_size = self._options.max_buffer_size
        self._max_buffer_size = (
            max_buffer_size if max_buffer_size is not None else DEFAULT_MAX_BUFFER_SIZE
        )

        self._session: ProcessSession | None = None
        self._reader: JSONFrameReader | None = None
        self._ready = False
        self._closed = False
        self._command: list[str] | None = None

    @property
    def command(self) -> list[str] | None:
        """The argv used to start the CLI, once connected."""
        return self._command

    def _build_env(self) -> dict[str, str]:
        return {
            **os.environ,
            **self._options.env,
            ENTRYPOINT_ENV: "sdk-py",
        }

    async def connect(self) -> None:
        """Start the subprocess and establish communication.

        Raises:
            CLIConnectionError: If the process fails to start.
            CLINotFoundError: If the CLI cannot be found.
        """
        if self._closed:
            raise TransportError("Transport was closed and cannot be reconnected")
        if self._session is not None:
            return  # Already connected

        cli_path = (
            str(self._options.cli_path)
            if self._options.cli_path is not None
            else find_cli(self._options.cli_name)
        )
        self._command = build_command(cli_path, self._options)

        session = ProcessSession(
            stderr_callback=self._options.stderr,
            max_stderr_size=self._options.max_stderr_size,
        )
        await session.start(self._command, cwd=self._cwd, env=self._build_env())

        self._session = session
        self._reader = JSONFrameReader(self._max_buffer_size)
        self._ready = True
        logger.info(f"Connected to agent CLI: {' '.join(self._command)}")

    async def write(self, data: str) -> None:
        """Write data to the subprocess stdin.

        Raises:
            NotConnectedError: connect() has not been called.
            TransportError: The transport is closed or stdin is unusable.
        """
        if self._closed:
            raise TransportError("Cannot write to a closed transport")
        if self._session is None:
            raise NotConnectedError("Transport is not connected")
        await self._session.write(data)

    async def end_input(self) -> None:
        """End the input stream by closing stdin."""
        if self._session is not None:
            await self._session.close_stdin()

    def read_messages(self) -> AsyncIterator[Any]:
        """Read and decode JSON values from stdout.

        Raises:
            ProcessError: The CLI exited with a non-zero status.
            BufferExceededError: A single message outgrew the buffer ceiling.
            CLIJSONDecodeError: stdout carried something that is not JSON.
        """
        return self._read_messages_impl()

    async def _read_messages_impl(self) -> AsyncIterator[Any]:
        session = self._session
        reader = self._reader
        if session is None or reader is None:
            raise NotConnectedError("Not connected")

        while (chunk := await session.read_stdout_chunk()) is not None:
            for value in reader.push(chunk):
                yield value

        if self._closed:
            return

        returncode = await session.wait()
        if returncode != 0:
            await session.wait_stderr_closed()
            # Teardown started while we were waiting; the exit was ours.
            if self._closed:
                return
            self._ready = False
            raise session.failure(returncode)

        for value in reader.finish():
            yield value

    async def kill(self) -> None:
        if self._session is not None:
            await self._session.kill()

    async def close(self) -> None:
        """Close the transport and clean up all resources."""
        self._ready = False
        if self._closed:
            return
        self._closed = True
        if self._session is not None:
            await self._session.terminate(self._options.shutdown_timeout)

    def is_ready(self) -> bool:
        """Check if the transport is ready for communication."""
        return (
            self._ready
            and not self._closed
            and self._session is not None
            and self._session.is_running
        )

    @property
    def exit_code(self) -> int | None:
        return self._session.returncode if self._session is not None else None

    @property
    def stderr_output(self) -> str | None:
        return self._session.stderr_output if self._session is not None else None


__all__ = ["SubprocessCLITransport", "find_cli", "build_command"]
