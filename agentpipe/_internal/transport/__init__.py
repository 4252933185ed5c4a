"""Transport implementations for the agentpipe SDK.

The Transport interface is low-level and handles raw I/O. Higher-level
components like Query build on top of this to implement the control protocol.
"""

from __future__ import annotations

import abc
from collections.abc import AsyncIterator
from typing import Any


class Transport(abc.ABC):
    """Abstract transport for agent CLI communication.

    Note: This is an internal API. The Query class builds on top of Transport
    to implement the control protocol and message routing.
    """

    @abc.abstractmethod
    async def connect(self) -> None:
        """Connect the transport and prepare for communication.

        For subprocess transports, this starts the process.
        """

    @abc.abstractmethod
    async def write(self, data: str) -> None:
        """Write raw data to the transport.

        Args:
            data: Raw string data to write (typically JSON + newline)
        """

    @abc.abstractmethod
    def read_messages(self) -> AsyncIterator[Any]:
        """Read and decode framed JSON values from the transport.

        Yields:
            Decoded JSON values, in the order they were received
        """

    @abc.abstractmethod
    async def close(self) -> None:
        """Close the transport connection and clean up resources. Idempotent."""

    @abc.abstractmethod
    def is_ready(self) -> bool:
        """Check if transport is ready for communication."""

    @abc.abstractmethod
    async def end_input(self) -> None:
        """End the input stream (close stdin for process transports)."""

    async def kill(self) -> None:
        """Abort the other side immediately. Defaults to ``close``."""
        await self.close()

    @property
    def exit_code(self) -> int | None:
        """Exit status of the other side, when it has one."""
        return None

    @property
    def stderr_output(self) -> str | None:
        """Captured diagnostic output, when the transport collects any."""
        return None


__all__ = ["Transport"]
