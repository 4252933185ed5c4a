"""Error types for the agentpipe SDK.

Every fallible operation in the transport surfaces one of these. The names
follow the agent SDK conventions so callers catching ``CLIConnectionError``
or ``ProcessError`` keep working.
"""

from __future__ import annotations

from typing import Any


class AgentSDKError(Exception):
    """Base exception for all SDK errors."""

    def __str__(self) -> str:
        return self.args[0] if self.args else "An error occurred in the agentpipe SDK"


class CLIConnectionError(AgentSDKError):
    """Raised when unable to connect to the CLI process."""


class CLINotFoundError(CLIConnectionError):
    """Raised when the CLI is not found or not installed."""

    def __init__(self, message: str = "CLI not found", cli_path: str | None = None):
        if cli_path:
            message = f"{message}: {cli_path}"
        super().__init__(message)
        self.cli_path = cli_path


class TransportError(CLIConnectionError):
    """Raised when the transport cannot carry a message (closed pipe, bad state)."""


class NotConnectedError(TransportError):
    """Raised when a session operation is used before connect() or after disconnect()."""


class BufferExceededError(TransportError):
    """Raised when buffered stdout grows past the configured ceiling."""

    def __init__(self, buffer_size: int, max_buffer_size: int):
        super().__init__(
            f"JSON message exceeded maximum buffer size ({buffer_size} > {max_buffer_size})"
        )
        self.buffer_size = buffer_size
        self.max_buffer_size = max_buffer_size


class ProcessError(AgentSDKError):
    """Raised when the CLI process fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        stderr: str | None = None,
        **kwargs: Any,
    ):
        self.exit_code = exit_code
        self.stderr = stderr
        self.extra = kwargs

        if exit_code is not None:
            message = f"{message} (exit code: {exit_code})"
        if stderr:
            message = f"{message}\nError output: {stderr}"
        super().__init__(message)


class CLIJSONDecodeError(AgentSDKError):
    """Raised when unable to decode JSON from CLI output."""

    def __init__(self, message: str, raw: str = "", original_error: Exception | None = None):
        super().__init__(message)
        self.raw = raw
        self.original_error = original_error


class MessageParseError(AgentSDKError):
    """Raised when unable to parse a message from CLI output."""

    def __init__(self, message: str, data: Any = None, **kwargs: Any):
        super().__init__(message)
        self.data = data
        self.extra = kwargs


class ControlError(AgentSDKError):
    """Base class for control sub-protocol failures."""


class ControlTimeoutError(ControlError):
    """Raised when a control response does not arrive in time."""

    def __init__(self, message: str, request_id: str | None = None, timeout: float | None = None):
        super().__init__(message)
        self.request_id = request_id
        self.timeout = timeout


class ControlChannelClosedError(ControlError):
    """Raised for pending or new control requests once the session has ended."""


class ControlRequestError(ControlError):
    """Raised when the CLI answers a control request with an error response."""

    def __init__(self, message: str, request_id: str | None = None):
        super().__init__(message)
        self.request_id = request_id


# Compatibility aliases
SDKError = AgentSDKError
JSONDecodeError = CLIJSONDecodeError


__all__ = [
    "AgentSDKError",
    "CLIConnectionError",
    "CLINotFoundError",
    "TransportError",
    "NotConnectedError",
    "BufferExceededError",
    "ProcessError",
    "CLIJSONDecodeError",
    "MessageParseError",
    "ControlError",
    "ControlTimeoutError",
    "ControlChannelClosedError",
    "ControlRequestError",
    # Compatibility aliases
    "SDKError",
    "JSONDecodeError",
]
