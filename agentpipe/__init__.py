"""Python SDK for driving an agent CLI as a subprocess over stream-json stdio."""

from agentpipe._errors import (
    AgentSDKError,
    BufferExceededError,
    CLIConnectionError,
    CLIJSONDecodeError,
    CLINotFoundError,
    ControlChannelClosedError,
    ControlError,
    ControlRequestError,
    ControlTimeoutError,
    MessageParseError,
    NotConnectedError,
    ProcessError,
    TransportError,
)
from agentpipe._internal.transport import Transport
from agentpipe._internal.transport.subprocess_cli import SubprocessCLITransport
from agentpipe.client import AgentClient, query
from agentpipe.types import (
    AgentOptions,
    AssistantMessage,
    BlockContent,
    ContentBlock,
    Message,
    MessageContent,
    PermissionMode,
    PermissionResult,
    PermissionResultAllow,
    PermissionResultDeny,
    ResultMessage,
    SystemMessage,
    TextBlock,
    TextContent,
    ToolPermissionContext,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Client
    "AgentClient",
    "query",
    "Transport",
    "SubprocessCLITransport",
    # Options
    "AgentOptions",
    "PermissionMode",
    "ToolPermissionContext",
    "PermissionResult",
    "PermissionResultAllow",
    "PermissionResultDeny",
    # Messages
    "Message",
    "UserMessage",
    "AssistantMessage",
    "SystemMessage",
    "ResultMessage",
    "MessageContent",
    "TextContent",
    "BlockContent",
    "ContentBlock",
    "TextBlock",
    "ToolUseBlock",
    "ToolResultBlock",
    # Errors
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
]
