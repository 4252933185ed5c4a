"""SDK type definitions for agentpipe.

Messages and content blocks are immutable: the decoder builds them once and
hands ownership to the caller.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

# =============================================================================
# ContentBlock Types
# =============================================================================


@dataclass(frozen=True)
class TextBlock:
    """Text content block."""

    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    """Tool use content block.

    Represents a tool invocation with its parameters.
    """

    id: str
    name: str
    input: dict[str, Any]


@dataclass(frozen=True)
class ToolResultBlock:
    """Tool result content block."""

    tool_use_id: str
    content: str | list[dict[str, Any]] | None = None
    is_error: bool | None = None


ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock


# =============================================================================
# Message Content
# =============================================================================


@dataclass(frozen=True)
class TextContent:
    """Message content carried as a single string."""

    text: str
    kind: Literal["text"] = "text"

    @property
    def blocks(self) -> tuple[ContentBlock, ...]:
        return (TextBlock(text=self.text),)


@dataclass(frozen=True)
class BlockContent:
    """Message content carried as an ordered sequence of blocks."""

    blocks: tuple[ContentBlock, ...]
    kind: Literal["blocks"] = "blocks"

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        return "".join(block.text for block in self.blocks if isinstance(block, TextBlock))


# Decided by the JSON shape at decode time: string -> TextContent, array -> BlockContent.
MessageContent = TextContent | BlockContent


# =============================================================================
# Message Types
# =============================================================================


@dataclass(frozen=True)
class UserMessage:
    """User message, possibly echoing tool results back to the model."""

    content: MessageContent
    uuid: str | None = None
    parent_tool_use_id: str | None = None
    tool_use_result: dict[str, Any] | None = None


@dataclass(frozen=True)
class AssistantMessage:
    """Assistant message with content blocks."""

    content: MessageContent
    model: str
    parent_tool_use_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class SystemMessage:
    """System message with metadata.

    ``data`` holds the full raw message so that callers can reach fields the
    SDK does not model.
    """

    subtype: str
    data: dict[str, Any]


@dataclass(frozen=True)
class ResultMessage:
    """Result message with cost and usage information.

    Marks the end of one response cycle.
    """

    subtype: str
    duration_ms: int
    duration_api_ms: int
    is_error: bool
    num_turns: int
    session_id: str
    total_cost_usd: float | None = None
    usage: dict[str, Any] | None = None
    result: str | None = None
    structured_output: Any = None


Message = UserMessage | AssistantMessage | SystemMessage | ResultMessage


# =============================================================================
# Permission Types
# =============================================================================

PermissionMode = Literal["default", "acceptEdits", "plan", "bypassPermissions"]


@dataclass
class ToolPermissionContext:
    """Context information for tool permission callbacks."""

    signal: Any | None = None
    suggestions: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class PermissionResultAllow:
    """Allow permission result, optionally rewriting the tool input."""

    behavior: Literal["allow"] = "allow"
    updated_input: dict[str, Any] | None = None


@dataclass
class PermissionResultDeny:
    """Deny permission result."""

    behavior: Literal["deny"] = "deny"
    message: str = ""
    interrupt: bool = False


PermissionResult = PermissionResultAllow | PermissionResultDeny

CanUseTool = Callable[
    [str, dict[str, Any], ToolPermissionContext],
    Awaitable[PermissionResult],
]


# =============================================================================
# Options
# =============================================================================


@dataclass
class AgentOptions:
    """Configuration for an agent CLI session.

    The transport only reads these values; it never mutates them. Timeouts
    and buffer sizes left as ``None`` fall back to the process-wide defaults
    in ``agentpipe._internal.timeouts``.
    """

    cli_path: str | Path | None = None
    cli_name: str = "claude"
    cwd: str | Path | None = None
    env: dict[str, str] = field(default_factory=dict)
    model: str | None = None
    permission_mode: PermissionMode | None = None
    max_turns: int | None = None
    system_prompt: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    extra_args: dict[str, str | None] = field(default_factory=dict)
    stderr: Callable[[str], None] | None = None
    can_use_tool: CanUseTool | None = None
    max_buffer_size: int | None = None
    max_stderr_size: int | None = None
    shutdown_timeout: float | None = None
    interrupt_timeout: float | None = None
    control_timeout: float | None = None


__all__ = [
    "TextBlock",
    "ToolUseBlock",
    "ToolResultBlock",
    "ContentBlock",
    "TextContent",
    "BlockContent",
    "MessageContent",
    "UserMessage",
    "AssistantMessage",
    "SystemMessage",
    "ResultMessage",
    "Message",
    "PermissionMode",
    "ToolPermissionContext",
    "PermissionResultAllow",
    "PermissionResultDeny",
    "PermissionResult",
    "CanUseTool",
    "AgentOptions",
]
