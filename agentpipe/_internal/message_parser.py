"""Message parser for CLI stream output.

Turns decoded JSON values into typed ``Message`` objects. Parsing is a pure
function of its input: malformed input always raises ``MessageParseError``
carrying the offending value, never a bare ``KeyError`` or ``TypeError``.
"""

from __future__ import annotations

from typing import Any

from agentpipe._errors import MessageParseError
from agentpipe.types import (
    AssistantMessage,
    BlockContent,
    ContentBlock,
    Message,
    MessageContent,
    ResultMessage,
    SystemMessage,
    TextBlock,
    TextContent,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)


def _require(data: dict[str, Any], key: str, expected: type | tuple[type, ...], context: str) -> Any:
    if key not in data:
        raise MessageParseError(f"Missing required field in {context}: '{key}'", data)
    value = data[key]
    # bool is an int subclass; a JSON true must not pass as a count.
    if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
        raise MessageParseError(
            f"Field '{key}' in {context} has type {type(value).__name__}", data
        )
    return value


def _optional(data: dict[str, Any], key: str, expected: type | tuple[type, ...], context: str) -> Any:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, expected):
        raise MessageParseError(
            f"Field '{key}' in {context} has type {type(value).__name__}", data
        )
    return value


def _parse_block(block: Any, data: dict[str, Any]) -> ContentBlock:
    if not isinstance(block, dict):
        raise MessageParseError(
            f"Content block must be an object, got {type(block).__name__}", data
        )

    match block.get("type"):
        case "text":
            return TextBlock(text=_require(block, "text", str, "text block"))
        case "tool_use":
            tool_input = block.get("input") or {}
            if not isinstance(tool_input, dict):
                raise MessageParseError("tool_use block input must be an object", data)
            return ToolUseBlock(
                id=_require(block, "id", str, "tool_use block"),
                name=_require(block, "name", str, "tool_use block"),
                input=tool_input,
            )
        case "tool_result":
            return ToolResultBlock(
                tool_use_id=_require(block, "tool_use_id", str, "tool_result block"),
                content=_optional(block, "content", (str, list), "tool_result block"),
                is_error=_optional(block, "is_error", bool, "tool_result block"),
            )
        case block_type:
            raise MessageParseError(f"Unknown content block type: {block_type}", data)


def parse_content(content: Any, data: dict[str, Any]) -> MessageContent:
    """Decide the content variant from the JSON shape."""
    if isinstance(content, str):
        return TextContent(text=content)
    if isinstance(content, list):
        return BlockContent(blocks=tuple(_parse_block(block, data) for block in content))
    raise MessageParseError(
        f"Message content must be a string or a list of blocks, got {type(content).__name__}",
        data,
    )


def _inner_message(data: dict[str, Any], context: str) -> dict[str, Any]:
    inner = _require(data, "message", dict, context)
    if "content" not in inner:
        raise MessageParseError(f"Missing required field in {context}: 'message.content'", data)
    return inner


def parse_message(data: Any) -> Message:
    """Parse message from CLI output into typed Message objects.

    Args:
        data: A decoded JSON value from CLI stdout

    Returns:
        Parsed Message object

    Raises:
        MessageParseError: If parsing fails or message type is unrecognized
    """
    if not isinstance(data, dict):
        raise MessageParseError(
            f"Invalid message data type (expected dict, got {type(data).__name__})",
            data,
        )

    message_type = data.get("type")
    if not message_type:
        raise MessageParseError("Message missing 'type' field", data)
    if not isinstance(message_type, str):
        raise MessageParseError(
            f"Message 'type' must be a string, got {type(message_type).__name__}", data
        )

    match message_type:
        case "user":
            inner = _inner_message(data, "user message")
            return UserMessage(
                content=parse_content(inner["content"], data),
                uuid=_optional(data, "uuid", str, "user message"),
                parent_tool_use_id=_optional(data, "parent_tool_use_id", str, "user message"),
                tool_use_result=_optional(data, "tool_use_result", dict, "user message"),
            )

        case "assistant":
            inner = _inner_message(data, "assistant message")
            return AssistantMessage(
                content=parse_content(inner["content"], data),
                model=_optional(inner, "model", str, "assistant message") or "",
                parent_tool_use_id=_optional(data, "parent_tool_use_id", str, "assistant message"),
                error=_optional(data, "error", str, "assistant message")
                or _optional(inner, "error", str, "assistant message"),
            )

        case "system":
            return SystemMessage(
                subtype=_require(data, "subtype", str, "system message"),
                data=data,
            )

        case "progress":
            return SystemMessage(
                subtype="progress",
                data={
                    "tool_use_id": data.get("tool_use_id", ""),
                    "content": data.get("content"),
                },
            )

        case "result":
            total_cost = _optional(data, "total_cost_usd", (int, float), "result message")
            return ResultMessage(
                subtype=_require(data, "subtype", str, "result message"),
                duration_ms=_require(data, "duration_ms", int, "result message"),
                duration_api_ms=_require(data, "duration_api_ms", int, "result message"),
                is_error=_require(data, "is_error", bool, "result message"),
                num_turns=_require(data, "num_turns", int, "result message"),
                session_id=_require(data, "session_id", str, "result message"),
                total_cost_usd=float(total_cost) if total_cost is not None else None,
                usage=_optional(data, "usage", dict, "result message"),
                result=_optional(data, "result", str, "result message"),
                structured_output=data.get("structured_output"),
            )

        case _:
            raise MessageParseError(f"Unknown message type: {message_type}", data)


__all__ = ["parse_message", "parse_content"]
