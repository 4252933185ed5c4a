"""Query class for handling the bidirectional control protocol.

This module implements the Query class that manages:
- Control request/response routing
- Tool permission callbacks
- Message streaming

It follows the same anyio patterns as the transport:
- An unbounded memory object stream for internal message passing
- Tracked background tasks for the read loop and request handlers
- ControlChannel for request/response correlation
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import AsyncIterable, AsyncIterator
from contextlib import suppress
from typing import Any

import anyio

from agentpipe._errors import AgentSDKError, ControlError, ControlTimeoutError, TransportError
from agentpipe._internal import message_parser
from agentpipe._internal.control_channel import ControlChannel
from agentpipe._internal.tasks import BackgroundTasks
from agentpipe._internal.timeouts import CONTROL_REQUEST_TIMEOUT_SEC, INTERRUPT_TIMEOUT_SEC
from agentpipe._internal.transport import Transport
from agentpipe.control_protocol import (
    CONTROL_CANCEL_REQUEST,
    CONTROL_REQUEST,
    CONTROL_RESPONSE,
    ControlResponseError,
    ControlResponseMessage,
    ControlResponseSuccess,
    interrupt_request,
    model_to_dict,
    set_model_request,
    set_permission_mode_request,
    user_message,
)
from agentpipe.types import (
    CanUseTool,
    Message,
    PermissionResultAllow,
    PermissionResultDeny,
    ToolPermissionContext,
)

logger = logging.getLogger(__name__)

# Items on the message stream are raw JSON values, or the exception that
# stopped the read loop.
_StreamItem = Any


class Query:
    """Handles bidirectional control protocol on top of Transport.

    Owns the read loop: control responses are handed to the control channel,
    inbound control requests are answered in their own tasks, and everything
    else is queued for ``receive_messages`` in arrival order.
    """

    def __init__(
        self,
        transport: Transport,
        can_use_tool: CanUseTool | None = None,
        control_timeout: float | None = None,
    ):
        """Initialize Query with transport and callbacks.

        Must be called from async context.

        Args:
            transport: Connected low-level transport for I/O
            can_use_tool: Optional callback for tool permission requests
            control_timeout: Timeout in seconds for outgoing control requests
        """
        self.transport = transport
        self.can_use_tool = can_use_tool
        self._control_timeout = (
            control_timeout if control_timeout is not None else CONTROL_REQUEST_TIMEOUT_SEC
        )

        self._channel = ControlChannel(transport.write)

        # Unbounded, so an unread backlog never holds up control responses
        self._message_send, self._message_receive = anyio.create_memory_object_stream[
            _StreamItem
        ](max_buffer_size=math.inf)

        self._tasks = BackgroundTasks("query")
        self._started = False
        self._closed = False
        self._receiving = False

    @property
    def channel(self) -> ControlChannel:
        return self._channel

    async def start(self) -> None:
        """Start reading messages from transport."""
        if self._closed:
            raise TransportError("Query is closed")
        if not self._started:
            self._started = True
            self._tasks.start_soon(self._read_messages)

    async def _read_messages(self) -> None:
        """Background task that reads messages from transport and routes them."""
        try:
            async for message in self.transport.read_messages():
                if self._closed:
                    break

                msg_type = message.get("type") if isinstance(message, dict) else None

                # Route control responses
                if msg_type == CONTROL_RESPONSE:
                    await self._channel.deliver_response(message)
                    continue

                # Route control requests (from CLI to SDK)
                elif msg_type == CONTROL_REQUEST:
                    self._tasks.start_soon(self._handle_control_request, message)
                    continue

                elif msg_type == CONTROL_CANCEL_REQUEST:
                    logger.debug(f"[control] Ignoring cancel for {message.get('request_id')}")
                    continue

                # Stream regular messages
                await self._message_send.send(message)

        except Exception as e:
            logger.error(f"Error in _read_messages: {e}")
            await self._channel.close(e)
            with suppress(anyio.ClosedResourceError, anyio.BrokenResourceError):
                await self._message_send.send(e)
        finally:
            with anyio.CancelScope(shield=True):
                await self._channel.close()
                await self._message_send.aclose()

    # ------------------------------------------------------------------
    # Inbound control requests
    # ------------------------------------------------------------------

    async def _handle_control_request(self, message: dict[str, Any]) -> None:
        """Handle incoming control request from CLI.

        Every request gets exactly one response so the CLI never waits on us.
        """
        request_id = message.get("request_id")
        request = message.get("request")
        if not isinstance(request_id, str) or not isinstance(request, dict):
            logger.warning(f"[control] Dropping malformed control_request: {message!r}")
            return

        request_subtype = request.get("subtype")
        try:
            if request_subtype == "can_use_tool":
                response = await self._handle_can_use_tool(request)
                await self._send_control_response(request_id, response=response)
            else:
                await self._send_control_response(
                    request_id, error=f"Unsupported control request subtype: {request_subtype}"
                )
        except TransportError as e:
            logger.warning(f"[control] Could not answer {request_subtype} request {request_id}: {e}")
        except Exception as e:
            logger.warning(f"[control] {request_subtype} request {request_id} failed: {e}")
            with suppress(TransportError):
                await self._send_control_response(request_id, error=str(e))

    async def _handle_can_use_tool(self, request: dict[str, Any]) -> dict[str, Any]:
        """Ask the permission callback about a tool call."""
        if self.can_use_tool is None:
            raise ControlError("can_use_tool callback not provided")

        tool_name = request.get("tool_name", "")
        tool_input = request.get("input") or {}
        context = ToolPermissionContext(
            signal=None,
            suggestions=request.get("permission_suggestions") or [],
        )

        result = await self.can_use_tool(tool_name, tool_input, context)

        if isinstance(result, PermissionResultAllow):
            return {
                "behavior": "allow",
                "updatedInput": (
                    result.updated_input if result.updated_input is not None else tool_input
                ),
            }
        if isinstance(result, PermissionResultDeny):
            response: dict[str, Any] = {"behavior": "deny", "message": result.message}
            if result.interrupt:
                response["interrupt"] = True
            return response
        raise TypeError(
            "can_use_tool must return PermissionResultAllow or PermissionResultDeny, "
            f"got {type(result).__name__}"
        )

    async def _send_control_response(
        self,
        request_id: str,
        response: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        """Send a control response to the CLI."""
        if error is not None:
            body: ControlResponseSuccess | ControlResponseError = ControlResponseError(
                request_id=request_id, error=error
            )
        else:
            body = ControlResponseSuccess(request_id=request_id, response=response)
        message = ControlResponseMessage(response=body)
        await self.transport.write(json.dumps(model_to_dict(message)) + "\n")

    # ------------------------------------------------------------------
    # Outbound user input
    # ------------------------------------------------------------------

    async def send_user_message(self, prompt: str, session_id: str = "default") -> None:
        """Write one user turn to the CLI."""
        await self.transport.write(json.dumps(user_message(prompt, session_id)) + "\n")

    async def stream_input(
        self,
        stream: AsyncIterable[str | dict[str, Any]],
        end_input: bool = True,
        session_id: str = "default",
    ) -> None:
        """Write every message of ``stream`` to the CLI, then optionally close stdin.

        Plain strings are wrapped as user messages; dicts are written as-is.
        """
        async for item in stream:
            if self._closed:
                return
            if isinstance(item, str):
                await self.send_user_message(item, session_id)
            else:
                await self.transport.write(json.dumps(item) + "\n")
        if end_input:
            await self.transport.end_input()

    def start_streaming(
        self,
        stream: AsyncIterable[str | dict[str, Any]],
        end_input: bool = True,
    ) -> None:
        """Run ``stream_input`` in the background."""
        if not self._started:
            raise TransportError("Query has not been started")
        if self._closed:
            raise TransportError("Query is closed")
        self._tasks.start_soon(self._stream_input_task, stream, end_input)

    async def _stream_input_task(
        self,
        stream: AsyncIterable[str | dict[str, Any]],
        end_input: bool,
    ) -> None:
        try:
            await self.stream_input(stream, end_input=end_input)
        except Exception as e:
            logger.error(f"Error streaming input: {e}")
            # Surface the failure to whoever is receiving.
            with suppress(anyio.ClosedResourceError, anyio.BrokenResourceError):
                await self._message_send.send(e)

    # ------------------------------------------------------------------
    # Message stream
    # ------------------------------------------------------------------

    def receive_messages(self) -> AsyncIterator[Message]:
        """Receive typed messages from the CLI, in arrival order."""
        return self._receive_messages_impl()

    async def _receive_messages_impl(self) -> AsyncIterator[Message]:
        """Internal implementation of message receiving."""
        if self._receiving:
            raise TransportError("Another receive is already in progress on this session")
        self._receiving = True
        try:
            while True:
                try:
                    item = await self._message_receive.receive()
                except (anyio.EndOfStream, anyio.ClosedResourceError):
                    return
                if isinstance(item, Exception):
                    raise item
                yield message_parser.parse_message(item)
        finally:
            self._receiving = False

    # ------------------------------------------------------------------
    # Outbound control requests
    # ------------------------------------------------------------------

    async def interrupt(self, timeout: float | None = None) -> None:
        """Interrupt the current query.

        If the CLI does not acknowledge within ``timeout`` the child is killed
        and ``ControlTimeoutError`` is raised.
        """
        timeout = timeout if timeout is not None else INTERRUPT_TIMEOUT_SEC
        try:
            await self._channel.request(interrupt_request(), timeout)
        except ControlTimeoutError:
            logger.warning(f"Interrupt not acknowledged within {timeout}s, killing CLI")
            await self.transport.kill()
            raise

    async def set_permission_mode(self, mode: str) -> None:
        """Change permission mode during conversation."""
        await self._channel.request(set_permission_mode_request(mode), self._control_timeout)

    async def set_model(self, model: str | None = None) -> None:
        """Change the AI model during conversation."""
        await self._channel.request(set_model_request(model), self._control_timeout)

    async def close(self) -> None:
        """Stop the read loop and close the transport. Idempotent."""
        if self._closed:
            return
        self._closed = True

        with anyio.CancelScope(shield=True):
            await self._tasks.aclose()
            await self._channel.close()
            self._message_send.close()
            self._message_receive.close()
            try:
                await self.transport.close()
            except AgentSDKError as e:
                logger.warning(f"Error closing transport: {e}")


# Re-export parse_message for convenience
parse_message = message_parser.parse_message

__all__ = [
    "Query",
    "parse_message",
]
