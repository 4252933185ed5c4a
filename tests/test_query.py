"""Tests for Query: routing, control requests and permission callbacks."""

from typing import Any

import anyio
import pytest

from agentpipe._errors import (
    ControlChannelClosedError,
    ControlRequestError,
    ControlTimeoutError,
    ProcessError,
    TransportError,
)
from agentpipe._internal.query import Query
from agentpipe.types import (
    AssistantMessage,
    PermissionResultAllow,
    PermissionResultDeny,
    ResultMessage,
    SystemMessage,
    ToolPermissionContext,
)

SYSTEM = {"type": "system", "subtype": "init", "session_id": "s"}
ASSISTANT = {"type": "assistant", "message": {"model": "m", "content": [{"type": "text", "text": "hi"}]}}
RESULT = {
    "type": "result",
    "subtype": "success",
    "duration_ms": 5,
    "duration_api_ms": 4,
    "is_error": False,
    "num_turns": 1,
    "session_id": "s",
    "result": "hi",
}


def _success(request_id: str, response: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "type": "control_response",
        "response": {"subtype": "success", "request_id": request_id, "response": response or {}},
    }


def _inbound_request(request_id: str, request: dict[str, Any]) -> dict[str, Any]:
    return {"type": "control_request", "request_id": request_id, "request": request}


class TestMessageRouting:
    """Regular messages reach the caller; control traffic does not."""

    @pytest.mark.asyncio
    async def test_messages_arrive_in_order(self, mock_transport) -> None:
        query = Query(mock_transport)
        await query.start()
        try:
            await mock_transport.feed(SYSTEM, _success("req_404_x"), ASSISTANT, RESULT)
            await mock_transport.finish()
            messages = [message async for message in query.receive_messages()]
        finally:
            await query.close()

        assert [type(message) for message in messages] == [SystemMessage, AssistantMessage, ResultMessage]

    @pytest.mark.asyncio
    async def test_cancel_requests_are_ignored(self, mock_transport) -> None:
        query = Query(mock_transport)
        await query.start()
        try:
            await mock_transport.feed({"type": "control_cancel_request", "request_id": "r1"}, RESULT)
            await mock_transport.finish()
            messages = [message async for message in query.receive_messages()]
        finally:
            await query.close()
        assert len(messages) == 1

    @pytest.mark.asyncio
    async def test_read_error_reaches_receiver_and_fails_pending_requests(self, mock_transport) -> None:
        query = Query(mock_transport)
        await query.start()
        failure = ProcessError("CLI process exited with an error", exit_code=1)
        try:
            request_id = await query.channel.send_request({"subtype": "interrupt"})
            await mock_transport.feed(SYSTEM, failure)

            received = []
            with pytest.raises(ProcessError) as exc_info:
                async for message in query.receive_messages():
                    received.append(message)
            assert exc_info.value is failure
            assert len(received) == 1

            with pytest.raises(ControlChannelClosedError) as closed_info:
                await query.channel.await_response(request_id, timeout=1)
            assert closed_info.value.__cause__ is failure
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_second_concurrent_cursor_is_rejected(self, mock_transport) -> None:
        query = Query(mock_transport)
        await query.start()
        try:
            await mock_transport.feed(SYSTEM)
            first = query.receive_messages()
            assert isinstance(await first.__anext__(), SystemMessage)

            with pytest.raises(TransportError, match="already in progress"):
                await query.receive_messages().__anext__()

            await first.aclose()
            await mock_transport.feed(RESULT)
            second = query.receive_messages()
            assert isinstance(await second.__anext__(), ResultMessage)
            await second.aclose()
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, mock_transport) -> None:
        query = Query(mock_transport)
        await query.start()
        await query.close()
        await query.close()
        assert mock_transport.closed
        assert [message async for message in query.receive_messages()] == []

    @pytest.mark.asyncio
    async def test_close_from_another_task_under_deadline(self, mock_transport) -> None:
        query = Query(mock_transport)
        await query.start()
        await mock_transport.feed(SYSTEM)
        with anyio.fail_after(5):
            async with anyio.create_task_group() as tg:
                tg.start_soon(query.close)
        assert mock_transport.closed
        with pytest.raises(TransportError, match="closed"):
            await query.start()


class TestOutboundControl:
    """interrupt / set_model / set_permission_mode."""

    @pytest.mark.asyncio
    async def test_interrupt_acknowledged(self, mock_transport) -> None:
        async def ack(message: dict[str, Any]) -> None:
            if message["type"] == "control_request":
                await mock_transport.feed(_success(message["request_id"]))

        mock_transport.on_write = ack
        query = Query(mock_transport)
        await query.start()
        try:
            await query.interrupt(timeout=5)
        finally:
            await query.close()

        [request] = mock_transport.written_of_type("control_request")
        assert request["request"] == {"subtype": "interrupt"}
        assert not mock_transport.killed

    @pytest.mark.asyncio
    async def test_interrupt_timeout_kills_child(self, mock_transport) -> None:
        query = Query(mock_transport)
        await query.start()
        try:
            with anyio.fail_after(5):
                with pytest.raises(ControlTimeoutError):
                    await query.interrupt(timeout=0.05)
            assert mock_transport.killed
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_unread_backlog_does_not_delay_control_responses(self, mock_transport) -> None:
        async def ack(message: dict[str, Any]) -> None:
            if message["type"] == "control_request":
                await mock_transport.feed(_success(message["request_id"]))

        mock_transport.on_write = ack
        query = Query(mock_transport)
        await query.start()
        try:
            with anyio.fail_after(5):
                await mock_transport.feed(*[SYSTEM] * 150)
                await query.interrupt(timeout=2)
            assert not mock_transport.killed

            await mock_transport.finish()
            messages = [message async for message in query.receive_messages()]
        finally:
            await query.close()
        assert len(messages) == 150

    @pytest.mark.asyncio
    async def test_set_model_and_permission_mode(self, mock_transport) -> None:
        async def reply(message: dict[str, Any]) -> None:
            if message["type"] != "control_request":
                return
            if message["request"].get("model") == "bogus":
                await mock_transport.feed(
                    {
                        "type": "control_response",
                        "response": {"subtype": "error", "request_id": message["request_id"], "error": "no such model"},
                    }
                )
            else:
                await mock_transport.feed(_success(message["request_id"]))

        mock_transport.on_write = reply
        query = Query(mock_transport, control_timeout=5)
        await query.start()
        try:
            await query.set_permission_mode("plan")
            await query.set_model("sonnet")
            with pytest.raises(ControlRequestError, match="no such model"):
                await query.set_model("bogus")
        finally:
            await query.close()

        requests = [message["request"] for message in mock_transport.written_of_type("control_request")]
        assert requests == [
            {"subtype": "set_permission_mode", "mode": "plan"},
            {"subtype": "set_model", "model": "sonnet"},
            {"subtype": "set_model", "model": "bogus"},
        ]


class TestInboundControl:
    """Control requests sent by the CLI always get one response."""

    @pytest.mark.asyncio
    async def test_can_use_tool_allow(self, mock_transport, wait_until) -> None:
        calls: list[tuple[str, dict[str, Any], ToolPermissionContext]] = []

        async def allow(tool_name: str, tool_input: dict[str, Any], context: ToolPermissionContext):
            calls.append((tool_name, tool_input, context))
            return PermissionResultAllow(updated_input={"command": "ls -la"})

        query = Query(mock_transport, can_use_tool=allow)
        await query.start()
        try:
            await mock_transport.feed(
                _inbound_request(
                    "cli_1",
                    {"subtype": "can_use_tool", "tool_name": "Bash", "input": {"command": "ls"}},
                )
            )
            await wait_until(lambda: mock_transport.written_of_type("control_response"))
        finally:
            await query.close()

        assert calls[0][0] == "Bash"
        assert calls[0][1] == {"command": "ls"}
        [response] = mock_transport.written_of_type("control_response")
        assert response["response"] == {
            "subtype": "success",
            "request_id": "cli_1",
            "response": {"behavior": "allow", "updatedInput": {"command": "ls -la"}},
        }

    @pytest.mark.asyncio
    async def test_can_use_tool_deny(self, mock_transport, wait_until) -> None:
        async def deny(tool_name: str, tool_input: dict[str, Any], context: ToolPermissionContext):
            return PermissionResultDeny(message="not today", interrupt=True)

        query = Query(mock_transport, can_use_tool=deny)
        await query.start()
        try:
            await mock_transport.feed(
                _inbound_request("cli_2", {"subtype": "can_use_tool", "tool_name": "Write", "input": {}})
            )
            await wait_until(lambda: mock_transport.written_of_type("control_response"))
        finally:
            await query.close()

        [response] = mock_transport.written_of_type("control_response")
        assert response["response"]["response"] == {
            "behavior": "deny",
            "message": "not today",
            "interrupt": True,
        }

    @pytest.mark.asyncio
    async def test_missing_callback_and_unknown_subtype_get_errors(self, mock_transport, wait_until) -> None:
        query = Query(mock_transport)
        await query.start()
        try:
            await mock_transport.feed(
                _inbound_request("cli_3", {"subtype": "can_use_tool", "tool_name": "Bash", "input": {}}),
                _inbound_request("cli_4", {"subtype": "hook_callback"}),
            )
            await wait_until(lambda: len(mock_transport.written_of_type("control_response")) == 2)
        finally:
            await query.close()

        responses = {
            message["response"]["request_id"]: message["response"]
            for message in mock_transport.written_of_type("control_response")
        }
        assert responses["cli_3"]["subtype"] == "error"
        assert "can_use_tool" in responses["cli_3"]["error"]
        assert responses["cli_4"]["subtype"] == "error"
        assert "hook_callback" in responses["cli_4"]["error"]

    @pytest.mark.asyncio
    async def test_callback_exception_becomes_error_response(self, mock_transport, wait_until) -> None:
        async def broken(tool_name: str, tool_input: dict[str, Any], context: ToolPermissionContext):
            raise RuntimeError("policy store offline")

        query = Query(mock_transport, can_use_tool=broken)
        await query.start()
        try:
            await mock_transport.feed(
                _inbound_request("cli_5", {"subtype": "can_use_tool", "tool_name": "Bash", "input": {}})
            )
            await wait_until(lambda: mock_transport.written_of_type("control_response"))
        finally:
            await query.close()

        [response] = mock_transport.written_of_type("control_response")
        assert response["response"]["error"] == "policy store offline"


class TestInputStreaming:
    """Prompts written to the CLI."""

    @pytest.mark.asyncio
    async def test_send_user_message(self, mock_transport) -> None:
        query = Query(mock_transport)
        await query.send_user_message("hello", session_id="abc")
        await query.close()
        assert mock_transport.written == [
            {
                "type": "user",
                "message": {"role": "user", "content": "hello"},
                "parent_tool_use_id": None,
                "session_id": "abc",
            }
        ]

    @pytest.mark.asyncio
    async def test_stream_input_then_end(self, mock_transport) -> None:
        async def prompts():
            yield "first"
            yield {"type": "user", "message": {"role": "user", "content": "second"}}

        query = Query(mock_transport)
        await query.stream_input(prompts())
        await query.close()
        assert [message["message"]["content"] for message in mock_transport.written] == ["first", "second"]
        assert mock_transport.input_ended

    @pytest.mark.asyncio
    async def test_background_streaming_failure_reaches_receiver(self, mock_transport) -> None:
        async def prompts():
            yield "first"
            raise RuntimeError("prompt source broke")

        query = Query(mock_transport)
        await query.start()
        try:
            query.start_streaming(prompts())
            with pytest.raises(RuntimeError, match="prompt source broke"):
                async for _ in query.receive_messages():
                    pass
        finally:
            await query.close()
