"""Python SDK for driving an agent CLI over stdio.

`query` helper for one-shot calls and an `AgentClient` for long-lived
interactive sessions.
"""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator
from contextlib import aclosing
from typing import Any

from agentpipe._errors import NotConnectedError, ProcessError
from agentpipe._internal.query import Query
from agentpipe._internal.transport import Transport
from agentpipe._internal.transport.subprocess_cli import SubprocessCLITransport
from agentpipe.types import AgentOptions, Message, ResultMessage
from agentpipe.utils.log import get_logger

Prompt = str | AsyncIterable[str | dict[str, Any]]

logger = get_logger()


def _stream_ended_error(transport: Transport) -> ProcessError:
    return ProcessError(
        "Stream ended before a result message was received",
        exit_code=transport.exit_code,
        stderr=transport.stderr_output,
    )


async def _open_query(options: AgentOptions, transport: Transport) -> Query:
    """Connect ``transport`` and start routing its output."""
    await transport.connect()
    query = Query(
        transport,
        can_use_tool=options.can_use_tool,
        control_timeout=options.control_timeout,
    )
    try:
        await query.start()
    except BaseException:
        await query.close()
        raise
    return query


class AgentClient:
    """Interactive session with an agent CLI.

    The CLI process lives from ``connect`` to ``disconnect``; prompts are sent
    with ``query`` and answers read with ``receive_response``. ``disconnect``
    may run from any task.
    """

    def __init__(
        self,
        options: AgentOptions | None = None,
        transport: Transport | None = None,
    ) -> None:
        self.options = options or AgentOptions()
        self._custom_transport = transport
        self._transport: Transport | None = None
        self._query: Query | None = None

    @property
    def is_connected(self) -> bool:
        return self._query is not None

    async def __aenter__(self) -> AgentClient:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.disconnect()

    async def connect(self, prompt: Prompt | None = None) -> None:
        """Start the CLI and optionally send an initial prompt.

        A string is sent as the first user message. An async iterable is
        streamed to the CLI in the background; stdin stays open afterwards.
        """
        if self._query is None:
            transport = self._custom_transport or SubprocessCLITransport(self.options)
            self._query = await _open_query(self.options, transport)
            self._transport = transport

        if isinstance(prompt, str):
            await self._query.send_user_message(prompt)
        elif prompt is not None:
            self._query.start_streaming(prompt, end_input=False)

    def _require_query(self) -> Query:
        if self._query is None:
            raise NotConnectedError("Not connected. Call connect() first.")
        return self._query

    async def query(self, prompt: Prompt, session_id: str = "default") -> None:
        """Send a new prompt to the CLI."""
        query = self._require_query()
        if isinstance(prompt, str):
            await query.send_user_message(prompt, session_id)
        else:
            await query.stream_input(prompt, end_input=False, session_id=session_id)

    send = query

    def receive_messages(self) -> AsyncIterator[Message]:
        """Yield every message from the CLI until the stream ends."""
        return self._require_query().receive_messages()

    async def receive_response(self) -> AsyncIterator[Message]:
        """Yield messages up to and including the next ``ResultMessage``.

        Raises:
            ProcessError: The stream ended before a result arrived.
        """
        query = self._require_query()
        async with aclosing(query.receive_messages()) as messages:
            async for message in messages:
                yield message
                if isinstance(message, ResultMessage):
                    return
        raise _stream_ended_error(query.transport)

    async def interrupt(self) -> None:
        """Interrupt the current turn.

        Raises:
            ControlTimeoutError: The CLI did not acknowledge in time and was killed.
        """
        await self._require_query().interrupt(self.options.interrupt_timeout)

    async def set_permission_mode(self, mode: str) -> None:
        """Change the permission mode for the rest of the session."""
        await self._require_query().set_permission_mode(mode)

    async def set_model(self, model: str | None = None) -> None:
        """Switch models for the rest of the session."""
        await self._require_query().set_model(model)

    async def disconnect(self) -> None:
        """Tear down the session. Safe to call more than once."""
        query, self._query, self._transport = self._query, None, None
        if query is not None:
            await query.close()
            logger.debug("[client] Disconnected")


async def query(
    *,
    prompt: Prompt,
    options: AgentOptions | None = None,
    transport: Transport | None = None,
) -> AsyncIterator[Message]:
    """One-shot helper: run a prompt in a fresh CLI process.

    The prompt is written to stdin, which is then closed so the CLI exits
    once it has answered. When a permission callback is configured stdin
    stays open until the first result, so permission requests can still be
    answered.

    Raises:
        ProcessError: The CLI exited abnormally or before producing a result.
    """
    options = options or AgentOptions()
    transport = transport or SubprocessCLITransport(options)
    keep_stdin_open = options.can_use_tool is not None

    session = await _open_query(options, transport)
    try:
        if isinstance(prompt, str):
            await session.send_user_message(prompt)
            if not keep_stdin_open:
                await transport.end_input()
        else:
            session.start_streaming(prompt, end_input=not keep_stdin_open)

        got_result = False
        async with aclosing(session.receive_messages()) as messages:
            async for message in messages:
                if isinstance(message, ResultMessage) and not got_result:
                    got_result = True
                    if keep_stdin_open:
                        await transport.end_input()
                yield message

        if not got_result:
            raise _stream_ended_error(transport)
    finally:
        await session.close()


__all__ = ["AgentClient", "query"]
