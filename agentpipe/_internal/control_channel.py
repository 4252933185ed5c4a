"""Correlation of outgoing control requests with their responses.

The write path registers a pending slot and sends the request; the read loop
hands every ``control_response`` it sees to ``deliver_response``. The table of
pending slots is the only state touched by both sides, and every mutation of
it happens while holding ``_lock``. A slot is resolved at most once and
removed exactly once: by the waiter in ``await_response`` or by ``close``.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Awaitable, Callable
from typing import Any

import anyio
from pydantic import ValidationError

from agentpipe._errors import (
    ControlChannelClosedError,
    ControlRequestError,
    ControlTimeoutError,
)
from agentpipe.control_protocol import (
    ControlRequestMessage,
    ControlResponseError,
    ControlResponseMessage,
    model_to_dict,
)

logger = logging.getLogger(__name__)


class _PendingResponse:
    """Single-assignment slot for one control response."""

    __slots__ = ("event", "response", "error")

    def __init__(self) -> None:
        self.event = anyio.Event()
        self.response: dict[str, Any] | None = None
        self.error: Exception | None = None

    @property
    def resolved(self) -> bool:
        return self.event.is_set()

    def resolve(self, response: dict[str, Any] | None = None, error: Exception | None = None) -> bool:
        if self.resolved:
            return False
        self.response = response
        self.error = error
        self.event.set()
        return True

    def result(self) -> dict[str, Any]:
        if self.error is not None:
            raise self.error
        return self.response or {}


class ControlChannel:
    """Request/response correlation on top of a line writer."""

    def __init__(self, write: Callable[[str], Awaitable[None]]) -> None:
        self._write = write
        self._lock = anyio.Lock()
        self._pending: dict[str, _PendingResponse] = {}
        self._request_counter = 0
        self._closed = False
        self._close_cause: BaseException | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _closed_error(self, request_id: str | None = None) -> ControlChannelClosedError:
        suffix = f" (request {request_id})" if request_id else ""
        error = ControlChannelClosedError(f"Control channel closed{suffix}")
        error.__cause__ = self._close_cause
        return error

    async def send_request(self, request: dict[str, Any]) -> str:
        """Write a control request and return its correlation id.

        The pending slot exists before the bytes leave, so a fast response can
        never arrive ahead of its registration.
        """
        async with self._lock:
            if self._closed:
                raise self._closed_error()
            self._request_counter += 1
            request_id = f"req_{self._request_counter}_{os.urandom(4).hex()}"
            self._pending[request_id] = _PendingResponse()

        message = ControlRequestMessage(request_id=request_id, request=request)
        try:
            await self._write(json.dumps(model_to_dict(message)) + "\n")
        except BaseException:
            with anyio.CancelScope(shield=True):
                async with self._lock:
                    self._pending.pop(request_id, None)
            raise

        logger.debug(f"[control] Sent {request.get('subtype')} request {request_id}")
        return request_id

    async def await_response(self, request_id: str, timeout: float | None = None) -> dict[str, Any]:
        """Wait for the response to ``request_id`` and release its slot.

        Every ``send_request`` must be followed by exactly one call to this.

        Raises:
            ControlTimeoutError: Nothing arrived within ``timeout`` seconds.
            ControlRequestError: The CLI answered with an error.
            ControlChannelClosedError: The session ended first.
        """
        async with self._lock:
            slot = self._pending.get(request_id)
            closed = self._closed
        if slot is None:
            if closed:
                raise self._closed_error(request_id)
            raise ControlRequestError(f"Unknown control request id: {request_id}", request_id)

        try:
            with anyio.move_on_after(timeout):
                await slot.event.wait()
        finally:
            with anyio.CancelScope(shield=True):
                async with self._lock:
                    self._pending.pop(request_id, None)
                    # No-op when the response landed first.
                    slot.resolve(
                        error=ControlTimeoutError(
                            f"Control request {request_id} timed out after {timeout}s",
                            request_id=request_id,
                            timeout=timeout,
                        )
                    )
        return slot.result()

    async def request(self, request: dict[str, Any], timeout: float | None = None) -> dict[str, Any]:
        """Send a control request and wait for its response."""
        request_id = await self.send_request(request)
        return await self.await_response(request_id, timeout)

    async def deliver_response(self, message: dict[str, Any]) -> bool:
        """Resolve the pending slot matching an inbound ``control_response``.

        Returns False when the message matched nothing (unknown id, already
        answered or timed out, or malformed).
        """
        try:
            envelope = ControlResponseMessage.model_validate(message)
        except ValidationError as e:
            logger.warning(f"[control] Dropping malformed control_response: {e}")
            return False

        response = envelope.response
        async with self._lock:
            slot = self._pending.get(response.request_id)
            if slot is None or slot.resolved:
                logger.debug(
                    f"[control] No pending request for control_response {response.request_id}"
                )
                return False
            if isinstance(response, ControlResponseError):
                return slot.resolve(error=ControlRequestError(response.error, response.request_id))
            return slot.resolve(response=response.response or {})

    async def close(self, error: BaseException | None = None) -> None:
        """Fail every pending request and refuse new ones. Idempotent."""
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            self._close_cause = error
            pending, self._pending = self._pending, {}
            for request_id, slot in pending.items():
                slot.resolve(error=self._closed_error(request_id))
        if pending:
            logger.debug(f"[control] Closed with {len(pending)} pending request(s)")


__all__ = ["ControlChannel"]
