"""Incremental JSON framing for CLI stdout.

The CLI writes one JSON object per line, but pipe reads do not respect those
boundaries: a read may return half an object, several objects, or an object
whose strings contain escaped newlines. ``JSONFrameReader`` accumulates raw
chunks and hands back complete values only.

Objects and arrays are delimited structurally (bracket depth, string and
escape state), so values concatenated without a newline still split
correctly. A bare scalar has no closing bracket and is delimited by the end
of its line instead.
"""

from __future__ import annotations

import codecs
import json
import re
from typing import Any

from agentpipe._errors import BufferExceededError, CLIJSONDecodeError
from agentpipe._internal.timeouts import DEFAULT_MAX_BUFFER_SIZE

_CLOSERS = {"{": "}", "[": "]"}
# Values that end on their own closing character rather than at a newline.
_SELF_DELIMITED = frozenset('{["')
_STRUCTURAL_RE = re.compile(r'["{}\[\]]')
_STRING_SPECIAL_RE = re.compile(r'["\\]')
_PREVIEW_CHARS = 200

# Marker for "no complete value buffered yet".
_INCOMPLETE = object()


def _preview(text: str) -> str:
    if len(text) <= _PREVIEW_CHARS:
        return text
    return f"{text[:_PREVIEW_CHARS]}... ({len(text)} chars)"


class JSONFrameReader:
    """Turn an unaligned stream of stdout chunks into decoded JSON values.

    The buffer is owned by this reader alone. Between calls it never holds
    more than ``max_buffer_size`` characters; anything larger is rejected with
    ``BufferExceededError`` instead of being parsed.
    """

    def __init__(self, max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE) -> None:
        if max_buffer_size <= 0:
            raise ValueError("max_buffer_size must be positive")
        self.max_buffer_size = max_buffer_size
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self._pending_error: Exception | None = None
        self._reset_scan()

    def _reset_scan(self) -> None:
        self._scan_pos = 0
        self._stack: list[str] = []
        self._in_string = False
        self._escaped = False

    def _clear(self) -> None:
        self._buffer = ""
        self._decoder.reset()
        self._reset_scan()

    @property
    def buffered_size(self) -> int:
        """Number of characters currently held back waiting for more input."""
        return len(self._buffer)

    def reset(self) -> None:
        """Drop all buffered input and any deferred error."""
        self._clear()
        self._pending_error = None

    def push(self, chunk: bytes | str) -> list[Any]:
        """Feed one raw chunk and return every value it completed, in order.

        Raises:
            BufferExceededError: The buffered input outgrew ``max_buffer_size``.
            CLIJSONDecodeError: The input can no longer become valid JSON.
        """
        self._raise_pending()
        text = self._decode(chunk)
        if not text:
            return []

        self._buffer += text
        values: list[Any] = []
        try:
            while (value := self._next_value()) is not _INCOMPLETE:
                values.append(value)
            if len(self._buffer) > self.max_buffer_size:
                raise BufferExceededError(len(self._buffer), self.max_buffer_size)
        except (BufferExceededError, CLIJSONDecodeError) as exc:
            self._clear()
            if not values:
                raise
            # Values framed before the failure are still delivered; the error
            # surfaces on the next call.
            self._pending_error = exc
        return values

    def finish(self) -> list[Any]:
        """Signal end of stream and return a trailing unterminated scalar, if any.

        Raises:
            CLIJSONDecodeError: The stream ended in the middle of a value.
        """
        self._raise_pending()
        tail = self._decode(b"", final=True)
        self._buffer += tail
        remainder = self._buffer.strip()
        self._clear()
        if not remainder:
            return []
        if remainder[0] in _SELF_DELIMITED:
            raise CLIJSONDecodeError(
                f"CLI output ended in the middle of a JSON value: {_preview(remainder)}",
                raw=remainder,
            )
        return [self._loads(remainder)]

    def _raise_pending(self) -> None:
        if self._pending_error is not None:
            error, self._pending_error = self._pending_error, None
            raise error

    def _decode(self, chunk: bytes | str, final: bool = False) -> str:
        if isinstance(chunk, str):
            return chunk
        try:
            return self._decoder.decode(bytes(chunk), final=final)
        except UnicodeDecodeError as e:
            self._clear()
            raise CLIJSONDecodeError(
                f"CLI output is not valid UTF-8: {e}",
                raw=bytes(chunk).decode("utf-8", errors="replace"),
                original_error=e,
            ) from e

    def _next_value(self) -> Any:
        if not self._stack:
            # Between values: whitespace and blank lines are separators.
            self._buffer = self._buffer.lstrip()
        if not self._buffer:
            return _INCOMPLETE

        if self._buffer[0] in _SELF_DELIMITED:
            end = self._scan_structure()
            if end is None:
                return _INCOMPLETE
            unit = self._buffer[:end]
        else:
            newline = self._buffer.find("\n")
            if newline == -1:
                return _INCOMPLETE
            unit = self._buffer[:newline]
            end = newline + 1

        self._buffer = self._buffer[end:]
        self._reset_scan()
        if len(unit) > self.max_buffer_size:
            raise BufferExceededError(len(unit), self.max_buffer_size)
        return self._loads(unit)

    def _loads(self, unit: str) -> Any:
        try:
            return json.loads(unit)
        except json.JSONDecodeError as e:
            raise CLIJSONDecodeError(
                f"Failed to decode JSON from CLI output: {_preview(unit)}",
                raw=unit,
                original_error=e,
            ) from e

    def _scan_structure(self) -> int | None:
        """Return the end offset of the leading object, array or string, or None.

        Scanning resumes where the previous call stopped, so a value split over
        many chunks is only walked once.
        """
        buf = self._buffer
        pos = self._scan_pos
        size = len(buf)

        while pos < size:
            if self._in_string:
                if self._escaped:
                    self._escaped = False
                    pos += 1
                    continue
                match = _STRING_SPECIAL_RE.search(buf, pos)
                if match is None:
                    pos = size
                    break
                pos = match.end()
                if match.group() == "\\":
                    self._escaped = True
                else:
                    self._in_string = False
                    if not self._stack:
                        # A top-level string ends at its closing quote.
                        return pos
                continue

            match = _STRUCTURAL_RE.search(buf, pos)
            if match is None:
                pos = size
                break
            char = match.group()
            pos = match.end()
            if char == '"':
                self._in_string = True
            elif char in _CLOSERS:
                self._stack.append(char)
            else:
                opener = self._stack.pop() if self._stack else None
                if opener is None or _CLOSERS[opener] != char:
                    raise CLIJSONDecodeError(
                        f"Unbalanced {char!r} in CLI output: {_preview(buf[:pos])}",
                        raw=buf[:pos],
                    )
                if not self._stack:
                    return pos

        self._scan_pos = pos
        return None


__all__ = ["JSONFrameReader"]
