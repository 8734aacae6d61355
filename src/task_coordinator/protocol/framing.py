"""Newline-delimited JSON-RPC 2.0 framing.

One message per line, UTF-8 encoded. ``LineBuffer`` reassembles lines from
arbitrary pipe reads, so a message split across reads (or several messages in
one read) decode the same way.
"""

from __future__ import annotations

import json
from typing import Any

JSONRPC_VERSION = "2.0"
MCP_PROTOCOL_VERSION = "2024-11-05"
DEFAULT_MAX_LINE_BYTES = 16 * 1024 * 1024

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
SERVER_NOT_INITIALIZED = -32002


class FrameDecodeError(ValueError):
    """A line is not a JSON-RPC message object."""


class LineTooLongError(FrameDecodeError):
    """An unterminated line outgrew the buffer; ``lines`` holds frames completed before it."""

    def __init__(self, message: str, *, lines: list[bytes] | None = None) -> None:
        super().__init__(message)
        self.lines = lines or []


class LineBuffer:
    """Accumulates bytes and yields complete newline-terminated lines."""

    def __init__(self, *, max_line_bytes: int = DEFAULT_MAX_LINE_BYTES) -> None:
        self.max_line_bytes = max_line_bytes
        self._pending = bytearray()
        self._discarding = False

    @property
    def pending_bytes(self) -> int:
        return len(self._pending)

    def feed(self, chunk: bytes) -> list[bytes]:
        """Append ``chunk`` and return every line it completed (without newline)."""

        if self._discarding:
            # rest of an oversized line
            index = chunk.find(b"\n")
            if index < 0:
                return []
            chunk = chunk[index + 1 :]
            self._discarding = False
        self._pending.extend(chunk)
        lines: list[bytes] = []
        while True:
            index = self._pending.find(b"\n")
            if index < 0:
                break
            line = bytes(self._pending[:index]).rstrip(b"\r")
            del self._pending[: index + 1]
            if line.strip():
                lines.append(line)
        if len(self._pending) > self.max_line_bytes:
            self._pending.clear()
            self._discarding = True
            raise LineTooLongError(
                f"Line exceeds {self.max_line_bytes} bytes without newline",
                lines=lines,
            )
        return lines

    def flush(self) -> bytes | None:
        """Return and clear a trailing unterminated line, if any (used at EOF)."""

        line = bytes(self._pending).strip()
        self._pending.clear()
        self._discarding = False
        return line or None


def encode_message(message: dict[str, Any]) -> bytes:
    return json.dumps(message, ensure_ascii=False, separators=(",", ":")).encode("utf-8") + b"\n"


def decode_message(line: bytes) -> dict[str, Any]:
    try:
        message = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FrameDecodeError(f"Invalid JSON frame: {exc}") from exc
    if not isinstance(message, dict):
        raise FrameDecodeError("JSON-RPC frame must be an object")
    return message


def make_request(request_id: int | str, method: str, params: Any = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_notification(method: str, params: Any = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_result(request_id: int | str | None, result: Any) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def make_error(
    request_id: int | str | None,
    code: int,
    message: str,
    data: Any = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}
