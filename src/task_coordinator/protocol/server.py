"""JSON-RPC tool server speaking newline-delimited JSON over stdio."""

from __future__ import annotations

import io
import json
import logging
import sys
import threading
from typing import Any, BinaryIO

from task_coordinator import __version__
from task_coordinator.config import Settings, configure_logging
from task_coordinator.coordination.repository import TaskRepository
from task_coordinator.protocol.framing import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    JSONRPC_VERSION,
    MCP_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    SERVER_NOT_INITIALIZED,
    FrameDecodeError,
    LineTooLongError,
    LineBuffer,
    decode_message,
    encode_message,
    make_error,
    make_result,
)
from task_coordinator.protocol.requests import UnknownToolError
from task_coordinator.protocol.tools import TaskToolService

logger = logging.getLogger(__name__)

SERVER_NAME = "task-coordinator"
READ_CHUNK_BYTES = 64 * 1024


class ToolServer:
    """Routes JSON-RPC messages to the tool service.

    ``initialize`` must succeed before ``tools/list`` and ``tools/call`` are
    served; ``ping`` and ``shutdown`` are always accepted.
    """

    def __init__(self, service: TaskToolService) -> None:
        self.service = service
        self.initialized = False
        self.shutdown_requested = False
        self._write_lock = threading.Lock()

    def handle_line(self, line: bytes) -> dict[str, Any] | None:
        try:
            message = decode_message(line)
        except FrameDecodeError as exc:
            return make_error(None, PARSE_ERROR, str(exc))
        return self.handle_message(message)

    def handle_message(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """Return the response for a request, or None for notifications."""

        request_id = message.get("id")
        method = message.get("method")
        is_notification = "id" not in message
        if message.get("jsonrpc") != JSONRPC_VERSION or not isinstance(method, str):
            if is_notification:
                logger.warning("Dropping malformed notification: %r", message)
                return None
            return make_error(request_id, INVALID_REQUEST, "Invalid JSON-RPC request")

        if is_notification:
            self._handle_notification(method)
            return None

        params = message.get("params")
        try:
            return make_result(request_id, self._dispatch(method, params))
        except _RpcError as exc:
            return make_error(request_id, exc.code, exc.message)
        except Exception as exc:
            logger.exception("Unhandled error while serving %s", method)
            return make_error(request_id, INTERNAL_ERROR, f"Internal error: {exc}")

    def serve(self, reader: io.BufferedIOBase, writer: BinaryIO) -> None:
        """Serve until EOF on ``reader`` or a ``shutdown`` request."""

        buffer = LineBuffer()
        logger.info("Tool server ready")
        while not self.shutdown_requested:
            chunk = reader.read1(READ_CHUNK_BYTES)
            if not chunk:
                tail = buffer.flush()
                if tail is not None:
                    self._respond(writer, self.handle_line(tail))
                break
            try:
                lines = buffer.feed(chunk)
            except LineTooLongError as exc:
                self._respond(writer, make_error(None, PARSE_ERROR, str(exc)))
                lines = exc.lines
            for line in lines:
                self._respond(writer, self.handle_line(line))
                if self.shutdown_requested:
                    break
        logger.info("Tool server stopped")

    def _respond(self, writer: BinaryIO, response: dict[str, Any] | None) -> None:
        if response is None:
            return
        with self._write_lock:
            writer.write(encode_message(response))
            writer.flush()

    def _handle_notification(self, method: str) -> None:
        if method == "notifications/initialized":
            logger.debug("Client confirmed initialization")
        elif method == "exit":
            self.shutdown_requested = True
        else:
            logger.debug("Ignoring notification %s", method)

    def _dispatch(self, method: str, params: Any) -> Any:
        if method == "initialize":
            return self._initialize(params)
        if method == "ping":
            return {}
        if method == "shutdown":
            self.shutdown_requested = True
            return None
        if not self.initialized:
            raise _RpcError(SERVER_NOT_INITIALIZED, "Server not initialized")
        if method == "tools/list":
            return {"tools": self.service.list_tools()}
        if method == "tools/call":
            return self._call_tool(params)
        raise _RpcError(METHOD_NOT_FOUND, f"Method not found: {method}")

    def _initialize(self, params: Any) -> dict[str, Any]:
        if params is not None and not isinstance(params, dict):
            raise _RpcError(INVALID_PARAMS, "initialize params must be an object")
        client = (params or {}).get("clientInfo") or {}
        logger.info(
            "Initialize from %s %s",
            client.get("name", "unknown"),
            client.get("version", ""),
        )
        self.initialized = True
        return {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {"name": SERVER_NAME, "version": __version__},
        }

    def _call_tool(self, params: Any) -> dict[str, Any]:
        if not isinstance(params, dict) or not isinstance(params.get("name"), str):
            raise _RpcError(INVALID_PARAMS, "tools/call requires params.name")
        name = params["name"]
        try:
            envelope = self.service.call_tool(name, params.get("arguments"))
        except UnknownToolError as exc:
            raise _RpcError(METHOD_NOT_FOUND, str(exc)) from exc
        return {
            "content": [{"type": "text", "text": json.dumps(envelope, ensure_ascii=False)}],
            "structuredContent": envelope,
            "isError": not envelope.get("success", False),
        }


class _RpcError(Exception):
    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def serve_repository(
    repository: TaskRepository,
    reader: io.BufferedIOBase,
    writer: BinaryIO,
    *,
    claim_attempts: int = 3,
) -> None:
    service = TaskToolService(repository, claim_attempts=claim_attempts)
    ToolServer(service).serve(reader, writer)


def run_stdio_server(settings: Settings) -> None:
    """Serve tools on this process's stdin/stdout; logs go to stderr."""

    configure_logging(settings.log_level)
    repository = TaskRepository(
        settings.db_path,
        busy_timeout_ms=settings.store.busy_timeout_ms,
        workspace_root=settings.store.workspace_root,
    )
    try:
        repository.init_schema()
        serve_repository(
            repository,
            sys.stdin.buffer,
            sys.stdout.buffer,
            claim_attempts=settings.store.claim_attempts,
        )
    finally:
        repository.close()
