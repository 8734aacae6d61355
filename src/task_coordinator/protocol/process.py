"""Client-side lifecycle for a coordinator tool server.

``CoordinatorProcess`` spawns ``task-coordinator serve`` (or, in embedded
mode, runs the same server loop on a thread connected through OS pipes),
performs the ``initialize`` handshake and multiplexes tool calls over the
newline-delimited JSON-RPC channel. Responses are matched to requests by
correlation id; each call waits with its own timeout.

State machine::

    stopped -> starting -> handshaking -> connected -> (error | stopped)
"""

from __future__ import annotations

import itertools
import json
import logging
import os
import subprocess
import sys
import threading
import time
from collections import deque
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from task_coordinator import __version__
from task_coordinator.config import Settings
from task_coordinator.coordination.repository import TaskRepository
from task_coordinator.protocol.framing import (
    MCP_PROTOCOL_VERSION,
    FrameDecodeError,
    LineTooLongError,
    LineBuffer,
    decode_message,
    encode_message,
    make_notification,
    make_request,
)
from task_coordinator.protocol.server import serve_repository

logger = logging.getLogger(__name__)

CLIENT_NAME = "task-coordinator-client"
READ_CHUNK_BYTES = 64 * 1024
_FORCE_KILL_WAIT_SECONDS = 2.0
_HISTORY_SIZE = 100


class ConnectionState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    HANDSHAKING = "handshaking"
    CONNECTED = "connected"
    ERROR = "error"


class CoordinatorProcessError(RuntimeError):
    """Lifecycle or transport failure; the coordinator must be restarted."""


class HandshakeTimeoutError(CoordinatorProcessError):
    pass


class ToolCallTimeoutError(CoordinatorProcessError):
    pass


class CoordinatorNotConnectedError(CoordinatorProcessError):
    pass


class ToolCallError(CoordinatorProcessError):
    """Server answered a request with a JSON-RPC error object."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"JSON-RPC error {code}: {message}")
        self.code = code
        self.rpc_message = message


@dataclass(slots=True)
class ToolCallRecord:
    tool_name: str
    started_at: float
    duration_ms: int
    success: bool
    error: str | None = None


class _SubprocessTransport:
    """Server running as a child process on stdin/stdout pipes."""

    def __init__(self, command: list[str], *, env: dict[str, str]) -> None:
        self.command = command
        self.env = env
        self.process: subprocess.Popen[bytes] | None = None
        self._stderr_thread: threading.Thread | None = None

    def open(self) -> None:
        self.process = subprocess.Popen(  # noqa: S603
            self.command,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=0,
            env=self.env,
        )
        self._stderr_thread = threading.Thread(
            target=self._drain_stderr,
            name="coordinator-stderr",
            daemon=True,
        )
        self._stderr_thread.start()
        logger.info("Spawned coordinator server pid=%s", self.process.pid)

    def write(self, data: bytes) -> None:
        if self.process is None or self.process.stdin is None:
            raise CoordinatorProcessError("Coordinator process is not running")
        view = memoryview(data)
        try:
            while view:
                written = self.process.stdin.write(view) or 0
                view = view[written:]
        except (BrokenPipeError, OSError, ValueError) as exc:
            raise CoordinatorProcessError(f"Coordinator process pipe closed: {exc}") from exc

    def read(self) -> bytes:
        if self.process is None or self.process.stdout is None:
            return b""
        try:
            return os.read(self.process.stdout.fileno(), READ_CHUNK_BYTES)
        except (OSError, ValueError):
            return b""

    def close_input(self) -> None:
        if self.process is not None and self.process.stdin is not None:
            try:
                self.process.stdin.close()
            except OSError:
                logger.debug("Coordinator stdin already closed")

    def wait(self, timeout: float) -> bool:
        """Return True once the server has exited."""

        if self.process is None:
            return True
        try:
            self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return False
        return True

    def terminate(self) -> None:
        if self.process is not None and self.process.poll() is None:
            logger.warning("Coordinator did not exit gracefully; sending SIGTERM")
            self.process.terminate()

    def kill(self) -> None:
        if self.process is not None and self.process.poll() is None:
            logger.warning("Coordinator ignored SIGTERM; sending SIGKILL")
            self.process.kill()

    def release(self) -> None:
        if self.process is None:
            return
        if self.process.stdout is not None:
            self.process.stdout.close()
        if self._stderr_thread is not None:
            self._stderr_thread.join(timeout=1.0)
        if self.process.stderr is not None:
            self.process.stderr.close()

    def describe(self) -> dict[str, Any]:
        return {
            "mode": "subprocess",
            "pid": self.process.pid if self.process is not None else None,
            "returncode": self.process.poll() if self.process is not None else None,
        }

    def _drain_stderr(self) -> None:
        assert self.process is not None and self.process.stderr is not None  # noqa: S101
        for raw in iter(self.process.stderr.readline, b""):
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                logger.debug("[coordinator] %s", line)


class _EmbeddedTransport:
    """Server loop on a daemon thread, wired through two OS pipes."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._client_read_fd: int | None = None
        self._client_write_fd: int | None = None
        self._thread: threading.Thread | None = None
        self.server_error: BaseException | None = None

    def open(self) -> None:
        server_read_fd, client_write_fd = os.pipe()
        client_read_fd, server_write_fd = os.pipe()
        self._client_read_fd = client_read_fd
        self._client_write_fd = client_write_fd
        self._thread = threading.Thread(
            target=self._run_server,
            args=(server_read_fd, server_write_fd),
            name="coordinator-embedded-server",
            daemon=True,
        )
        self._thread.start()

    def _run_server(self, read_fd: int, write_fd: int) -> None:
        repository = TaskRepository(
            self.settings.db_path,
            busy_timeout_ms=self.settings.store.busy_timeout_ms,
            workspace_root=self.settings.store.workspace_root,
        )
        try:
            with os.fdopen(read_fd, "rb") as reader, os.fdopen(write_fd, "wb") as writer:
                repository.init_schema()
                serve_repository(
                    repository,
                    reader,
                    writer,
                    claim_attempts=self.settings.store.claim_attempts,
                )
        except Exception as exc:
            self.server_error = exc
            logger.exception("Embedded coordinator server crashed")
        finally:
            repository.close()

    def write(self, data: bytes) -> None:
        if self._client_write_fd is None:
            raise CoordinatorProcessError("Embedded coordinator input is closed")
        view = memoryview(data)
        try:
            while view:
                written = os.write(self._client_write_fd, view)
                view = view[written:]
        except OSError as exc:
            raise CoordinatorProcessError(f"Embedded coordinator pipe closed: {exc}") from exc

    def read(self) -> bytes:
        if self._client_read_fd is None:
            return b""
        try:
            return os.read(self._client_read_fd, READ_CHUNK_BYTES)
        except OSError:
            return b""

    def close_input(self) -> None:
        if self._client_write_fd is not None:
            os.close(self._client_write_fd)
            self._client_write_fd = None

    def wait(self, timeout: float) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout=timeout)
        return not self._thread.is_alive()

    def terminate(self) -> None:
        # Threads cannot be signalled; the daemon thread dies with the interpreter.
        logger.warning("Embedded coordinator thread still running after grace period")

    def kill(self) -> None:
        pass

    def release(self) -> None:
        if self._client_read_fd is not None:
            os.close(self._client_read_fd)
            self._client_read_fd = None

    def describe(self) -> dict[str, Any]:
        return {
            "mode": "embedded",
            "alive": self._thread.is_alive() if self._thread is not None else False,
        }


class CoordinatorProcess:
    """Connection to one coordinator tool server."""

    def __init__(
        self,
        settings: Settings,
        *,
        embedded: bool = False,
        command: list[str] | None = None,
    ) -> None:
        self.settings = settings
        self.embedded = embedded
        self.command = command or default_server_command(settings)
        self.state = ConnectionState.STOPPED
        self.server_info: dict[str, Any] = {}
        self.history: deque[ToolCallRecord] = deque(maxlen=_HISTORY_SIZE)
        self.last_health_check: dict[str, Any] | None = None
        self.health_check_failures = 0

        self._transport: _SubprocessTransport | _EmbeddedTransport | None = None
        self._ids = itertools.count(1)
        self._pending: dict[int, Future[dict[str, Any]]] = {}
        self._pending_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._stopping = threading.Event()
        self._reader_thread: threading.Thread | None = None
        self._health_thread: threading.Thread | None = None

    def __enter__(self) -> CoordinatorProcess:
        self.start()
        return self

    def __exit__(self, *_: object) -> None:
        self.stop()

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def start(self) -> None:
        """Spawn the server and complete the handshake, or raise."""

        with self._state_lock:
            if self.state not in {ConnectionState.STOPPED, ConnectionState.ERROR}:
                raise CoordinatorProcessError(f"Cannot start from state={self.state.value}")
            self.state = ConnectionState.STARTING
        if self._transport is not None:
            # left behind by a server that exited on its own
            self._stopping.set()
            self._shutdown_transport()
        self._stopping.clear()
        self._ids = itertools.count(1)

        if self.embedded:
            self._transport = _EmbeddedTransport(self.settings)
        else:
            self._transport = _SubprocessTransport(self.command, env=self._server_env())
        try:
            self._transport.open()
        except OSError as exc:
            self._set_state(ConnectionState.ERROR)
            self._transport = None
            raise CoordinatorProcessError(f"Failed to start coordinator: {exc}") from exc

        self._reader_thread = threading.Thread(
            target=self._read_loop,
            args=(self._transport,),
            name="coordinator-reader",
            daemon=True,
        )
        self._reader_thread.start()

        self._set_state(ConnectionState.HANDSHAKING)
        timeout = self.settings.protocol.handshake_timeout_seconds
        try:
            result = self._request(
                "initialize",
                {
                    "protocolVersion": MCP_PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": CLIENT_NAME, "version": __version__},
                },
                timeout=timeout,
            )
            self._send(make_notification("notifications/initialized"))
        except ToolCallTimeoutError as exc:
            self._fail_start()
            raise HandshakeTimeoutError(
                f"Coordinator handshake timed out after {timeout:g}s",
            ) from exc
        except CoordinatorProcessError:
            self._fail_start()
            raise

        self.server_info = dict(result.get("serverInfo") or {}) if isinstance(result, dict) else {}
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Coordinator connected (%s)", self.server_info.get("name", "unknown"))

        self._health_thread = threading.Thread(
            target=self._health_loop,
            name="coordinator-health",
            daemon=True,
        )
        self._health_thread.start()

    def stop(self) -> None:
        """Graceful stop: close server input, wait, then SIGTERM, then SIGKILL."""

        if self._transport is None:
            self._set_state(ConnectionState.STOPPED)
            return
        self._stopping.set()
        self._shutdown_transport()
        self._set_state(ConnectionState.STOPPED)
        logger.info("Coordinator stopped")

    def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Run one tool and return its envelope."""

        if self.state is not ConnectionState.CONNECTED:
            raise CoordinatorNotConnectedError(
                f"Coordinator is not connected (state={self.state.value})",
            )
        started = time.monotonic()
        try:
            result = self._request(
                "tools/call",
                {"name": name, "arguments": arguments or {}},
                timeout=timeout or self.settings.protocol.call_timeout_seconds,
            )
            envelope = _extract_envelope(result)
        except CoordinatorProcessError as exc:
            self._record(name, started, success=False, error=str(exc))
            raise
        self._record(
            name,
            started,
            success=bool(envelope.get("success")),
            error=envelope.get("error"),
        )
        return envelope

    def list_tools(self) -> list[dict[str, Any]]:
        if self.state is not ConnectionState.CONNECTED:
            raise CoordinatorNotConnectedError("Coordinator is not connected")
        result = self._request(
            "tools/list",
            None,
            timeout=self.settings.protocol.call_timeout_seconds,
        )
        return list(result.get("tools", [])) if isinstance(result, dict) else []

    def ping(self) -> bool:
        self._request("ping", None, timeout=self.settings.protocol.call_timeout_seconds)
        return True

    def enqueue_task(self, **arguments: Any) -> dict[str, Any]:
        return self.call_tool("enqueue_task", arguments)

    def get_next_task(self, **arguments: Any) -> dict[str, Any]:
        return self.call_tool("get_next_task", arguments)

    def complete_task(self, **arguments: Any) -> dict[str, Any]:
        return self.call_tool("complete_task", arguments)

    def get_task_status(self, **arguments: Any) -> dict[str, Any]:
        return self.call_tool("get_task_status", arguments)

    def health_check(self) -> dict[str, Any]:
        envelope = self.call_tool(
            "health_check",
            {},
            timeout=self.settings.protocol.call_timeout_seconds,
        )
        self.last_health_check = envelope
        return envelope

    def describe(self) -> dict[str, Any]:
        """Connection snapshot for status output."""

        return {
            "state": self.state.value,
            "server_info": dict(self.server_info),
            "transport": self._transport.describe() if self._transport is not None else None,
            "tool_calls": len(self.history),
            "health_check_failures": self.health_check_failures,
        }

    def _server_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["TASK_COORDINATOR_DB_PATH"] = str(self.settings.db_path)
        env["TASK_COORDINATOR_LOG_LEVEL"] = self.settings.log_level
        env["TASK_COORDINATOR_SQLITE_BUSY_TIMEOUT_MS"] = str(self.settings.store.busy_timeout_ms)
        if self.settings.store.workspace_root is not None:
            env["TASK_COORDINATOR_WORKSPACE_ROOT"] = str(self.settings.store.workspace_root)
        env["TASK_COORDINATOR_CLAIM_ATTEMPTS"] = str(self.settings.store.claim_attempts)
        return env

    def _set_state(self, state: ConnectionState) -> None:
        with self._state_lock:
            if self.state is not state:
                logger.debug("Coordinator state %s -> %s", self.state.value, state.value)
            self.state = state

    def _fail_start(self) -> None:
        self._stopping.set()
        self._shutdown_transport()
        self._set_state(ConnectionState.ERROR)

    def _shutdown_transport(self) -> None:
        transport = self._transport
        if transport is None:
            return
        transport.close_input()
        if not transport.wait(self.settings.protocol.graceful_shutdown_seconds):
            transport.terminate()
            if not transport.wait(_FORCE_KILL_WAIT_SECONDS):
                transport.kill()
                transport.wait(_FORCE_KILL_WAIT_SECONDS)
        health_thread = self._health_thread
        if health_thread is not None and health_thread is not threading.current_thread():
            health_thread.join(timeout=_FORCE_KILL_WAIT_SECONDS)
        if self._reader_thread is not None:
            self._reader_thread.join(timeout=_FORCE_KILL_WAIT_SECONDS)
        transport.release()
        self._fail_pending(CoordinatorProcessError("Coordinator stopped"))
        self._transport = None
        self._reader_thread = None
        self._health_thread = None

    def _send(self, message: dict[str, Any]) -> None:
        transport = self._transport
        if transport is None:
            raise CoordinatorProcessError("Coordinator is not running")
        frame = encode_message(message)
        with self._send_lock:
            transport.write(frame)

    def _request(self, method: str, params: Any, *, timeout: float) -> Any:
        request_id = next(self._ids)
        future: Future[dict[str, Any]] = Future()
        with self._pending_lock:
            self._pending[request_id] = future
        try:
            self._send(make_request(request_id, method, params))
            response = future.result(timeout=timeout)
        except FutureTimeoutError as exc:
            raise ToolCallTimeoutError(
                f"{method} timed out after {timeout:g}s (id={request_id})",
            ) from exc
        finally:
            with self._pending_lock:
                self._pending.pop(request_id, None)

        if "error" in response:
            error = response.get("error") or {}
            raise ToolCallError(int(error.get("code", 0)), str(error.get("message", "")))
        return response.get("result")

    def _read_loop(self, transport: _SubprocessTransport | _EmbeddedTransport) -> None:
        buffer = LineBuffer()
        while True:
            chunk = transport.read()
            if not chunk:
                break
            try:
                lines = buffer.feed(chunk)
            except LineTooLongError as exc:
                logger.warning("Dropping oversized frame from coordinator: %s", exc)
                lines = exc.lines
            for line in lines:
                self._dispatch_line(line)

        self._fail_pending(CoordinatorProcessError("Coordinator connection closed"))
        if not self._stopping.is_set():
            logger.error("Coordinator exited unexpectedly")
            self._set_state(ConnectionState.ERROR)

    def _dispatch_line(self, line: bytes) -> None:
        try:
            message = decode_message(line)
        except FrameDecodeError as exc:
            logger.warning("Ignoring undecodable frame from coordinator: %s", exc)
            return
        request_id = message.get("id")
        if request_id is None or "method" in message:
            logger.debug("Coordinator notification: %s", message.get("method"))
            return
        with self._pending_lock:
            future = self._pending.pop(request_id, None)
        if future is None:
            logger.warning("Response for unknown request id=%s", request_id)
            return
        future.set_result(message)

    def _fail_pending(self, error: Exception) -> None:
        with self._pending_lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)

    def _health_loop(self) -> None:
        interval = self.settings.protocol.health_check_interval_seconds
        while not self._stopping.wait(interval):
            if self.state is not ConnectionState.CONNECTED:
                continue
            try:
                envelope = self.health_check()
            except CoordinatorProcessError as exc:
                self.health_check_failures += 1
                logger.warning("Coordinator health check failed: %s", exc)
                continue
            if not envelope.get("success"):
                self.health_check_failures += 1
                logger.warning("Coordinator health check unhealthy: %s", envelope.get("error"))

    def _record(self, name: str, started: float, *, success: bool, error: str | None) -> None:
        self.history.append(
            ToolCallRecord(
                tool_name=name,
                started_at=started,
                duration_ms=int((time.monotonic() - started) * 1000),
                success=success,
                error=error,
            ),
        )


def default_server_command(settings: Settings) -> list[str]:
    return [
        sys.executable,
        "-m",
        "task_coordinator.main",
        "serve",
        "--db-path",
        str(Path(settings.db_path)),
    ]


def _extract_envelope(result: Any) -> dict[str, Any]:
    if not isinstance(result, dict):
        raise CoordinatorProcessError("Malformed tools/call result")
    structured = result.get("structuredContent")
    if isinstance(structured, dict):
        return structured
    for item in result.get("content") or []:
        if isinstance(item, dict) and item.get("type") == "text":
            try:
                parsed = json.loads(item.get("text", ""))
            except json.JSONDecodeError as exc:
                raise CoordinatorProcessError("tools/call returned non-JSON text") from exc
            if isinstance(parsed, dict):
                return parsed
    raise CoordinatorProcessError("tools/call result has no JSON content")
