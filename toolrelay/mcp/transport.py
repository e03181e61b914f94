"""MCP server communication over stdio subprocesses and streamable HTTP."""

from __future__ import annotations

import itertools
import json
import logging
import os
import queue
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import httpx

from toolrelay.errors import ConfigurationError, MCPProtocolError, MCPTransportError
from toolrelay.mcp.protocol import SESSION_HEADER, JsonRpcRequest, JsonRpcResponse, parse_response
from toolrelay.validation.config import HttpTransportConfig, MCPServerConfig, StdioTransportConfig

logger = logging.getLogger(__name__)


class MCPTransport(ABC):
    """
    Carries one JSON-RPC request and its response at a time.

    Request ids are generated per transport, as monotonically increasing
    strings, and are never reused while the transport lives.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()

    def next_id(self) -> str:
        with self._id_lock:
            return str(next(self._ids))

    def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> JsonRpcRequest:
        """Build a request carrying a fresh id."""
        return JsonRpcRequest(id=self.next_id(), method=method, params=params)

    @abstractmethod
    def send(self, request: JsonRpcRequest) -> JsonRpcResponse:
        """Send one request and return the matching response."""

    @abstractmethod
    def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Send a notification; no response is expected."""

    @abstractmethod
    def close(self) -> None:
        """Release the underlying process or connection. Safe to call twice."""

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Whether the next ``send`` can reuse the current process or connection."""

    @staticmethod
    def _correlate(request: JsonRpcRequest, response: JsonRpcResponse) -> JsonRpcResponse:
        # Errors with a null id (e.g. parse errors) cannot be correlated, surface them as-is.
        if response.matches(request) or (response.is_error and response.id is None):
            return response
        raise MCPProtocolError(
            f"Response id {response.id!r} does not match request id {request.id!r}"
        )

    def __enter__(self) -> "MCPTransport":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


# ── stdio ─────────────────────────────────────────────────────────────────


class StdioTransport(MCPTransport):
    """
    Communicate with an MCP server over stdin/stdout (newline-delimited JSON-RPC).

    The subprocess is started lazily on first use. If it has exited by the
    time a request is sent, it is respawned transparently before writing.
    """

    def __init__(
        self,
        command: Sequence[str],
        env: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        cwd: Optional[str] = None,
    ):
        super().__init__(timeout=timeout)
        if not command:
            raise ConfigurationError("stdio transport requires a non-empty command")
        self.command: List[str] = list(command)
        self.env = env or {}
        self.cwd = cwd
        self.restarts = 0
        self._process: Optional[subprocess.Popen] = None
        self._lines: "Optional[queue.Queue[Optional[bytes]]]" = None
        self._started = False
        self._lock = threading.RLock()

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def start(self) -> None:
        """Spawn the MCP server subprocess."""
        with self._lock:
            if self.is_running:
                return
            if self._process is not None:
                self._release()

            merged_env = {**os.environ, **self.env}
            try:
                process = subprocess.Popen(
                    self.command,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    env=merged_env,
                    cwd=self.cwd,
                )
            except OSError as exc:
                raise MCPTransportError(
                    f"Failed to start MCP server process {self.command[0]!r}: {exc}"
                )

            lines: "queue.Queue[Optional[bytes]]" = queue.Queue()
            threading.Thread(
                target=self._pump_stdout, args=(process, lines), daemon=True
            ).start()
            threading.Thread(target=self._drain_stderr, args=(process,), daemon=True).start()

            self._process = process
            self._lines = lines
            if self._started:
                self.restarts += 1
                logger.info("Restarted MCP server %s (pid %s)", self.command[0], process.pid)
            else:
                logger.info("Started MCP server %s (pid %s)", self.command[0], process.pid)
            self._started = True

    def stop(self) -> None:
        """Terminate the MCP server subprocess."""
        with self._lock:
            self._release()

    close = stop

    def _release(self) -> None:
        process, self._process, self._lines = self._process, None, None
        if process is None:
            return
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
        for stream in (process.stdin, process.stdout, process.stderr):
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    pass
        logger.debug("Stopped MCP server %s (exit code %s)", self.command[0], process.returncode)

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @staticmethod
    def _pump_stdout(process: subprocess.Popen, lines: "queue.Queue[Optional[bytes]]") -> None:
        try:
            for raw in iter(process.stdout.readline, b""):
                lines.put(raw)
        except (OSError, ValueError):
            pass  # pipe closed by stop()
        lines.put(None)  # EOF

    def _drain_stderr(self, process: subprocess.Popen) -> None:
        try:
            for raw in iter(process.stderr.readline, b""):
                logger.debug("[%s stderr] %s", self.command[0], raw.decode(errors="replace").rstrip())
        except (OSError, ValueError):
            pass

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    def send(self, request: JsonRpcRequest) -> JsonRpcResponse:
        """Send a JSON-RPC request and wait for its response line."""
        with self._lock:
            if not self.is_running:
                self.start()
            self._write(request)
            return self._correlate(request, self._read_response(request))

    def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            if not self.is_running:
                self.start()
            self._write(JsonRpcRequest(method=method, params=params))

    def _write(self, request: JsonRpcRequest) -> None:
        line = request.to_json() + "\n"
        logger.debug("-> %s", line.rstrip())
        try:
            self._process.stdin.write(line.encode("utf-8"))
            self._process.stdin.flush()
        except (BrokenPipeError, OSError) as exc:
            raise MCPTransportError(f"Stdio transport error: {exc}")

    def _read_response(self, request: JsonRpcRequest) -> JsonRpcResponse:
        deadline = time.monotonic() + self.timeout
        while True:
            remaining = deadline - time.monotonic()
            try:
                if remaining <= 0:
                    raise queue.Empty
                raw = self._lines.get(timeout=remaining)
            except queue.Empty:
                # A late answer would desynchronise the pipe, so drop the process.
                self._release()
                raise MCPTransportError(
                    f"Timed out after {self.timeout}s waiting for response to '{request.method}'"
                )

            if raw is None:
                raise MCPTransportError("MCP server closed connection (empty response)")

            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            logger.debug("<- %s", line)

            try:
                data = json.loads(line)
            except ValueError as exc:
                raise MCPProtocolError(f"Invalid JSON from MCP server: {exc}")

            if isinstance(data, dict) and "method" in data and "id" not in data:
                logger.debug("Skipping server notification %s", data["method"])
                continue

            return parse_response(data)

    def __del__(self):
        try:
            self.stop()
        except Exception:
            pass


# ── HTTP / SSE ────────────────────────────────────────────────────────────


@dataclass
class SSEEvent:
    """One server-sent event."""

    event: str = "message"
    data: str = ""
    id: Optional[str] = None

    def json(self) -> Any:
        return json.loads(self.data)


def iter_sse_events(lines: Iterable[str]) -> Iterator[SSEEvent]:
    """Parse an event stream into ``SSEEvent`` objects."""
    event, data, event_id = "message", [], None
    for line in lines:
        line = line.rstrip("\r\n")
        if not line:
            if data:
                yield SSEEvent(event=event, data="\n".join(data), id=event_id)
            event, data, event_id = "message", [], None
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            data.append(value)
        elif field == "event":
            event = value
        elif field == "id":
            event_id = value
    if data:
        yield SSEEvent(event=event, data="\n".join(data), id=event_id)


class HttpTransport(MCPTransport):
    """
    JSON-RPC over HTTP POST to a single endpoint.

    Session-aware: a session id returned in the ``Mcp-Session-Id`` header
    (normally after ``initialize``) is sent with every later request, and
    the session is terminated with DELETE on ``close()``.
    """

    def __init__(
        self,
        url: str,
        path: str = "/mcp",
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(timeout=timeout)
        self.url = url.rstrip("/")
        self.path = path if path.startswith("/") else f"/{path}"
        self.headers = headers or {}
        self.session_id: Optional[str] = None
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout))
        self._closed = False
        self._lock = threading.Lock()

    @property
    def endpoint(self) -> str:
        return f"{self.url}{self.path}"

    @property
    def is_running(self) -> bool:
        return not self._closed

    def _headers(self, accept: str) -> Dict[str, str]:
        headers = {**self.headers, "Accept": accept}
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id
        return headers

    def _post(self, request: JsonRpcRequest) -> httpx.Response:
        if self._closed:
            raise MCPTransportError(f"HTTP transport to {self.endpoint} is closed")
        headers = self._headers("application/json, text/event-stream")
        headers["Content-Type"] = "application/json"
        logger.debug("POST %s %s", self.endpoint, request.method)
        try:
            response = self._client.post(self.endpoint, content=request.to_json(), headers=headers)
        except httpx.TimeoutException as exc:
            raise MCPTransportError(f"Timed out after {self.timeout}s talking to {self.endpoint}: {exc}")
        except httpx.HTTPError as exc:
            raise MCPTransportError(f"Transport error: {exc}")

        self._raise_for_status(response)
        session_id = response.headers.get(SESSION_HEADER)
        if session_id and session_id != self.session_id:
            logger.info("MCP session %s established with %s", session_id, self.endpoint)
            self.session_id = session_id
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code >= 400:
            response.read()
            raise MCPTransportError(f"HTTP {response.status_code}: {response.text}")

    def send(self, request: JsonRpcRequest) -> JsonRpcResponse:
        with self._lock:
            response = self._post(request)
            content_type = response.headers.get("content-type", "")
            if content_type.startswith("text/event-stream"):
                parsed = self._response_from_stream(response.text.splitlines(), request)
            else:
                parsed = parse_response(response.text)
            logger.debug("<- %s", parsed.to_json())
            return self._correlate(request, parsed)

    def _response_from_stream(self, lines: Iterable[str], request: JsonRpcRequest) -> JsonRpcResponse:
        for event in iter_sse_events(lines):
            try:
                data = event.json()
            except ValueError:
                continue
            if isinstance(data, dict) and ("result" in data or "error" in data):
                return parse_response(data)
        raise MCPProtocolError(f"Event stream ended without a response to '{request.method}'")

    def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            self._post(JsonRpcRequest(method=method, params=params))

    def open_event_stream(self) -> Iterator[SSEEvent]:
        """Open the GET notification channel for the current session."""
        if self._closed:
            raise MCPTransportError(f"HTTP transport to {self.endpoint} is closed")
        try:
            with self._client.stream(
                "GET", self.endpoint, headers=self._headers("text/event-stream")
            ) as response:
                self._raise_for_status(response)
                for event in iter_sse_events(response.iter_lines()):
                    yield event
        except httpx.HTTPError as exc:
            raise MCPTransportError(f"Event stream error: {exc}")

    def terminate_session(self) -> bool:
        """DELETE the current session server-side. Returns False if there was none."""
        if not self.session_id:
            return False
        try:
            response = self._client.delete(self.endpoint, headers=self._headers("application/json"))
        except httpx.HTTPError as exc:
            raise MCPTransportError(f"Failed to terminate session {self.session_id}: {exc}")
        logger.info("Terminated MCP session %s (HTTP %s)", self.session_id, response.status_code)
        self.session_id = None
        return response.status_code < 400

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                if self.session_id:
                    self.terminate_session()
            except MCPTransportError as exc:
                logger.warning("%s", exc)
            finally:
                if self._owns_client:
                    self._client.close()


def create_transport(config: MCPServerConfig) -> MCPTransport:
    """Build the transport described by a server config."""
    transport = config.transport
    if isinstance(transport, StdioTransportConfig):
        return StdioTransport(transport.command, env=config.env, timeout=config.timeout, cwd=transport.cwd)
    if isinstance(transport, HttpTransportConfig):
        return HttpTransport(transport.url, path=transport.path, timeout=config.timeout, headers=transport.headers)
    raise ConfigurationError(f"Unsupported transport for MCP server '{config.name}'")
