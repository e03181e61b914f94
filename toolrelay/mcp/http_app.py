"""FastAPI app exposing an ``MCPServer`` over streamable HTTP."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response, StreamingResponse

from toolrelay.mcp.protocol import (
    JSONRPC_VERSION,
    LATEST_PROTOCOL_VERSION,
    PARSE_ERROR,
    SESSION_HEADER,
    JsonRpcResponse,
)
from toolrelay.mcp.server import MCPServer, Session, SessionStore

logger = logging.getLogger(__name__)

EVENT_STREAM = "text/event-stream"


def _sse(data: Dict[str, Any], event: str = "message") -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def create_app(
    server: MCPServer,
    sessions: Optional[SessionStore] = None,
    keepalive_interval: Optional[float] = None,
) -> FastAPI:
    """
    Build the HTTP front end for ``server``.

    ``POST /mcp`` carries JSON-RPC. An ``initialize`` that negotiates the
    latest protocol version opens a session whose id is returned in the
    ``Mcp-Session-Id`` header. ``GET /mcp`` opens the session's event
    stream and ``DELETE /mcp`` terminates it. ``POST /sse`` is the legacy
    stateless endpoint.

    With ``keepalive_interval`` unset the event stream closes right after
    its opening event; otherwise it stays open, sending keepalive comments,
    until the session ends or the client disconnects.
    """
    sessions = sessions if sessions is not None else SessionStore()
    app = FastAPI(title=f"{server.info.name} MCP server")
    app.state.mcp_server = server
    app.state.sessions = sessions

    async def _decode(request: Request) -> Any:
        body = await request.body()
        return json.loads(body)

    def _parse_error(exc: Exception) -> JSONResponse:
        reply = JsonRpcResponse.failure(None, PARSE_ERROR, f"Parse error: {exc}")
        return JSONResponse(reply.to_wire(), status_code=400)

    @app.post("/mcp")
    async def mcp_post(request: Request) -> Response:
        try:
            message = await _decode(request)
        except ValueError as exc:
            return _parse_error(exc)

        headers: Dict[str, str] = {}
        session_id = request.headers.get(SESSION_HEADER)
        is_initialize = isinstance(message, dict) and message.get("method") == "initialize"

        if session_id and not is_initialize:
            if session_id in sessions:
                headers[SESSION_HEADER] = session_id
            else:
                logger.warning("Request with unknown session id %s", session_id)

        reply = await run_in_threadpool(server.handle, message)
        if reply is None:
            return Response(status_code=202, headers=headers)

        if is_initialize and "result" in reply:
            version = reply["result"].get("protocolVersion")
            if version == LATEST_PROTOCOL_VERSION:
                session = sessions.create(version)
                headers[SESSION_HEADER] = session.id

        return JSONResponse(reply, headers=headers)

    @app.get("/mcp")
    async def mcp_stream(request: Request) -> Response:
        if EVENT_STREAM not in request.headers.get("accept", ""):
            return JSONResponse({"error": f"Accept header must include {EVENT_STREAM}"}, status_code=406)

        session = sessions.get(request.headers.get(SESSION_HEADER))
        if session is None:
            return JSONResponse({"error": "Missing or invalid session id"}, status_code=400)

        return StreamingResponse(
            _event_stream(request, session),
            media_type=EVENT_STREAM,
            headers={SESSION_HEADER: session.id, "Cache-Control": "no-cache"},
        )

    async def _event_stream(request: Request, session: Session) -> AsyncIterator[str]:
        yield ": SSE stream opened\n\n"
        yield _sse(
            {
                "jsonrpc": JSONRPC_VERSION,
                "method": "notification/stream_started",
                "params": {"sessionId": session.id, "protocolVersion": session.protocol_version},
            }
        )
        if keepalive_interval is None:
            return
        while session.id in sessions:
            await asyncio.sleep(keepalive_interval)
            if await request.is_disconnected():
                break
            yield ": keepalive\n\n"

    @app.delete("/mcp")
    async def mcp_delete(request: Request) -> Response:
        session_id = request.headers.get(SESSION_HEADER)
        if not session_id:
            return JSONResponse({"error": "Missing session id"}, status_code=400)
        if not sessions.remove(session_id):
            return JSONResponse({"error": "Session not found"}, status_code=404)
        return JSONResponse({"status": "session_terminated"})

    @app.post("/sse")
    async def legacy_post(request: Request) -> Response:
        try:
            message = await _decode(request)
        except ValueError as exc:
            return _parse_error(exc)
        reply = await run_in_threadpool(server.handle, message)
        if reply is None:
            return Response(status_code=202)
        return JSONResponse(reply)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "sessions": len(sessions)}

    return app
