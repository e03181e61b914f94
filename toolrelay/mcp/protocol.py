"""JSON-RPC 2.0 envelopes and MCP payload models."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from toolrelay.errors import MCPProtocolError

JSONRPC_VERSION = "2.0"

LATEST_PROTOCOL_VERSION = "2025-03-26"
BASELINE_PROTOCOL_VERSION = "2024-11-05"
SUPPORTED_PROTOCOL_VERSIONS = (LATEST_PROTOCOL_VERSION, BASELINE_PROTOCOL_VERSION)

SESSION_HEADER = "Mcp-Session-Id"

# Reserved JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


def negotiate_version(requested: Optional[str]) -> str:
    """Echo a supported version, otherwise fall back to the baseline."""
    if requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return BASELINE_PROTOCOL_VERSION


# ── JSON-RPC envelope ─────────────────────────────────────────────────────


class JsonRpcRequest(BaseModel):
    """A JSON-RPC 2.0 request. ``id`` is None for notifications."""

    jsonrpc: str = JSONRPC_VERSION
    id: Optional[Union[str, int]] = None
    method: str
    params: Optional[Dict[str, Any]] = None

    @property
    def is_notification(self) -> bool:
        return self.id is None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)

    def to_json(self) -> str:
        return json.dumps(self.to_wire())


class JsonRpcError(BaseModel):
    """A JSON-RPC 2.0 error object."""

    code: int
    message: str
    data: Any = None


class JsonRpcResponse(BaseModel):
    """A JSON-RPC 2.0 response carrying either ``result`` or ``error``."""

    jsonrpc: str = JSONRPC_VERSION
    id: Optional[Union[str, int]] = None
    result: Any = None
    error: Optional[JsonRpcError] = None

    @classmethod
    def success(cls, request_id: Optional[Union[str, int]], result: Any) -> "JsonRpcResponse":
        return cls(id=request_id, result=result)

    @classmethod
    def failure(
        cls,
        request_id: Optional[Union[str, int]],
        code: int,
        message: str,
        data: Any = None,
    ) -> "JsonRpcResponse":
        return cls(id=request_id, error=JsonRpcError(code=code, message=message, data=data))

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def matches(self, request: JsonRpcRequest) -> bool:
        return self.id is not None and str(self.id) == str(request.id)

    def to_wire(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            error = {"code": self.error.code, "message": self.error.message}
            if self.error.data is not None:
                error["data"] = self.error.data
            data["error"] = error
        else:
            data["result"] = self.result
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_wire())


def parse_response(raw: Union[str, bytes, Dict[str, Any]]) -> JsonRpcResponse:
    """Parse one JSON-RPC response, raising ``MCPProtocolError`` if malformed."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise MCPProtocolError(f"Invalid JSON in MCP response: {exc}")

    if not isinstance(raw, dict):
        raise MCPProtocolError(f"Expected a JSON object, got {type(raw).__name__}")
    if "result" not in raw and "error" not in raw:
        raise MCPProtocolError("JSON-RPC response has neither 'result' nor 'error'")

    try:
        return JsonRpcResponse.model_validate(raw)
    except ValidationError as exc:
        raise MCPProtocolError(f"Malformed JSON-RPC response: {exc}")


# ── MCP payloads ──────────────────────────────────────────────────────────


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Implementation(_CamelModel):
    """Name and version of a client or server."""

    name: str
    version: str = "0.0.0"


class InitializeParams(_CamelModel):
    protocol_version: str = Field(alias="protocolVersion")
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    client_info: Implementation = Field(alias="clientInfo")


class InitializeResult(_CamelModel):
    protocol_version: str = Field(alias="protocolVersion")
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    server_info: Implementation = Field(alias="serverInfo")


class MCPTool(_CamelModel):
    """A tool definition as returned by ``tools/list``."""

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        alias="inputSchema",
    )


class ToolsListResult(_CamelModel):
    tools: List[MCPTool] = Field(default_factory=list)


class ToolsCallParams(_CamelModel):
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class MCPContent(_CamelModel):
    """One typed payload chunk of a tool result."""

    type: str = "text"
    text: Optional[str] = None


class ToolsCallResult(_CamelModel):
    content: List[MCPContent] = Field(default_factory=list)
    is_error: bool = Field(default=False, alias="isError")

    @classmethod
    def from_text(cls, text: str, is_error: bool = False) -> "ToolsCallResult":
        return cls(content=[MCPContent(type="text", text=text)], is_error=is_error)

    def text(self) -> str:
        """Flatten content chunks; text chunks pass through unmodified."""
        parts = []
        for chunk in self.content:
            if chunk.type == "text" and chunk.text is not None:
                parts.append(chunk.text)
            else:
                parts.append(json.dumps(chunk.to_wire()))
        return "\n".join(parts)
