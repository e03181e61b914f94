"""Local tools: definitions, argument validation and the base registry."""

from toolrelay.tools.registry import (
    ToolCallError,
    ToolCallErrorKind,
    ToolCallRequest,
    ToolCallResult,
    ToolFunction,
    ToolRegistry,
    tool,
)

__all__ = [
    "ToolCallError",
    "ToolCallErrorKind",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolFunction",
    "ToolRegistry",
    "tool",
]
