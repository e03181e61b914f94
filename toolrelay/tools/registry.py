"""Local tool registry: resolves, validates and executes tool calls by name."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Type

from pydantic import BaseModel, ValidationError

from toolrelay.errors import ToolExecutionError, UnknownFunctionError
from toolrelay.tools.schema import build_arguments_model, describe_parameters, validate_arguments

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolCallRequest:
    """A request to invoke one tool."""

    function_name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


class ToolCallErrorKind(str, Enum):
    UNKNOWN_FUNCTION = "unknown_function"
    EXECUTION_ERROR = "execution_error"


@dataclass(frozen=True)
class ToolCallError:
    kind: ToolCallErrorKind
    function_name: str
    message: str

    @classmethod
    def unknown_function(cls, name: str) -> "ToolCallError":
        return cls(ToolCallErrorKind.UNKNOWN_FUNCTION, name, f"Unknown function: {name}")

    @classmethod
    def execution_error(cls, name: str, message: str) -> "ToolCallError":
        return cls(ToolCallErrorKind.EXECUTION_ERROR, name, message)

    def to_exception(self) -> Exception:
        if self.kind is ToolCallErrorKind.UNKNOWN_FUNCTION:
            return UnknownFunctionError(self.function_name)
        return ToolExecutionError(self.function_name, self.message)


@dataclass(frozen=True)
class ToolCallResult:
    """Either a success value or a ``ToolCallError``; never both."""

    value: Any = None
    error: Optional[ToolCallError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def is_unknown_function(self) -> bool:
        return self.error is not None and self.error.kind is ToolCallErrorKind.UNKNOWN_FUNCTION

    def unwrap(self) -> Any:
        """Return the value or raise the matching exception."""
        if self.error is not None:
            raise self.error.to_exception()
        return self.value


class ToolFunction:
    """
    A named, schema-described capability.

    ``handler`` receives the validated arguments as a dict and returns any
    JSON-serialisable value (or raises).
    """

    def __init__(
        self,
        name: str,
        description: str,
        handler: Callable[[Dict[str, Any]], Any],
        parameters: Optional[Dict[str, Any]] = None,
        validate: bool = True,
    ):
        self.name = name
        self.description = description
        self.handler = handler
        self.parameters = parameters or {"type": "object", "properties": {}}
        self.validate = validate
        self._arguments_model: Optional[Type[BaseModel]] = None

    def __repr__(self) -> str:
        return f"ToolFunction(name={self.name!r})"

    @property
    def arguments_model(self) -> Type[BaseModel]:
        if self._arguments_model is None:
            self._arguments_model = build_arguments_model(self.name, self.parameters)
        return self._arguments_model

    def execute(self, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """Validate arguments against the schema and invoke the handler."""
        if self.validate:
            arguments = validate_arguments(self.arguments_model, arguments)
        return self.handler(arguments or {})

    def to_openai_tool(self, strict: bool = True) -> Dict[str, Any]:
        """Function-calling schema in the OpenAI chat completions format."""
        function = {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }
        if strict:
            function["strict"] = True
        return {"type": "function", "function": function}

    def full_schema_text(self) -> str:
        lines = [f"Tool: {self.name}", f"  {self.description}", "  Parameters:"]
        params = describe_parameters(self.parameters)
        if not params:
            lines.append("    (none)")
        lines.extend(f"    - {p}" for p in params)
        return "\n".join(lines)


def tool(
    name: Optional[str] = None,
    description: str = "",
    parameters: Optional[Dict[str, Any]] = None,
) -> Callable[[Callable[..., Any]], ToolFunction]:
    """Decorator turning ``fn(**arguments)`` into a ``ToolFunction``."""

    def wrap(fn: Callable[..., Any]) -> ToolFunction:
        return ToolFunction(
            name=name or fn.__name__,
            description=description or (fn.__doc__ or "").strip().split("\n")[0],
            handler=lambda arguments: fn(**arguments),
            parameters=parameters,
        )

    return wrap


class ToolRegistry:
    """
    Holds local tool implementations keyed by exact name.

    Registration and lookup share a lock so one registry can serve
    concurrent agent turns.
    """

    def __init__(self, tools: Iterable[ToolFunction] = ()):
        self._lock = threading.Lock()
        self._functions: Dict[str, ToolFunction] = {}
        for fn in tools:
            self.register(fn)

    def register(self, fn: ToolFunction) -> None:
        with self._lock:
            if fn.name in self._functions:
                logger.warning("Replacing tool registered under name %s", fn.name)
            self._functions = {**self._functions, fn.name: fn}

    def get(self, name: str) -> Optional[ToolFunction]:
        return self._functions.get(name)

    def tools(self) -> List[ToolFunction]:
        return list(self._functions.values())

    def execute(self, request: ToolCallRequest) -> ToolCallResult:
        """Look up ``request.function_name`` and run it; faults become results."""
        fn = self.get(request.function_name)
        if fn is None:
            return ToolCallResult(error=ToolCallError.unknown_function(request.function_name))
        return run_tool(fn, request)

    def describe(self) -> List[Dict[str, Any]]:
        """Tool catalog: name, description and parameter schema per tool."""
        return [
            {"name": fn.name, "description": fn.description, "parameters": fn.parameters}
            for fn in self.tools()
        ]

    def wire_schemas(self, strict: bool = True) -> List[Dict[str, Any]]:
        """Tool catalog in the model provider's request format."""
        return [fn.to_openai_tool(strict) for fn in self.tools()]


def run_tool(fn: ToolFunction, request: ToolCallRequest) -> ToolCallResult:
    """Invoke ``fn``; validation failures and handler faults become ``EXECUTION_ERROR``."""
    try:
        return ToolCallResult(value=fn.execute(request.arguments))
    except ValidationError as exc:
        message = f"Invalid arguments for tool '{fn.name}': {exc.error_count()} validation error(s): " + "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return ToolCallResult(error=ToolCallError.execution_error(fn.name, message))
    except Exception as exc:
        logger.debug("Tool %s raised", fn.name, exc_info=True)
        return ToolCallResult(error=ToolCallError.execution_error(fn.name, str(exc) or type(exc).__name__))
