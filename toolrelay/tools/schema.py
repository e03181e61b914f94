"""Argument validation for tools described by a JSON parameter schema."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, create_model

_JSON_TYPES: Dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "array": list,
    "object": dict,
    "null": type(None),
}


def _python_type(prop: Dict[str, Any]) -> Any:
    enum = prop.get("enum")
    if enum and all(isinstance(v, (str, int, bool)) for v in enum):
        return Literal[tuple(enum)]

    json_type = prop.get("type")
    if isinstance(json_type, list):
        members = tuple(_JSON_TYPES.get(t, Any) for t in json_type)
        return Union[members] if members else Any
    return _JSON_TYPES.get(json_type, Any)


def build_arguments_model(name: str, schema: Optional[Dict[str, Any]]) -> Type[BaseModel]:
    """
    Build a pydantic model that validates and coerces tool arguments.

    Only top-level ``properties``, ``required`` and ``enum`` are enforced;
    nested structures are passed through. Unknown arguments are kept.
    Fields use positional names with the property name as alias, so property
    names need not be valid Python identifiers.
    """
    schema = schema or {}
    properties: Dict[str, Dict[str, Any]] = schema.get("properties") or {}
    required = set(schema.get("required") or [])

    fields: Dict[str, Tuple[Any, Any]] = {}
    for index, (prop_name, prop) in enumerate(properties.items()):
        py_type = _python_type(prop if isinstance(prop, dict) else {})
        if prop_name in required:
            fields[f"arg_{index}"] = (py_type, Field(..., alias=prop_name))
        else:
            fields[f"arg_{index}"] = (Optional[py_type], Field(None, alias=prop_name))

    model_name = "".join(part.capitalize() for part in name.replace("-", "_").split("_")) or "Tool"
    return create_model(
        f"{model_name}Arguments",
        __config__=ConfigDict(extra="allow", populate_by_name=False),
        **fields,
    )


def validate_arguments(model: Type[BaseModel], arguments: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate ``arguments`` and return them coerced, keyed by property name.

    Raises ``pydantic.ValidationError`` on failure.
    """
    validated = model.model_validate(arguments or {})
    return validated.model_dump(by_alias=True, exclude_unset=True)


def describe_parameters(schema: Optional[Dict[str, Any]]) -> List[str]:
    """One line per parameter, for human-readable listings."""
    schema = schema or {}
    required = set(schema.get("required") or [])
    lines = []
    for prop_name, prop in (schema.get("properties") or {}).items():
        req = " (required)" if prop_name in required else ""
        desc = prop.get("description", "") if isinstance(prop, dict) else ""
        kind = prop.get("type", "any") if isinstance(prop, dict) else "any"
        lines.append(f"{prop_name}: {kind}{req}" + (f" - {desc}" if desc else ""))
    return lines
