# tools.py
# Tool registry: descriptors plus handlers, dispatched by name.
#
# The loop never calls handlers directly. Every call goes through
# ToolRegistry.call(), which validates arguments against a pydantic model
# built from the descriptor and turns handler failures into error results.

import json
import logging
from collections.abc import Callable, Iterable
from typing import Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    create_model,
)

from phase_guard.models import FieldSpec, ToolDescriptor, ToolResult

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], Any]

_JSON_TYPES: dict[str, Any] = {
    "string": StrictStr,
    "integer": StrictInt,
    "number": StrictFloat,
    "boolean": StrictBool,
    "object": dict[str, Any],
    "array": list[Any],
}


class RegistryError(Exception):
    """Raised at wiring time for duplicate or malformed registrations."""


# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------


def _annotation(spec: FieldSpec) -> Any:
    if spec.enum:
        return Literal[tuple(spec.enum)]
    names = spec.type if isinstance(spec.type, list) else [spec.type]
    types = [_JSON_TYPES.get(name, Any) for name in names if name is not None]
    if not types or Any in types:
        return Any
    return types[0] if len(types) == 1 else Union[tuple(types)]


def _numeric(spec: FieldSpec) -> bool:
    names = spec.type if isinstance(spec.type, list) else [spec.type]
    return bool(names) and all(name in ("integer", "number") for name in names)


def build_args_model(descriptor: ToolDescriptor) -> type[BaseModel]:
    """
    Pydantic model for a descriptor's input schema.

    Types are strict: the planner's JSON is checked, never coerced. Unknown
    argument names are let through.
    """
    fields: dict[str, Any] = {}
    for name, spec in descriptor.inputs.properties.items():
        bounds = {}
        if _numeric(spec):
            bounds = {"ge": spec.minimum, "le": spec.maximum}
        annotation = _annotation(spec)
        if name in descriptor.inputs.required:
            fields[name] = (annotation, Field(..., **bounds))
        else:
            fields[name] = (Optional[annotation], Field(None, **bounds))
    for name in descriptor.inputs.required:
        fields.setdefault(name, (Any, Field(...)))

    return create_model(
        f"{descriptor.name}.args",
        __config__=ConfigDict(extra="allow", protected_namespaces=()),
        **fields,
    )


def validate_args(model: type[BaseModel], args: dict[str, Any]) -> list[str]:
    """All argument errors, one per field. An explicit null counts as missing."""
    present = {key: value for key, value in args.items() if value is not None}
    try:
        model.model_validate(present)
    except ValidationError as exc:
        errors: list[str] = []
        seen: set[str] = set()
        for error in exc.errors():
            field = str(error["loc"][0]) if error["loc"] else "args"
            if field in seen:
                continue
            seen.add(field)
            if error["type"] == "missing":
                errors.append(f"Missing required field: {field}")
            else:
                errors.append(f"{field}: {error['msg']}")
        return errors
    return []


# ---------------------------------------------------------------------------
# Result normalization
# ---------------------------------------------------------------------------


def _unwrap(name: str, args: dict[str, Any], payload: Any) -> ToolResult:
    # Handlers may answer with a {status, result|error} envelope of their own.
    if isinstance(payload, dict) and payload.get("status") in ("success", "error"):
        if payload["status"] == "error":
            return ToolResult(status="error", tool=name, args=args, error=str(payload.get("error", "unknown error")))
        return ToolResult(status="success", tool=name, args=args, result=payload.get("result"))
    return ToolResult(status="success", tool=name, args=args, result=payload)


class ToolRegistry:
    """Name-keyed catalogue of tool descriptors and their handlers."""

    def __init__(self) -> None:
        self._tools: dict[str, tuple[ToolDescriptor, ToolHandler, type[BaseModel]]] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, descriptor: ToolDescriptor | dict[str, Any], handler: ToolHandler) -> ToolDescriptor:
        if isinstance(descriptor, dict):
            descriptor = ToolDescriptor.model_validate(descriptor)
        if not callable(handler):
            raise RegistryError(f"Handler for '{descriptor.name}' is not callable.")
        if descriptor.name in self._tools:
            raise RegistryError(f"Tool '{descriptor.name}' is already registered")

        try:
            args_model = build_args_model(descriptor)
        except (TypeError, ValueError) as exc:
            raise RegistryError(f"Tool '{descriptor.name}' has an unusable input schema: {exc}") from exc

        self._tools[descriptor.name] = (descriptor, handler, args_model)
        return descriptor

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def descriptor(self, name: str) -> ToolDescriptor | None:
        entry = self._tools.get(name)
        return entry[0] if entry else None

    def exists(self, name: str) -> bool:
        return name in self._tools

    def tool_names(self) -> list[str]:
        return list(self._tools)

    def descriptors(self) -> list[dict[str, Any]]:
        """Full catalogue in the shape the planning service expects."""
        return [descriptor.to_schema() for descriptor, _, _ in self._tools.values()]

    def descriptors_json(self) -> str:
        return json.dumps(self.descriptors(), indent=2)

    def view(self, allowed: Iterable[str]) -> "ScopedRegistry":
        return ScopedRegistry(self, allowed)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def call(self, name: str, args: dict[str, Any] | None = None) -> ToolResult:
        args = dict(args or {})
        entry = self._tools.get(name)
        if entry is None:
            return ToolResult(status="error", tool=name, args=args, error=f"Tool '{name}' not found")

        _, handler, args_model = entry
        errors = validate_args(args_model, args)
        if errors:
            return ToolResult(
                status="error",
                tool=name,
                args=args,
                error=f"Invalid arguments: {', '.join(errors)}",
                validation_errors=errors,
            )

        try:
            payload = handler(args)
        except Exception as exc:
            logger.warning("Tool %s raised %s: %s", name, type(exc).__name__, exc)
            return ToolResult(status="error", tool=name, args=args, error=f"{type(exc).__name__}: {exc}")

        return _unwrap(name, args, payload)


class ScopedRegistry:
    """
    Allowlisted view over a full registry.

    Tools outside the allowlist behave as if they were never registered.
    Calls are delegated to the parent so argument validation and error
    wrapping happen exactly once.
    """

    def __init__(self, parent: ToolRegistry, allowed: Iterable[str]) -> None:
        self._parent = parent
        self._allowed = [name for name in allowed if parent.exists(name)]

    def descriptor(self, name: str) -> ToolDescriptor | None:
        return self._parent.descriptor(name) if name in self._allowed else None

    def exists(self, name: str) -> bool:
        return name in self._allowed

    def tool_names(self) -> list[str]:
        return list(self._allowed)

    def descriptors(self) -> list[dict[str, Any]]:
        return [self._parent.descriptor(name).to_schema() for name in self._allowed]

    def descriptors_json(self) -> str:
        return json.dumps(self.descriptors(), indent=2)

    def call(self, name: str, args: dict[str, Any] | None = None) -> ToolResult:
        if name not in self._allowed:
            return ToolResult(
                status="error",
                tool=name,
                args=dict(args or {}),
                error=f"Tool '{name}' is not allowed in this phase",
            )
        return self._parent.call(name, args)
