"""Tool interface and the function-backed tool implementation.

A tool is an async iterator: it may yield ToolStreamEvent progress items
and must finish by yielding exactly one ToolResultBlock. The agent loop
turns a missing result or a raised exception into an error result, so
tool code never needs to guard against its own failures.
"""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, get_type_hints

from pydantic import BaseModel, create_model
from pydantic_core import to_jsonable_python

from cadence.errors import normalize_error
from cadence.types.content import JsonBlock, TextBlock, ToolResultBlock, ToolUse
from cadence.types.streaming import ToolStreamEvent
from cadence.types.tracing import TracingContext

if TYPE_CHECKING:
    from cadence.agent.agent import Agent

logger = logging.getLogger(__name__)

# Parameter name through which a FunctionTool receives its ToolContext
CONTEXT_PARAM = "tool_context"


@dataclass
class ToolContext:
    """What a running tool can see: its request, the agent, and trace context when tracing."""

    tool_use: ToolUse
    agent: Agent
    tracing: TracingContext | None = None


class Tool(ABC):
    name: str
    description: str = ""
    input_schema: dict[str, Any] = {"type": "object", "properties": {}}

    @property
    def spec(self) -> dict[str, Any]:
        """Tool definition in the shape model providers expect."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }

    @abstractmethod
    def stream(self, context: ToolContext) -> AsyncIterator[ToolStreamEvent | ToolResultBlock]:
        """Run the tool. Yields progress events, then one ToolResultBlock."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


def error_result(error: Any, tool_use_id: str) -> ToolResultBlock:
    """Error ToolResultBlock carrying the normalized exception."""
    exc = normalize_error(error)
    return ToolResultBlock(
        tool_use_id=tool_use_id,
        status="error",
        content=(TextBlock(f"Error: {exc}"),),
        error=exc,
    )


def to_tool_result(value: Any, tool_use_id: str) -> ToolResultBlock:
    """Normalize a function's return value into a success ToolResultBlock.

    Accepts a ToolResultBlock, a string, an MCP-format dict
    ({"content": [{"type": "text", "text": "..."}], "isError": bool}),
    None (empty result), or any JSON-able value.
    """
    if isinstance(value, ToolResultBlock):
        return value
    if value is None:
        return ToolResultBlock(tool_use_id=tool_use_id, status="success")
    if isinstance(value, str):
        return ToolResultBlock(tool_use_id=tool_use_id, status="success", content=(TextBlock(value),))
    if isinstance(value, dict) and isinstance(value.get("content"), list):
        blocks: list[TextBlock | JsonBlock] = []
        for item in value["content"]:
            if isinstance(item, dict) and item.get("type", "text") == "text" and "text" in item:
                blocks.append(TextBlock(item["text"]))
            else:
                blocks.append(JsonBlock(to_jsonable_python(item, fallback=str)))
        is_error = bool(value.get("isError") or value.get("is_error"))
        return ToolResultBlock(
            tool_use_id=tool_use_id,
            status="error" if is_error else "success",
            content=tuple(blocks),
        )
    return ToolResultBlock(
        tool_use_id=tool_use_id,
        status="success",
        content=(JsonBlock(to_jsonable_python(value, fallback=str)),),
    )


class FunctionTool(Tool):
    """Wraps a sync or async callable invoked with the tool input as keyword arguments.

    Without an explicit input_schema, one is derived from the function
    signature with pydantic, and the input is validated against it before
    the call. Declare a `tool_context` parameter to receive the ToolContext.
    """

    def __init__(
        self,
        func: Callable[..., Any],
        *,
        name: str | None = None,
        description: str | None = None,
        input_schema: dict[str, Any] | None = None,
    ) -> None:
        self.func = func
        self.name = name or func.__name__
        self.description = description if description is not None else _first_paragraph(func.__doc__)
        self._wants_context = CONTEXT_PARAM in inspect.signature(func).parameters
        if input_schema is not None:
            self.input_schema = input_schema
            self._input_model: type[BaseModel] | None = None
        else:
            self._input_model = _input_model_for(func, self.name)
            self.input_schema = self._input_model.model_json_schema()
            self.input_schema.pop("title", None)

    async def stream(self, context: ToolContext) -> AsyncIterator[ToolStreamEvent | ToolResultBlock]:
        kwargs = dict(context.tool_use.input)
        logger.debug("Calling function tool %s (%s)", self.name, context.tool_use.tool_use_id)
        if self._input_model is not None:
            validated = self._input_model.model_validate(kwargs)
            kwargs = {field: getattr(validated, field) for field in self._input_model.model_fields}
        if self._wants_context:
            kwargs[CONTEXT_PARAM] = context

        result = self.func(**kwargs)
        if inspect.isawaitable(result):
            result = await result
        yield to_tool_result(result, context.tool_use.tool_use_id)

    async def __call__(self, **kwargs: Any) -> Any:
        """Call the wrapped function directly, bypassing the agent."""
        result = self.func(**kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result


def function_tool(
    func: Callable[..., Any] | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
    input_schema: dict[str, Any] | None = None,
) -> Any:
    """Decorator turning a function into a FunctionTool.

    Usable bare (@function_tool) or with arguments (@function_tool(name="x")).
    """

    def wrap(f: Callable[..., Any]) -> FunctionTool:
        return FunctionTool(f, name=name, description=description, input_schema=input_schema)

    if func is not None:
        return wrap(func)
    return wrap


def _first_paragraph(doc: str | None) -> str:
    if not doc:
        return ""
    return inspect.cleandoc(doc).split("\n\n", 1)[0].replace("\n", " ").strip()


def _input_model_for(func: Callable[..., Any], name: str) -> type[BaseModel]:
    try:
        hints = get_type_hints(func)
    except Exception:
        hints = {}
    fields: dict[str, Any] = {}
    for param_name, param in inspect.signature(func).parameters.items():
        if param_name == CONTEXT_PARAM or param.kind in (
            inspect.Parameter.VAR_POSITIONAL,
            inspect.Parameter.VAR_KEYWORD,
        ):
            continue
        annotation = hints.get(param_name, Any)
        default = ... if param.default is inspect.Parameter.empty else param.default
        fields[param_name] = (annotation, default)
    return create_model(f"{name}_input", **fields)

