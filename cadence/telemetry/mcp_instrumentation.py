"""W3C trace-context propagation into MCP tool calls.

instrument_mcp_client() patches a client's call_tool so that, while a span
is active, the traceparent/tracestate carrier rides along in the `_meta`
entry of the tool arguments. MCP servers that understand trace context
can then parent their own spans to the calling tool span.
"""

from __future__ import annotations

import functools
import logging
from typing import Any

from opentelemetry import context as otel_context
from opentelemetry import propagate, trace
from opentelemetry.context import Context

from cadence.telemetry.context_stack import span_context_stack

logger = logging.getLogger(__name__)

META_KEY = "_meta"
_INSTRUMENTED_ATTR = "_cadence_instrumented"


def active_trace_context() -> Context | None:
    """The ambient context when it holds a valid span, else the stack top, else None."""
    for ctx in (otel_context.get_current(), span_context_stack.current()):
        if trace.get_current_span(ctx).get_span_context().is_valid:
            return ctx
    return None


def inject_trace_context(arguments: dict[str, Any] | None) -> dict[str, Any] | None:
    """Return arguments with a `_meta` trace carrier added, or unchanged when no span is active."""
    ctx = active_trace_context()
    if ctx is None:
        logger.debug("No active span, skipping trace context injection")
        return arguments

    carrier: dict[str, str] = {}
    propagate.inject(carrier, context=ctx)
    if "traceparent" not in carrier:
        return arguments

    meta = dict((arguments or {}).get(META_KEY) or {})
    meta.update(carrier)
    span_context = trace.get_current_span(ctx).get_span_context()
    logger.debug(
        "Injecting trace context into MCP tool call (trace_id=%032x span_id=%016x)",
        span_context.trace_id,
        span_context.span_id,
    )
    return {**(arguments or {}), META_KEY: meta}


def instrument_mcp_client(client: Any) -> None:
    """Patch client.call_tool(name, arguments) to carry trace context. Idempotent."""
    if is_instrumented(client):
        logger.debug("MCP client already instrumented, skipping")
        return

    original = client.call_tool

    @functools.wraps(original)
    async def call_tool(name: str, arguments: dict[str, Any] | None = None, *args: Any, **kwargs: Any) -> Any:
        try:
            arguments = inject_trace_context(arguments)
        except Exception:
            logger.warning("Failed to inject trace context into MCP tool call", exc_info=True)
        return await original(name, arguments, *args, **kwargs)

    client.call_tool = call_tool
    setattr(client, _INSTRUMENTED_ATTR, True)
    logger.info("MCP client instrumented for trace context propagation")


def is_instrumented(client: Any) -> bool:
    return bool(getattr(client, _INSTRUMENTED_ATTR, False))
