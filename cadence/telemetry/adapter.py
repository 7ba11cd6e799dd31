"""Hook provider that turns agent lifecycle events into Tracer spans.

The adapter owns span bookkeeping (which handle belongs to which event)
so the Tracer stays stateless. Any tracer object works: each span
operation is looked up with getattr and skipped when the tracer does not
implement it. Span methods are called with keyword arguments only, so a
custom tracer should accept **kwargs on the methods it implements.

Span hierarchy with cycle spans enabled:
    invoke_agent > execute_event_loop_cycle > chat | execute_tool
and without:
    invoke_agent > chat | execute_tool
"""

from __future__ import annotations

import logging
from typing import Any

from cadence.config import Settings
from cadence.hooks.events import (
    AfterInvocationEvent,
    AfterModelCallEvent,
    AfterToolCallEvent,
    AfterToolsEvent,
    BeforeInvocationEvent,
    BeforeModelCallEvent,
    BeforeToolCallEvent,
)
from cadence.hooks.registry import HookRegistry
from cadence.telemetry.tracer import get_tracer
from cadence.telemetry.usage import accumulate_usage, copy_usage, empty_usage
from cadence.types.streaming import StopReason, Usage

logger = logging.getLogger(__name__)

_SPAN_KINDS = ("agent", "cycle", "model", "tool")


class TracerHookAdapter:
    def __init__(self, tracer: Any, *, enable_cycle_spans: bool = True) -> None:
        self._tracer = tracer
        self._enable_cycle_spans = enable_cycle_spans

        self._agent_span: Any = None
        self._cycle_span: Any = None
        self._model_span: Any = None
        self._tool_spans: dict[str, Any] = {}
        self._cycle_count = 0
        self._accumulated_usage = empty_usage()

        for kind in _SPAN_KINDS:
            if self._method(f"start_{kind}_span") and not self._method(f"end_{kind}_span"):
                logger.warning(
                    "Tracer %s implements start_%s_span but not end_%s_span; "
                    "those spans will never close and the trace hierarchy will be corrupted",
                    type(tracer).__name__,
                    kind,
                    kind,
                )

    @property
    def accumulated_usage(self) -> Usage:
        return copy_usage(self._accumulated_usage)

    @property
    def enable_cycle_spans(self) -> bool:
        return self._enable_cycle_spans

    def register_hooks(self, registry: HookRegistry) -> None:
        registry.add_callback(BeforeInvocationEvent, self._on_before_invocation)
        registry.add_callback(AfterInvocationEvent, self._on_after_invocation)
        registry.add_callback(BeforeModelCallEvent, self._on_before_model_call)
        registry.add_callback(AfterModelCallEvent, self._on_after_model_call)
        registry.add_callback(BeforeToolCallEvent, self._on_before_tool_call)
        registry.add_callback(AfterToolCallEvent, self._on_after_tool_call)
        if self._enable_cycle_spans:
            registry.add_callback(AfterToolsEvent, self._on_after_tools)

    def _method(self, name: str) -> Any:
        method = getattr(self._tracer, name, None)
        return method if callable(method) else None

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    def _on_before_invocation(self, event: BeforeInvocationEvent) -> None:
        self._accumulated_usage = empty_usage()
        self._tool_spans.clear()
        self._agent_span = None
        self._cycle_span = None
        self._model_span = None
        self._cycle_count = 0

        start = self._method("start_agent_span")
        if not start:
            return
        agent = event.agent
        self._agent_span = start(
            agent_name=agent.name,
            agent_id=agent.agent_id,
            model_id=agent.model.model_id,
            messages=[*agent.messages, *event.input_messages],
            tools=agent.tool_registry.names(),
            tool_specs=agent.tool_registry.tool_specs(),
            system_prompt=agent.system_prompt,
            trace_attributes=agent.trace_attributes,
        )

    def _on_after_invocation(self, event: AfterInvocationEvent) -> None:
        # Error path: close whatever the failed cycle left open, innermost first
        for tool_use_id in list(self._tool_spans):
            self._end("tool", self._tool_spans.pop(tool_use_id), error=event.error)
        if self._model_span is not None:
            self._end("model", self._model_span, error=event.error)
            self._model_span = None
        if self._cycle_span is not None:
            self._end("cycle", self._cycle_span, error=event.error)
            self._cycle_span = None

        if self._agent_span is None:
            return
        usage = event.accumulated_usage or self._accumulated_usage
        result = event.result
        self._end(
            "agent",
            self._agent_span,
            response=result.last_message if result else None,
            stop_reason=result.stop_reason if result else None,
            error=event.error,
            usage=usage,
        )
        self._agent_span = None

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    def _on_before_model_call(self, event: BeforeModelCallEvent) -> None:
        agent = event.agent
        if self._enable_cycle_spans and self._cycle_span is None:
            start_cycle = self._method("start_cycle_span")
            if start_cycle:
                self._cycle_count += 1
                self._cycle_span = start_cycle(
                    cycle_id=f"cycle-{self._cycle_count}",
                    messages=list(agent.messages),
                    trace_attributes=agent.trace_attributes,
                )

        start = self._method("start_model_span")
        if not start:
            return
        # Parents to the cycle span when present, else the agent span
        self._model_span = start(
            messages=list(agent.messages),
            model_id=agent.model.model_id,
            trace_attributes=agent.trace_attributes,
        )

    def _on_after_model_call(self, event: AfterModelCallEvent) -> None:
        if event.usage is not None:
            accumulate_usage(self._accumulated_usage, event.usage)

        stop_data = event.stop_data
        if self._model_span is not None:
            self._end(
                "model",
                self._model_span,
                response=stop_data.message if stop_data else None,
                stop_reason=stop_data.stop_reason if stop_data else None,
                error=event.error,
                usage=event.usage,
                metrics=event.metrics,
            )
            self._model_span = None

        # A failed call keeps its cycle open: a retry reuses it, otherwise
        # AfterInvocation closes it with the error
        if (
            self._enable_cycle_spans
            and self._cycle_span is not None
            and stop_data is not None
            and stop_data.stop_reason != StopReason.TOOL_USE
        ):
            self._end("cycle", self._cycle_span, message=stop_data.message)
            self._cycle_span = None

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    def _on_before_tool_call(self, event: BeforeToolCallEvent) -> None:
        start = self._method("start_tool_span")
        if not start or event.tool_use is None:
            return
        handle = start(tool_use=event.tool_use, trace_attributes=event.agent.trace_attributes)
        if handle is None:
            return
        self._tool_spans[event.tool_use.tool_use_id] = handle

        span = getattr(handle, "span", None)
        if span is not None and hasattr(span, "get_span_context"):
            event.set_active_span(span, getattr(handle, "context", None))

    def _on_after_tool_call(self, event: AfterToolCallEvent) -> None:
        if event.tool_use is None:
            return
        handle = self._tool_spans.pop(event.tool_use.tool_use_id, None)
        if handle is None:
            return
        self._end("tool", handle, result=event.result, error=event.error)

    def _on_after_tools(self, event: AfterToolsEvent) -> None:
        if self._cycle_span is None:
            return
        self._end(
            "cycle",
            self._cycle_span,
            message=event.message,
            tool_result_message=event.tool_result_message,
        )
        self._cycle_span = None

    def _end(self, kind: str, handle: Any, **outcome: Any) -> None:
        end = self._method(f"end_{kind}_span")
        if end:
            end(handle, **outcome)


class TelemetryHookProvider(TracerHookAdapter):
    """TracerHookAdapter bound to the process-wide OpenTelemetry Tracer."""

    def __init__(self, settings: Settings | None = None, tracer: Any = None) -> None:
        settings = settings or Settings()
        super().__init__(
            tracer if tracer is not None else get_tracer(settings),
            enable_cycle_spans=settings.enable_cycle_spans,
        )
