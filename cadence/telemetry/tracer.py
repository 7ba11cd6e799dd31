"""OpenTelemetry span production for agent, cycle, model and tool operations.

Every start_* call parents the new span to the top of the span context
stack, pushes a context with the new span active, and returns a SpanHandle.
Every end_* call records the outcome, ends the span and pops that context
in a finally block. Telemetry failures are logged and never raised into
the agent loop.

Two output conventions are supported, chosen once per Tracer from
OTEL_SEMCONV_STABILITY_OPT_IN:
  stable (default)            - one span event per message, gen_ai.choice for output
  gen_ai_latest_experimental  - one gen_ai.client.inference.operation.details
                                event with gen_ai.input/output.messages
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import Span, SpanKind, Status, StatusCode, TracerProvider
from opentelemetry.util.types import AttributeValue
from pydantic_core import to_jsonable_python

from cadence.config import LATEST_EXPERIMENTAL_OPT_IN, TOOL_DEFINITIONS_OPT_IN, Settings
from cadence.telemetry.context_stack import SpanContextStack, span_context_stack
from cadence.types.content import (
    ContentBlock,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolUse,
    ToolUseBlock,
)
from cadence.types.streaming import Metrics, Usage

logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "cadence"
SYSTEM_NAME = "cadence"
OPERATION_DETAILS_EVENT = "gen_ai.client.inference.operation.details"


@dataclass
class SpanHandle:
    """A started span plus the context that has it active."""

    span: Span
    context: Context
    ended: bool = False


def serialize(value: Any) -> str:
    """JSON string for span attributes. Unserializable leaves become their str()."""
    try:
        return json.dumps(to_jsonable_python(value, fallback=str), ensure_ascii=False)
    except (TypeError, ValueError):
        logger.warning("Failed to serialize %s for telemetry", type(value).__name__)
        return "{}"


def content_to_otel_parts(blocks: Iterable[ContentBlock]) -> list[dict[str, Any]]:
    """Map content blocks to the "parts" shape of the latest GenAI conventions."""
    parts: list[dict[str, Any]] = []
    for block in blocks:
        if isinstance(block, TextBlock):
            parts.append({"type": "text", "content": block.text})
        elif isinstance(block, ToolUseBlock):
            parts.append({
                "type": "tool_call",
                "name": block.name,
                "id": block.tool_use_id,
                "arguments": block.input,
            })
        elif isinstance(block, ToolResultBlock):
            parts.append({
                "type": "tool_call_response",
                "id": block.tool_use_id,
                "response": [c.to_dict() for c in block.content],
            })
        else:
            parts.append(block.to_dict())
    return parts


def _content_payload(blocks: Iterable[ContentBlock]) -> list[dict[str, Any]]:
    return [b.to_dict() for b in blocks]


def _event_name_for_message(message: Message) -> str:
    if message.role == "user" and message.tool_results:
        return "gen_ai.tool.message"
    if message.role == "user":
        return "gen_ai.user.message"
    if message.role == "assistant":
        return "gen_ai.assistant.message"
    return "gen_ai.message"


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _clean(attributes: Mapping[str, Any]) -> dict[str, AttributeValue]:
    return {k: v for k, v in attributes.items() if v is not None}


class Tracer:
    """Starts and ends gen_ai spans around agent operations."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        tracer_provider: TracerProvider | None = None,
        trace_attributes: Mapping[str, AttributeValue] | None = None,
        context_stack: SpanContextStack | None = None,
    ) -> None:
        settings = settings or Settings()
        opt_in = settings.semconv_opt_in
        # Fixed for the Tracer's lifetime
        self.use_latest_conventions = LATEST_EXPERIMENTAL_OPT_IN in opt_in
        self.include_tool_definitions = TOOL_DEFINITIONS_OPT_IN in opt_in
        self._trace_attributes = dict(trace_attributes or {})
        self._stack = context_stack or span_context_stack
        provider = tracer_provider or trace.get_tracer_provider()
        self._tracer = provider.get_tracer(INSTRUMENTATION_NAME)

        if self.use_latest_conventions:
            logger.warning(
                "Using experimental GenAI semantic conventions (%s); "
                "attribute names may change between releases",
                LATEST_EXPERIMENTAL_OPT_IN,
            )

    # ------------------------------------------------------------------
    # Agent span
    # ------------------------------------------------------------------

    def start_agent_span(
        self,
        *,
        agent_name: str,
        messages: Sequence[Message] = (),
        agent_id: str | None = None,
        model_id: str | None = None,
        tools: Sequence[str] | None = None,
        tool_specs: Sequence[Mapping[str, Any]] | None = None,
        system_prompt: str | None = None,
        trace_attributes: Mapping[str, AttributeValue] | None = None,
    ) -> SpanHandle | None:
        span_name = f"invoke_agent {agent_name}"
        attributes = self._common_attributes("invoke_agent")
        attributes["gen_ai.agent.name"] = agent_name
        attributes["name"] = span_name
        if agent_id:
            attributes["gen_ai.agent.id"] = agent_id
        if model_id:
            attributes["gen_ai.request.model"] = model_id
        if tools:
            attributes["gen_ai.agent.tools"] = serialize(list(tools))
        if self.include_tool_definitions and tool_specs:
            attributes["gen_ai.tool.definitions"] = serialize(list(tool_specs))
        if system_prompt is not None:
            attributes["system_prompt"] = serialize(system_prompt)

        handle = self._start_span(span_name, attributes, trace_attributes)
        if handle:
            self._add_event_messages(handle.span, messages)
        return handle

    def end_agent_span(
        self,
        handle: SpanHandle | None,
        *,
        response: Message | None = None,
        stop_reason: str | None = None,
        error: Exception | None = None,
        usage: Usage | None = None,
    ) -> None:
        if handle is None:
            return
        attributes: dict[str, AttributeValue] = {}
        try:
            if usage is not None:
                attributes.update(self._usage_attributes(usage))
            if response is not None:
                finish_reason = stop_reason or "end_turn"
                if self.use_latest_conventions:
                    self._add_event(handle.span, OPERATION_DETAILS_EVENT, {
                        "gen_ai.output.messages": serialize([{
                            "role": "assistant",
                            "parts": [{"type": "text", "content": response.text}],
                            "finish_reason": finish_reason,
                        }]),
                    })
                else:
                    self._add_event(handle.span, "gen_ai.choice", {
                        "message": response.text,
                        "finish_reason": finish_reason,
                    })
        except Exception:
            logger.warning("Failed to record agent span outcome", exc_info=True)
        finally:
            self._end_span(handle, attributes, error)

    # ------------------------------------------------------------------
    # Cycle span
    # ------------------------------------------------------------------

    def start_cycle_span(
        self,
        *,
        cycle_id: str,
        messages: Sequence[Message] = (),
        trace_attributes: Mapping[str, AttributeValue] | None = None,
    ) -> SpanHandle | None:
        attributes: dict[str, Any] = {"event_loop.cycle_id": cycle_id}
        handle = self._start_span("execute_event_loop_cycle", attributes, trace_attributes)
        if handle:
            self._add_event_messages(handle.span, messages)
        return handle

    def end_cycle_span(
        self,
        handle: SpanHandle | None,
        *,
        message: Message | None = None,
        tool_result_message: Message | None = None,
        error: Exception | None = None,
    ) -> None:
        if handle is None:
            return
        try:
            if message is not None and message.content:
                if self.use_latest_conventions:
                    self._add_event(handle.span, OPERATION_DETAILS_EVENT, {
                        "gen_ai.output.messages": serialize([{
                            "role": message.role,
                            "parts": content_to_otel_parts(message.content),
                        }]),
                    })
                else:
                    self._add_event(handle.span, "gen_ai.assistant.message", {
                        "content": serialize(_content_payload(message.content)),
                    })
            if tool_result_message is not None and tool_result_message.content:
                if self.use_latest_conventions:
                    self._add_event(handle.span, OPERATION_DETAILS_EVENT, {
                        "gen_ai.output.messages": serialize([{
                            "role": "tool",
                            "parts": content_to_otel_parts(tool_result_message.content),
                        }]),
                    })
                else:
                    self._add_event(handle.span, "gen_ai.tool.message", {
                        "role": "tool",
                        "content": serialize(_content_payload(tool_result_message.content)),
                    })
        except Exception:
            logger.warning("Failed to record cycle span outcome", exc_info=True)
        finally:
            self._end_span(handle, {}, error)

    # ------------------------------------------------------------------
    # Model span
    # ------------------------------------------------------------------

    def start_model_span(
        self,
        *,
        messages: Sequence[Message] = (),
        model_id: str | None = None,
        trace_attributes: Mapping[str, AttributeValue] | None = None,
    ) -> SpanHandle | None:
        attributes = self._common_attributes("chat")
        if model_id:
            attributes["gen_ai.request.model"] = model_id
        handle = self._start_span("chat", attributes, trace_attributes)
        if handle:
            self._add_event_messages(handle.span, messages)
        return handle

    def end_model_span(
        self,
        handle: SpanHandle | None,
        *,
        response: Message | None = None,
        stop_reason: str | None = None,
        error: Exception | None = None,
        usage: Usage | None = None,
        metrics: Metrics | None = None,
    ) -> None:
        if handle is None:
            return
        attributes: dict[str, AttributeValue] = {}
        try:
            if response is not None:
                finish_reason = stop_reason or "unknown"
                if self.use_latest_conventions:
                    self._add_event(handle.span, OPERATION_DETAILS_EVENT, {
                        "gen_ai.output.messages": serialize([{
                            "role": response.role,
                            "parts": content_to_otel_parts(response.content),
                            "finish_reason": finish_reason,
                        }]),
                    })
                else:
                    self._add_event(handle.span, "gen_ai.choice", {
                        "finish_reason": finish_reason,
                        "message": serialize(_content_payload(response.content)),
                    })
            if usage is not None:
                attributes.update(self._usage_attributes(usage))
            if metrics is not None:
                attributes.update(self._metrics_attributes(metrics))
        except Exception:
            logger.warning("Failed to record model span outcome", exc_info=True)
        finally:
            self._end_span(handle, attributes, error)

    # ------------------------------------------------------------------
    # Tool span
    # ------------------------------------------------------------------

    def start_tool_span(
        self,
        *,
        tool_use: ToolUse,
        trace_attributes: Mapping[str, AttributeValue] | None = None,
    ) -> SpanHandle | None:
        attributes = self._common_attributes("execute_tool")
        attributes["gen_ai.tool.name"] = tool_use.name
        attributes["gen_ai.tool.call.id"] = tool_use.tool_use_id

        handle = self._start_span(f"execute_tool {tool_use.name}", attributes, trace_attributes)
        if handle is None:
            return None
        if self.use_latest_conventions:
            self._add_event(handle.span, OPERATION_DETAILS_EVENT, {
                "gen_ai.input.messages": serialize([{
                    "role": "tool",
                    "parts": [{
                        "type": "tool_call",
                        "name": tool_use.name,
                        "id": tool_use.tool_use_id,
                        "arguments": tool_use.input,
                    }],
                }]),
            })
        else:
            self._add_event(handle.span, "gen_ai.tool.message", {
                "role": "tool",
                "content": serialize(tool_use.input),
                "id": tool_use.tool_use_id,
            })
        return handle

    def end_tool_span(
        self,
        handle: SpanHandle | None,
        *,
        result: ToolResultBlock | None = None,
        error: Exception | None = None,
    ) -> None:
        if handle is None:
            return
        attributes: dict[str, AttributeValue] = {}
        try:
            if result is not None:
                attributes["gen_ai.tool.status"] = result.status
                content = [c.to_dict() for c in result.content]
                if self.use_latest_conventions:
                    self._add_event(handle.span, OPERATION_DETAILS_EVENT, {
                        "gen_ai.output.messages": serialize([{
                            "role": "tool",
                            "parts": [{
                                "type": "tool_call_response",
                                "id": result.tool_use_id,
                                "response": content,
                            }],
                        }]),
                    })
                else:
                    self._add_event(handle.span, "gen_ai.choice", {
                        "message": serialize(content),
                        "id": result.tool_use_id,
                    })
        except Exception:
            logger.warning("Failed to record tool span outcome", exc_info=True)
        finally:
            self._end_span(handle, attributes, error)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _start_span(
        self,
        name: str,
        attributes: Mapping[str, Any],
        trace_attributes: Mapping[str, AttributeValue] | None = None,
        kind: SpanKind = SpanKind.INTERNAL,
    ) -> SpanHandle | None:
        merged = {**attributes, **self._trace_attributes, **(trace_attributes or {})}
        parent = self._stack.current()
        try:
            span = self._tracer.start_span(
                name, context=parent, kind=kind, attributes=_clean(merged)
            )
            span.set_attribute("gen_ai.event.start_time", _now())
        except Exception:
            logger.warning("Failed to start span %s", name, exc_info=True)
            return None
        ctx = trace.set_span_in_context(span, parent)
        self._stack.push(ctx)
        return SpanHandle(span=span, context=ctx)

    def _end_span(
        self,
        handle: SpanHandle,
        attributes: Mapping[str, Any],
        error: Exception | None = None,
    ) -> None:
        if handle.ended:
            logger.debug("Span already ended, ignoring")
            return
        handle.ended = True
        span = handle.span
        try:
            span.set_attributes(_clean({"gen_ai.event.end_time": _now(), **attributes}))
            if error is not None:
                span.set_status(Status(StatusCode.ERROR, str(error)))
                span.record_exception(error)
            else:
                span.set_status(Status(StatusCode.OK))
            span.end()
        except Exception:
            logger.warning("Failed to end span", exc_info=True)
        finally:
            self._stack.pop(handle.context)

    def _common_attributes(self, operation_name: str) -> dict[str, Any]:
        attributes: dict[str, Any] = {"gen_ai.operation.name": operation_name}
        if self.use_latest_conventions:
            attributes["gen_ai.provider.name"] = SYSTEM_NAME
        else:
            attributes["gen_ai.system"] = SYSTEM_NAME
        return attributes

    @staticmethod
    def _usage_attributes(usage: Usage) -> dict[str, AttributeValue]:
        attributes: dict[str, AttributeValue] = {
            "gen_ai.usage.prompt_tokens": usage.input_tokens,
            "gen_ai.usage.input_tokens": usage.input_tokens,
            "gen_ai.usage.completion_tokens": usage.output_tokens,
            "gen_ai.usage.output_tokens": usage.output_tokens,
            "gen_ai.usage.total_tokens": usage.total_tokens,
        }
        # Omitted when unmeasured; zero is a real measurement
        if usage.cache_read_input_tokens is not None:
            attributes["gen_ai.usage.cache_read_input_tokens"] = usage.cache_read_input_tokens
        if usage.cache_write_input_tokens is not None:
            attributes["gen_ai.usage.cache_write_input_tokens"] = usage.cache_write_input_tokens
        return attributes

    @staticmethod
    def _metrics_attributes(metrics: Metrics) -> dict[str, AttributeValue]:
        attributes: dict[str, AttributeValue] = {}
        if metrics.time_to_first_byte_ms is not None:
            attributes["gen_ai.server.time_to_first_token"] = metrics.time_to_first_byte_ms
        if metrics.latency_ms is not None:
            attributes["gen_ai.server.request.duration"] = metrics.latency_ms
        return attributes

    def _add_event(self, span: Span, name: str, attributes: Mapping[str, Any] | None = None) -> None:
        try:
            span.add_event(name, _clean(attributes or {}))
        except Exception:
            logger.warning("Failed to add span event %s", name)

    def _add_event_messages(self, span: Span, messages: Sequence[Message]) -> None:
        try:
            if self.use_latest_conventions:
                self._add_event(span, OPERATION_DETAILS_EVENT, {
                    "gen_ai.input.messages": serialize([
                        {"role": m.role, "parts": content_to_otel_parts(m.content)}
                        for m in messages
                    ]),
                })
                return
            for message in messages:
                self._add_event(span, _event_name_for_message(message), {
                    "content": serialize(_content_payload(message.content)),
                })
        except Exception:
            logger.warning("Failed to add message events", exc_info=True)


_default_tracer: Tracer | None = None


def get_tracer(settings: Settings | None = None) -> Tracer:
    """Process-wide default Tracer, created on first use."""
    global _default_tracer
    if _default_tracer is None:
        _default_tracer = Tracer(settings)
    return _default_tracer
