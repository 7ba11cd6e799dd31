"""Lifecycle events dispatched by the agent loop.

Each event is a plain dataclass carrying the agent plus whatever the hook
point knows. Handlers may mutate the few writable fields the loop reads
back (AfterModelCallEvent.retry_model_call, BeforeToolCallEvent active span).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from opentelemetry.context import Context
from opentelemetry.trace import Span

from cadence.types.content import Message, ToolResultBlock, ToolUse
from cadence.types.streaming import AgentResult, Metrics, ModelStreamEvent, Usage
from cadence.types.tracing import TracingContext

if TYPE_CHECKING:
    from cadence.agent.agent import Agent
    from cadence.tools.tool import Tool

logger = logging.getLogger(__name__)


@dataclass
class HookEvent:
    agent: Agent


@dataclass
class BeforeInvocationEvent(HookEvent):
    input_messages: list[Message] = field(default_factory=list)


@dataclass
class AfterInvocationEvent(HookEvent):
    result: AgentResult | None = None
    error: Exception | None = None
    accumulated_usage: Usage | None = None


@dataclass
class MessageAddedEvent(HookEvent):
    message: Message | None = None


@dataclass
class BeforeModelCallEvent(HookEvent):
    pass


@dataclass
class ModelStopData:
    message: Message
    stop_reason: str


@dataclass
class AfterModelCallEvent(HookEvent):
    stop_data: ModelStopData | None = None
    error: Exception | None = None
    usage: Usage | None = None
    metrics: Metrics | None = None
    # Set by a handler to re-attempt the same cycle's model call after an error
    retry_model_call: bool = False


@dataclass
class ModelStreamEventHook(HookEvent):
    event: ModelStreamEvent | None = None


@dataclass
class BeforeToolsEvent(HookEvent):
    message: Message | None = None


@dataclass
class AfterToolsEvent(HookEvent):
    message: Message | None = None
    tool_result_message: Message | None = None


@dataclass
class BeforeToolCallEvent(HookEvent):
    tool_use: ToolUse | None = None
    tool: Tool | None = None
    active_span: Span | None = field(default=None, init=False)
    active_context: Context | None = field(default=None, init=False)
    tracing: TracingContext | None = field(default=None, init=False)

    def set_active_span(self, span: Span, context: Context | None = None) -> None:
        """Mark the span the tool should run under.

        The context, when given, is attached around each step of the tool's
        iteration so nested instrumentation parents to the tool span.
        """
        self.active_span = span
        self.active_context = context
        self.tracing = TracingContext.from_span(span)
        if self.tracing is None:
            logger.debug("Active span for tool %s has no valid span context", self.tool_use)


@dataclass
class AfterToolCallEvent(HookEvent):
    tool_use: ToolUse | None = None
    tool: Tool | None = None
    result: ToolResultBlock | None = None
    error: Exception | None = None


def event_name(event: HookEvent | type[HookEvent]) -> str:
    cls = event if isinstance(event, type) else type(event)
    return cls.__name__
