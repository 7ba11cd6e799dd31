"""Agent -- drives the model/tool loop and owns the conversation.

One invocation runs cycles of: call the model, and when it asks for
tools, run them one at a time in the order requested. The assistant
tool-use message and the user tool-result message are appended together
after every tool has finished, so the conversation never ends on an
unanswered tool request.

Hook dispatch is inline: each lifecycle event's callbacks are awaited
before the loop continues and before the event reaches the stream
consumer. MessageAdded callbacks run at append time.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import replace
from typing import Any

from opentelemetry import context as otel_context
from opentelemetry.context import Context

from cadence.agent.state import AgentState
from cadence.config import Settings
from cadence.errors import (
    ConcurrentInvocationError,
    MalformedModelOutputError,
    MaxCyclesExceededError,
    ModelCallError,
    ToolExecutionError,
    normalize_error,
)
from cadence.hooks.events import (
    AfterInvocationEvent,
    AfterModelCallEvent,
    AfterToolCallEvent,
    AfterToolsEvent,
    BeforeInvocationEvent,
    BeforeModelCallEvent,
    BeforeToolCallEvent,
    BeforeToolsEvent,
    HookEvent,
    MessageAddedEvent,
    ModelStopData,
    ModelStreamEventHook,
)
from cadence.hooks.registry import HookProvider, HookRegistry
from cadence.models.model import Model
from cadence.telemetry.adapter import TracerHookAdapter
from cadence.telemetry.meter_adapter import MeterHookAdapter, OtelMeter
from cadence.telemetry.mcp_instrumentation import instrument_mcp_client
from cadence.telemetry.metrics import EventLoopMetrics, Trace
from cadence.telemetry.tracer import get_tracer
from cadence.telemetry.usage import accumulate_usage, copy_usage, empty_usage
from cadence.tools.mcp import McpClient
from cadence.tools.registry import ToolRegistry
from cadence.tools.tool import FunctionTool, Tool, ToolContext, error_result
from cadence.types.content import (
    ContentBlock,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    content_block_from_dict,
)
from cadence.types.streaming import (
    AgentResult,
    ModelResponse,
    ModelStreamEvent,
    StopReason,
    ToolStreamEvent,
    Usage,
)

logger = logging.getLogger(__name__)

AgentInput = str | Message | Sequence[Message | ContentBlock | dict[str, Any]] | None
AgentStreamEvent = HookEvent | ModelStreamEvent | ToolStreamEvent | ToolResultBlock | AgentResult


class Agent:
    """Conversational agent over a model provider and a set of tools.

    Only one invocation may be in flight per Agent. stream() is the
    primary interface; invoke() drains it and returns the AgentResult.
    """

    def __init__(
        self,
        model: Model,
        *,
        tools: Iterable[Any] | None = None,
        messages: Iterable[Message | dict[str, Any]] | None = None,
        system_prompt: str | None = None,
        name: str | None = None,
        agent_id: str | None = None,
        hooks: Iterable[HookProvider] | None = None,
        settings: Settings | None = None,
        tracer: Any = None,
        meter: Any = None,
        trace_attributes: dict[str, Any] | None = None,
        state: AgentState | dict[str, Any] | None = None,
        max_cycles: int | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self.model = model
        self.system_prompt = system_prompt
        self.name = name or self._settings.agent_name
        self.agent_id = agent_id or f"agent-{uuid.uuid4().hex[:12]}"
        self.trace_attributes = dict(trace_attributes or {})
        self.state = state if isinstance(state, AgentState) else AgentState(state)
        self.max_cycles = max_cycles if max_cycles is not None else self._settings.max_cycles
        self.messages: list[Message] = [
            m if isinstance(m, Message) else Message.from_dict(m) for m in (messages or [])
        ]

        self.tool_registry = ToolRegistry()
        self._mcp_clients: list[McpClient] = []
        for item in _flatten(tools or []):
            if isinstance(item, McpClient):
                self._mcp_clients.append(item)
            elif isinstance(item, Tool):
                self.tool_registry.register(item)
            elif callable(item):
                self.tool_registry.register(FunctionTool(item))
            else:
                raise TypeError(f"Unsupported tool: {item!r}")

        self.hooks = HookRegistry()
        self._tracer_adapter: TracerHookAdapter | None = None
        if tracer is not None or self._settings.telemetry_enabled:
            self._tracer_adapter = TracerHookAdapter(
                tracer if tracer is not None else get_tracer(self._settings),
                enable_cycle_spans=self._settings.enable_cycle_spans,
            )
            self.hooks.add_hook(self._tracer_adapter)
        self._meter_adapter: MeterHookAdapter | None = None
        if meter is not None or self._settings.metrics_enabled:
            self._meter_adapter = MeterHookAdapter(
                meter if meter is not None else OtelMeter(),
                enable_cycle_metrics=self._settings.enable_cycle_metrics,
            )
            self.hooks.add_hook(self._meter_adapter)
        self.hooks.add_hooks(hooks or [])

        self._initialized = False
        self._invoking = False
        self._accumulated_usage = empty_usage()
        self.event_loop_metrics = EventLoopMetrics()

    @property
    def tools(self) -> list[Tool]:
        return self.tool_registry.values()

    @property
    def tracing_enabled(self) -> bool:
        return self._tracer_adapter is not None

    @property
    def accumulated_usage(self) -> Usage:
        """Token usage summed over the model calls of the latest invocation."""
        return copy_usage(self._accumulated_usage)

    async def initialize(self) -> None:
        """Connect MCP clients and register their tools. Runs once."""
        if self._initialized:
            return
        if self.tracing_enabled:
            for client in self._mcp_clients:
                instrument_mcp_client(client)
        listed = await asyncio.gather(*(client.list_tools() for client in self._mcp_clients))
        for client, tools in zip(self._mcp_clients, listed):
            self.tool_registry.register_all(tools)
            logger.info("Registered %d tools from MCP client '%s'", len(tools), client.name)
        self._initialized = True

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def invoke(self, prompt: AgentInput = None) -> AgentResult:
        result: AgentResult | None = None
        async for event in self.stream(prompt):
            if isinstance(event, AgentResult):
                result = event
        if result is None:
            raise RuntimeError("Agent stream ended without a result")
        return result

    async def stream(self, prompt: AgentInput = None) -> AsyncIterator[AgentStreamEvent]:
        """Run one invocation, yielding lifecycle, model and tool events.

        The last item is the AgentResult. AfterInvocation callbacks run on
        every exit path, including errors and the generator being closed.
        """
        with self._invocation_lock():
            await self.initialize()
            input_messages = self._normalize_input(prompt)
            self._accumulated_usage = empty_usage()
            self.event_loop_metrics.reset_usage_metrics()

            result: AgentResult | None = None
            error: Exception | None = None
            try:
                yield await self._dispatch(BeforeInvocationEvent(agent=self, input_messages=input_messages))
                async for event in self._event_loop(input_messages):
                    if isinstance(event, AgentResult):
                        result = event
                    else:
                        yield event
            except Exception as e:
                error = e
                logger.warning("Invocation of agent %s failed: %s", self.name, e)
                raise
            finally:
                after = AfterInvocationEvent(
                    agent=self,
                    result=result,
                    error=error,
                    accumulated_usage=copy_usage(self._accumulated_usage),
                )
                await self.hooks.invoke_callbacks(after)

            yield after
            if result is None:
                raise RuntimeError("Event loop ended without a result")
            yield result

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _event_loop(self, input_messages: list[Message]) -> AsyncIterator[AgentStreamEvent]:
        for message in input_messages:
            yield await self._append_message(message)

        cycle = 0
        while True:
            cycle += 1
            if self.max_cycles is not None and cycle > self.max_cycles:
                raise MaxCyclesExceededError(self.max_cycles)
            logger.debug("Agent %s starting cycle-%d", self.name, cycle)

            attributes = {"event_loop_cycle_id": f"cycle-{cycle}"}
            start_time, cycle_trace = self.event_loop_metrics.start_cycle(attributes)
            cycle_message: Message | None = None
            try:
                response: ModelResponse | None = None
                async for event in self._invoke_model():
                    if isinstance(event, ModelResponse):
                        response = event
                    else:
                        yield event
                if response is None:
                    raise ModelCallError("Model call produced no response")
                cycle_message = response.message

                if response.stop_reason != StopReason.TOOL_USE:
                    yield await self._append_message(response.message)
                    yield AgentResult(stop_reason=response.stop_reason, last_message=response.message)
                    return

                tool_uses = response.message.tool_uses
                if not tool_uses:
                    raise MalformedModelOutputError(
                        "Model reported stop reason tool_use but returned no tool use blocks"
                    )

                yield await self._dispatch(BeforeToolsEvent(agent=self, message=response.message))
                results: list[ToolResultBlock] = []
                for tool_use in tool_uses:
                    tool_trace = Trace(f"Tool: {tool_use.name}", parent_id=cycle_trace.id)
                    cycle_trace.add_child(tool_trace)
                    started = time.monotonic()
                    async for event in self._execute_tool(tool_use):
                        if isinstance(event, ToolResultBlock):
                            results.append(event)
                            self.event_loop_metrics.add_tool_usage(
                                tool_use.to_tool_use(),
                                time.monotonic() - started,
                                tool_trace,
                                success=event.status == "success",
                                message=Message(role="user", content=(event,)),
                            )
                        yield event
                tool_result_message = Message(role="user", content=tuple(results))
                yield await self._dispatch(AfterToolsEvent(
                    agent=self,
                    message=response.message,
                    tool_result_message=tool_result_message,
                ))

                yield await self._append_message(response.message)
                yield await self._append_message(tool_result_message)
            finally:
                self.event_loop_metrics.end_cycle(start_time, cycle_trace, attributes, cycle_message)

    async def _invoke_model(self) -> AsyncIterator[AgentStreamEvent | ModelResponse]:
        """One model call, re-attempted while an AfterModelCall handler asks for a retry.

        Only provider failures reach AfterModelCall. An error raised by a
        ModelStreamEventHook callback propagates like any other hook error.
        """
        while True:
            yield await self._dispatch(BeforeModelCallEvent(agent=self))
            response: ModelResponse | None = None
            error: Exception | None = None
            stream = self.model.stream_aggregated(
                list(self.messages),
                tool_specs=self.tool_registry.tool_specs(),
                system_prompt=self.system_prompt,
            )
            try:
                while True:
                    try:
                        item = await anext(stream)
                    except StopAsyncIteration:
                        break
                    except Exception as e:
                        error = e
                        break
                    if isinstance(item, ModelResponse):
                        response = item
                        continue
                    if self.hooks.has_callbacks(ModelStreamEventHook):
                        await self.hooks.invoke_callbacks(ModelStreamEventHook(agent=self, event=item))
                    yield item
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()

            if error is None and response is None:
                error = ModelCallError("Model stream ended without a response")
            if error is not None:
                after = await self._dispatch(AfterModelCallEvent(agent=self, error=error))
                yield after
                if after.retry_model_call:
                    logger.info("Retrying model call after error: %s", error)
                    continue
                raise error

            if response.usage is not None:
                accumulate_usage(self._accumulated_usage, response.usage)
                self.event_loop_metrics.update_usage(response.usage)
            if response.metrics is not None:
                self.event_loop_metrics.update_metrics(response.metrics)
            yield await self._dispatch(AfterModelCallEvent(
                agent=self,
                stop_data=ModelStopData(message=response.message, stop_reason=response.stop_reason),
                usage=response.usage,
                metrics=response.metrics,
            ))
            yield response
            return

    async def _execute_tool(self, block: ToolUseBlock) -> AsyncIterator[AgentStreamEvent]:
        """Run one tool. Always ends by yielding a ToolResultBlock, never raises for tool failures."""
        tool_use = block.to_tool_use()
        tool = self.tool_registry.get(block.name)

        if tool is None:
            message = f"Tool '{block.name}' not found in registry"
            logger.warning(message)
            result = ToolResultBlock(
                tool_use_id=block.tool_use_id,
                status="error",
                content=(TextBlock(message),),
                error=ToolExecutionError(message, tool_name=block.name, tool_use_id=block.tool_use_id),
            )
            yield await self._dispatch(AfterToolCallEvent(agent=self, tool_use=tool_use, result=result))
            yield result
            return

        before = await self._dispatch(BeforeToolCallEvent(agent=self, tool_use=tool_use, tool=tool))
        yield before

        context = ToolContext(tool_use=tool_use, agent=self, tracing=before.tracing)
        result: ToolResultBlock | None = None
        try:
            async for item in _iterate_with_context(tool.stream(context), before.active_context):
                if isinstance(item, ToolResultBlock):
                    result = item
                    continue
                if not isinstance(item, ToolStreamEvent):
                    item = ToolStreamEvent(data=item)
                if item.tool_use_id is None:
                    item.tool_use_id = block.tool_use_id
                yield item
        except Exception as e:
            error = normalize_error(e)
            logger.warning("Tool %s (%s) failed: %s", block.name, block.tool_use_id, error)
            result = error_result(error, block.tool_use_id)
            yield await self._dispatch(AfterToolCallEvent(
                agent=self, tool_use=tool_use, tool=tool, result=result, error=error,
            ))
            yield result
            return

        if result is None:
            message = f"Tool '{block.name}' did not return a result"
            logger.warning(message)
            result = ToolResultBlock(
                tool_use_id=block.tool_use_id,
                status="error",
                content=(TextBlock(message),),
                error=ToolExecutionError(message, tool_name=block.name, tool_use_id=block.tool_use_id),
            )
        elif result.tool_use_id != block.tool_use_id:
            result = replace(result, tool_use_id=block.tool_use_id)

        yield await self._dispatch(AfterToolCallEvent(agent=self, tool_use=tool_use, tool=tool, result=result))
        yield result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _invocation_lock(self) -> Iterator[None]:
        if self._invoking:
            raise ConcurrentInvocationError()
        self._invoking = True
        try:
            yield
        finally:
            self._invoking = False

    async def _dispatch(self, event: Any) -> Any:
        await self.hooks.invoke_callbacks(event)
        return event

    async def _append_message(self, message: Message) -> MessageAddedEvent:
        self.messages.append(message)
        return await self._dispatch(MessageAddedEvent(agent=self, message=message))

    @staticmethod
    def _normalize_input(prompt: AgentInput) -> list[Message]:
        """str -> one user text message; content blocks -> one user message; messages -> as-is."""
        if prompt is None:
            return []
        if isinstance(prompt, str):
            return [Message.user_text(prompt)]
        if isinstance(prompt, Message):
            return [prompt]

        items = list(prompt)
        if not items:
            return []
        if all(isinstance(i, Message) or (isinstance(i, dict) and "role" in i) for i in items):
            return [i if isinstance(i, Message) else Message.from_dict(i) for i in items]
        if any(isinstance(i, Message) or (isinstance(i, dict) and "role" in i) for i in items):
            raise TypeError("Agent input mixes messages and content blocks")

        blocks = [content_block_from_dict(i) for i in items]
        return [Message(role="user", content=tuple(blocks))]


async def _iterate_with_context(
    stream: AsyncIterator[Any], ctx: Context | None
) -> AsyncIterator[Any]:
    """Iterate stream with ctx attached around every step.

    The tool's own code runs inside each __anext__, so nested
    instrumentation sees the tool span as the active parent.
    """
    iterator = aiter(stream)
    while True:
        token = otel_context.attach(ctx) if ctx is not None else None
        try:
            item = await anext(iterator)
        except StopAsyncIteration:
            return
        finally:
            if token is not None:
                otel_context.detach(token)
        yield item


def _flatten(items: Iterable[Any]) -> Iterator[Any]:
    for item in items:
        if isinstance(item, (list, tuple)):
            yield from _flatten(item)
        else:
            yield item


__all__ = ["Agent", "AgentInput", "AgentStreamEvent"]
