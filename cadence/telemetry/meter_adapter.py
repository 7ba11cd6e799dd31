"""Hook provider that turns agent lifecycle events into meter records.

A meter is any object implementing some of record_model_call,
record_tool_execution, record_agent_invocation and record_cycle. Each
is looked up with getattr, so a backend implements only what it needs.
OtelMeter is the default backend and records onto OpenTelemetry
counters and histograms.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

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
from cadence.telemetry.metrics import Attributes, MetricsClient
from cadence.telemetry.usage import accumulate_usage, copy_usage, empty_usage
from cadence.types.streaming import StopReason, Usage

logger = logging.getLogger(__name__)


@dataclass
class ModelCallRecord:
    model_id: str
    usage: Usage
    latency_ms: float
    success: bool
    time_to_first_token_ms: float | None = None
    error: str | None = None
    attributes: Attributes = field(default_factory=dict)


@dataclass
class ToolExecutionRecord:
    tool_name: str
    tool_use_id: str
    duration_seconds: float
    success: bool
    error: str | None = None
    attributes: Attributes = field(default_factory=dict)


@dataclass
class AgentInvocationRecord:
    agent_name: str
    agent_id: str
    model_id: str
    duration_seconds: float
    cycle_count: int
    usage: Usage
    success: bool
    error: str | None = None
    attributes: Attributes = field(default_factory=dict)


@dataclass
class CycleRecord:
    cycle_id: str
    duration_seconds: float
    usage: Usage | None = None
    attributes: Attributes = field(default_factory=dict)


class Meter(Protocol):
    """Full meter surface. Implementations may provide any subset."""

    def record_model_call(self, record: ModelCallRecord) -> None: ...

    def record_tool_execution(self, record: ToolExecutionRecord) -> None: ...

    def record_agent_invocation(self, record: AgentInvocationRecord) -> None: ...

    def record_cycle(self, record: CycleRecord) -> None: ...


class MeterHookAdapter:
    def __init__(self, meter: Any, *, enable_cycle_metrics: bool = True) -> None:
        self._meter = meter
        self._enable_cycle_metrics = enable_cycle_metrics

        self._invocation_start = 0.0
        self._model_call_start = 0.0
        self._cycle_start: float | None = None
        self._cycle_count = 0
        self._tool_starts: dict[str, float] = {}
        self._accumulated_usage = empty_usage()
        self._cycle_usage = empty_usage()

        self._agent_name = ""
        self._agent_id = ""
        self._model_id = ""

    @property
    def enable_cycle_metrics(self) -> bool:
        return self._enable_cycle_metrics

    @property
    def accumulated_usage(self) -> Usage:
        return copy_usage(self._accumulated_usage)

    def register_hooks(self, registry: HookRegistry) -> None:
        registry.add_callback(BeforeInvocationEvent, self._on_before_invocation)
        registry.add_callback(AfterInvocationEvent, self._on_after_invocation)
        registry.add_callback(BeforeModelCallEvent, self._on_before_model_call)
        registry.add_callback(AfterModelCallEvent, self._on_after_model_call)
        registry.add_callback(BeforeToolCallEvent, self._on_before_tool_call)
        registry.add_callback(AfterToolCallEvent, self._on_after_tool_call)
        if self._enable_cycle_metrics:
            registry.add_callback(AfterToolsEvent, self._on_after_tools)

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    def _on_before_invocation(self, event: BeforeInvocationEvent) -> None:
        self._invocation_start = time.monotonic()
        self._accumulated_usage = empty_usage()
        self._cycle_usage = empty_usage()
        self._tool_starts.clear()
        self._cycle_count = 0
        self._cycle_start = None

        agent = event.agent
        self._agent_name = agent.name
        self._agent_id = agent.agent_id
        self._model_id = getattr(agent.model, "model_id", None) or type(agent.model).__name__

    def _on_after_invocation(self, event: AfterInvocationEvent) -> None:
        # A failed model call leaves its cycle open
        if self._cycle_start is not None:
            self._record_cycle()
        self._record("record_agent_invocation", AgentInvocationRecord(
            agent_name=self._agent_name,
            agent_id=self._agent_id,
            model_id=self._model_id,
            duration_seconds=time.monotonic() - self._invocation_start,
            cycle_count=self._cycle_count,
            usage=event.accumulated_usage or copy_usage(self._accumulated_usage),
            success=event.error is None,
            error=str(event.error) if event.error else None,
        ))

    # ------------------------------------------------------------------
    # Model calls and cycles
    # ------------------------------------------------------------------

    def _on_before_model_call(self, event: BeforeModelCallEvent) -> None:
        self._model_call_start = time.monotonic()
        if self._enable_cycle_metrics and self._cycle_start is None:
            self._cycle_count += 1
            self._cycle_start = time.monotonic()
            self._cycle_usage = empty_usage()

    def _on_after_model_call(self, event: AfterModelCallEvent) -> None:
        if event.usage is not None:
            accumulate_usage(self._accumulated_usage, event.usage)
            if self._enable_cycle_metrics:
                accumulate_usage(self._cycle_usage, event.usage)

            metrics = event.metrics
            latency_ms = metrics.latency_ms if metrics and metrics.latency_ms is not None else (
                (time.monotonic() - self._model_call_start) * 1000
            )
            self._record("record_model_call", ModelCallRecord(
                model_id=self._model_id,
                usage=event.usage,
                latency_ms=latency_ms,
                time_to_first_token_ms=metrics.time_to_first_byte_ms if metrics else None,
                success=event.error is None,
                error=str(event.error) if event.error else None,
            ))

        stop_data = event.stop_data
        if (
            self._enable_cycle_metrics
            and self._cycle_start is not None
            and stop_data is not None
            and stop_data.stop_reason != StopReason.TOOL_USE
        ):
            self._record_cycle()

    def _on_after_tools(self, event: AfterToolsEvent) -> None:
        if self._cycle_start is not None:
            self._record_cycle()

    def _record_cycle(self) -> None:
        self._record("record_cycle", CycleRecord(
            cycle_id=f"cycle-{self._cycle_count}",
            duration_seconds=time.monotonic() - (self._cycle_start or 0.0),
            usage=copy_usage(self._cycle_usage),
        ))
        self._cycle_start = None
        self._cycle_usage = empty_usage()

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    def _on_before_tool_call(self, event: BeforeToolCallEvent) -> None:
        if event.tool_use is not None:
            self._tool_starts[event.tool_use.tool_use_id] = time.monotonic()

    def _on_after_tool_call(self, event: AfterToolCallEvent) -> None:
        if event.tool_use is None:
            return
        started = self._tool_starts.pop(event.tool_use.tool_use_id, None)
        if started is None:
            return
        error = event.error or (event.result.error if event.result is not None else None)
        self._record("record_tool_execution", ToolExecutionRecord(
            tool_name=event.tool_use.name,
            tool_use_id=event.tool_use.tool_use_id,
            duration_seconds=time.monotonic() - started,
            success=event.result is not None and event.result.status == "success",
            error=str(error) if error else None,
        ))

    def _record(self, name: str, record: Any) -> None:
        method = getattr(self._meter, name, None)
        if not callable(method):
            return
        try:
            method(record)
        except Exception:
            logger.warning("Meter %s.%s failed", type(self._meter).__name__, name, exc_info=True)


class OtelMeter:
    """Meter backed by the OpenTelemetry instruments of a MetricsClient."""

    def __init__(self, metrics_client: MetricsClient | None = None) -> None:
        self._client = metrics_client

    @property
    def client(self) -> MetricsClient:
        if self._client is None:
            self._client = MetricsClient.get_instance()
        return self._client

    def record_model_call(self, record: ModelCallRecord) -> None:
        attributes = {"gen_ai.request.model": record.model_id, "success": record.success}
        self.client.record_usage(record.usage, attributes)
        self.client.event_loop_latency.record(record.latency_ms, attributes)
        if record.time_to_first_token_ms is not None:
            self.client.model_time_to_first_token.record(record.time_to_first_token_ms, attributes)

    def record_tool_execution(self, record: ToolExecutionRecord) -> None:
        attributes = {"tool_name": record.tool_name}
        self.client.tool_call_count.add(1, attributes)
        self.client.tool_duration.record(record.duration_seconds, attributes)
        if record.success:
            self.client.tool_success_count.add(1, attributes)
        else:
            self.client.tool_error_count.add(1, attributes)

    def record_agent_invocation(self, record: AgentInvocationRecord) -> None:
        attributes = {"agent_name": record.agent_name, "success": record.success}
        self.client.agent_invocation_count.add(1, attributes)
        self.client.agent_invocation_duration.record(record.duration_seconds, attributes)

    def record_cycle(self, record: CycleRecord) -> None:
        self.client.event_loop_cycle_count.add(1)
        self.client.event_loop_cycle_duration.record(record.duration_seconds)
