"""Event loop metrics: in-process accounting plus OpenTelemetry instruments.

EventLoopMetrics keeps per-agent totals (cycles, tool calls, token usage,
latency) for inspection after an invocation, and records the same
measurements on the process-wide MetricsClient instruments. Without a
configured MeterProvider those instruments are OpenTelemetry no-ops.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import MeterProvider

from cadence.telemetry.usage import accumulate_usage, empty_usage
from cadence.types.content import Message, ToolUse
from cadence.types.streaming import Metrics, Usage

logger = logging.getLogger(__name__)

METER_NAME = "cadence"

EVENT_LOOP_CYCLE_COUNT = "cadence.event_loop.cycle_count"
EVENT_LOOP_START_CYCLE = "cadence.event_loop.start_cycle"
EVENT_LOOP_END_CYCLE = "cadence.event_loop.end_cycle"
EVENT_LOOP_CYCLE_DURATION = "cadence.event_loop.cycle_duration"
EVENT_LOOP_LATENCY = "cadence.event_loop.latency"
EVENT_LOOP_INPUT_TOKENS = "cadence.event_loop.input.tokens"
EVENT_LOOP_OUTPUT_TOKENS = "cadence.event_loop.output.tokens"
EVENT_LOOP_CACHE_READ_INPUT_TOKENS = "cadence.event_loop.cache_read.input.tokens"
EVENT_LOOP_CACHE_WRITE_INPUT_TOKENS = "cadence.event_loop.cache_write.input.tokens"
MODEL_TIME_TO_FIRST_TOKEN = "cadence.model.time_to_first_token"
TOOL_CALL_COUNT = "cadence.tool.call_count"
TOOL_SUCCESS_COUNT = "cadence.tool.success_count"
TOOL_ERROR_COUNT = "cadence.tool.error_count"
TOOL_DURATION = "cadence.tool.duration"
AGENT_INVOCATION_COUNT = "cadence.agent.invocation_count"
AGENT_INVOCATION_DURATION = "cadence.agent.invocation_duration"

Attributes = dict[str, str | int | float | bool]


class MetricsClient:
    """Holds the OpenTelemetry counters and histograms for the agent loop."""

    _instance: MetricsClient | None = None

    def __init__(self, meter_provider: MeterProvider | None = None) -> None:
        provider = meter_provider or metrics.get_meter_provider()
        self.meter = provider.get_meter(METER_NAME)

        self.event_loop_cycle_count = self.meter.create_counter(
            EVENT_LOOP_CYCLE_COUNT, unit="Count", description="Number of event loop cycles"
        )
        self.event_loop_start_cycle = self.meter.create_counter(
            EVENT_LOOP_START_CYCLE, unit="Count", description="Number of event loop cycle starts"
        )
        self.event_loop_end_cycle = self.meter.create_counter(
            EVENT_LOOP_END_CYCLE, unit="Count", description="Number of event loop cycle ends"
        )
        self.event_loop_cycle_duration = self.meter.create_histogram(
            EVENT_LOOP_CYCLE_DURATION, unit="s", description="Duration of event loop cycles"
        )
        self.event_loop_latency = self.meter.create_histogram(
            EVENT_LOOP_LATENCY, unit="ms", description="Model call latency"
        )
        self.event_loop_input_tokens = self.meter.create_histogram(
            EVENT_LOOP_INPUT_TOKENS, unit="token", description="Input tokens per model call"
        )
        self.event_loop_output_tokens = self.meter.create_histogram(
            EVENT_LOOP_OUTPUT_TOKENS, unit="token", description="Output tokens per model call"
        )
        self.event_loop_cache_read_input_tokens = self.meter.create_histogram(
            EVENT_LOOP_CACHE_READ_INPUT_TOKENS,
            unit="token",
            description="Cache read input tokens per model call",
        )
        self.event_loop_cache_write_input_tokens = self.meter.create_histogram(
            EVENT_LOOP_CACHE_WRITE_INPUT_TOKENS,
            unit="token",
            description="Cache write input tokens per model call",
        )
        self.model_time_to_first_token = self.meter.create_histogram(
            MODEL_TIME_TO_FIRST_TOKEN, unit="ms", description="Time to first token from model"
        )
        self.tool_call_count = self.meter.create_counter(
            TOOL_CALL_COUNT, unit="Count", description="Number of tool calls"
        )
        self.tool_success_count = self.meter.create_counter(
            TOOL_SUCCESS_COUNT, unit="Count", description="Number of successful tool calls"
        )
        self.tool_error_count = self.meter.create_counter(
            TOOL_ERROR_COUNT, unit="Count", description="Number of failed tool calls"
        )
        self.tool_duration = self.meter.create_histogram(
            TOOL_DURATION, unit="s", description="Duration of tool calls"
        )
        self.agent_invocation_count = self.meter.create_counter(
            AGENT_INVOCATION_COUNT, unit="Count", description="Number of agent invocations"
        )
        self.agent_invocation_duration = self.meter.create_histogram(
            AGENT_INVOCATION_DURATION, unit="s", description="Duration of agent invocations"
        )

    @classmethod
    def get_instance(cls) -> MetricsClient:
        """Process-wide client bound to the global MeterProvider."""
        if cls._instance is None:
            logger.debug("Creating metrics client")
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None

    def record_usage(self, usage: Usage, attributes: Attributes | None = None) -> None:
        self.event_loop_input_tokens.record(usage.input_tokens, attributes)
        self.event_loop_output_tokens.record(usage.output_tokens, attributes)
        if usage.cache_read_input_tokens is not None:
            self.event_loop_cache_read_input_tokens.record(usage.cache_read_input_tokens, attributes)
        if usage.cache_write_input_tokens is not None:
            self.event_loop_cache_write_input_tokens.record(usage.cache_write_input_tokens, attributes)


@dataclass
class Trace:
    """One timed step of an invocation (a cycle or a tool call)."""

    name: str
    parent_id: str | None = None
    start_time: float = field(default_factory=time.time)
    raw_name: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    message: Message | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    end_time: float | None = None
    children: list[Trace] = field(default_factory=list)

    def end(self, end_time: float | None = None) -> None:
        self.end_time = end_time if end_time is not None else time.time()

    def add_child(self, child: Trace) -> None:
        self.children.append(child)

    def duration(self) -> float | None:
        return None if self.end_time is None else self.end_time - self.start_time

    def add_message(self, message: Message) -> None:
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "raw_name": self.raw_name,
            "parent_id": self.parent_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration": self.duration(),
            "children": [child.to_dict() for child in self.children],
            "metadata": self.metadata,
            "message": self.message.to_dict() if self.message else None,
        }


@dataclass
class ToolMetrics:
    tool: ToolUse
    call_count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_time: float = 0.0

    def add_call(
        self,
        tool: ToolUse,
        duration: float,
        success: bool,
        metrics_client: MetricsClient,
        attributes: Attributes | None = None,
    ) -> None:
        self.tool = tool
        self.call_count += 1
        self.total_time += duration
        metrics_client.tool_call_count.add(1, attributes)
        metrics_client.tool_duration.record(duration, attributes)
        if success:
            self.success_count += 1
            metrics_client.tool_success_count.add(1, attributes)
        else:
            self.error_count += 1
            metrics_client.tool_error_count.add(1, attributes)

    @property
    def average_time(self) -> float:
        return self.total_time / self.call_count if self.call_count else 0.0

    @property
    def success_rate(self) -> float:
        return self.success_count / self.call_count if self.call_count else 0.0


@dataclass
class EventLoopCycleMetric:
    event_loop_cycle_id: str
    usage: Usage = field(default_factory=empty_usage)


@dataclass
class AgentInvocation:
    cycles: list[EventLoopCycleMetric] = field(default_factory=list)
    usage: Usage = field(default_factory=empty_usage)


class EventLoopMetrics:
    """Cycle, tool and usage totals across an agent's invocations."""

    def __init__(self, metrics_client: MetricsClient | None = None) -> None:
        self._metrics_client = metrics_client
        self.cycle_count = 0
        self.tool_metrics: dict[str, ToolMetrics] = {}
        self.cycle_durations: list[float] = []
        self.agent_invocations: list[AgentInvocation] = []
        self.traces: list[Trace] = []
        self.accumulated_usage = empty_usage()
        self.accumulated_metrics = Metrics(latency_ms=0.0)

    @property
    def metrics_client(self) -> MetricsClient:
        if self._metrics_client is None:
            self._metrics_client = MetricsClient.get_instance()
        return self._metrics_client

    @property
    def latest_agent_invocation(self) -> AgentInvocation | None:
        return self.agent_invocations[-1] if self.agent_invocations else None

    def reset_usage_metrics(self) -> None:
        """Start accounting for a new invocation."""
        self.agent_invocations.append(AgentInvocation())

    def start_cycle(self, attributes: Attributes) -> tuple[float, Trace]:
        self.metrics_client.event_loop_cycle_count.add(1, attributes)
        self.metrics_client.event_loop_start_cycle.add(1, attributes)
        self.cycle_count += 1

        start_time = time.time()
        cycle_trace = Trace(f"Cycle {self.cycle_count}", start_time=start_time)
        self.traces.append(cycle_trace)

        invocation = self.latest_agent_invocation
        if invocation is not None:
            invocation.cycles.append(
                EventLoopCycleMetric(event_loop_cycle_id=str(attributes.get("event_loop_cycle_id", "")))
            )
        return start_time, cycle_trace

    def end_cycle(
        self,
        start_time: float,
        cycle_trace: Trace,
        attributes: Attributes | None = None,
        message: Message | None = None,
    ) -> None:
        self.metrics_client.event_loop_end_cycle.add(1, attributes)
        end_time = time.time()
        duration = end_time - start_time
        self.metrics_client.event_loop_cycle_duration.record(duration, attributes)
        self.cycle_durations.append(duration)
        if message is not None:
            cycle_trace.add_message(message)
        cycle_trace.end(end_time)

    def add_tool_usage(
        self,
        tool: ToolUse,
        duration: float,
        tool_trace: Trace,
        success: bool,
        message: Message,
    ) -> None:
        tool_trace.metadata["tool_use_id"] = tool.tool_use_id
        tool_trace.metadata["tool_name"] = tool.name
        tool_trace.raw_name = f"{tool.name} - {tool.tool_use_id}"
        tool_trace.add_message(message)

        metric = self.tool_metrics.get(tool.name)
        if metric is None:
            metric = self.tool_metrics[tool.name] = ToolMetrics(tool)
        metric.add_call(
            tool,
            duration,
            success,
            self.metrics_client,
            {"tool_name": tool.name, "tool_use_id": tool.tool_use_id},
        )
        tool_trace.end()

    def update_usage(self, usage: Usage) -> None:
        self.metrics_client.record_usage(usage)
        accumulate_usage(self.accumulated_usage, usage)

        invocation = self.latest_agent_invocation
        if invocation is not None:
            accumulate_usage(invocation.usage, usage)
            if invocation.cycles:
                accumulate_usage(invocation.cycles[-1].usage, usage)

    def update_metrics(self, model_metrics: Metrics) -> None:
        if model_metrics.latency_ms is not None:
            self.metrics_client.event_loop_latency.record(model_metrics.latency_ms)
            self.accumulated_metrics.latency_ms = (
                self.accumulated_metrics.latency_ms or 0.0
            ) + model_metrics.latency_ms
        if model_metrics.time_to_first_byte_ms is not None:
            self.metrics_client.model_time_to_first_token.record(model_metrics.time_to_first_byte_ms)

    def get_summary(self) -> dict[str, Any]:
        total_duration = sum(self.cycle_durations)
        return {
            "total_cycles": self.cycle_count,
            "total_duration": total_duration,
            "average_cycle_time": total_duration / self.cycle_count if self.cycle_count else 0.0,
            "tool_usage": {
                name: {
                    "tool_info": {
                        "tool_use_id": m.tool.tool_use_id,
                        "name": m.tool.name,
                        "input_params": m.tool.input,
                    },
                    "execution_stats": {
                        "call_count": m.call_count,
                        "success_count": m.success_count,
                        "error_count": m.error_count,
                        "total_time": m.total_time,
                        "average_time": m.average_time,
                        "success_rate": m.success_rate,
                    },
                }
                for name, m in self.tool_metrics.items()
            },
            "traces": [t.to_dict() for t in self.traces],
            "accumulated_usage": asdict(self.accumulated_usage),
            "accumulated_metrics": asdict(self.accumulated_metrics),
            "agent_invocations": [
                {
                    "usage": asdict(invocation.usage),
                    "cycles": [
                        {"event_loop_cycle_id": c.event_loop_cycle_id, "usage": asdict(c.usage)}
                        for c in invocation.cycles
                    ],
                }
                for invocation in self.agent_invocations
            ],
        }


def metrics_to_string(event_loop_metrics: EventLoopMetrics) -> str:
    """Human-readable summary of an EventLoopMetrics."""
    summary = event_loop_metrics.get_summary()
    usage = summary["accumulated_usage"]
    lines = [
        "Event Loop Metrics Summary:",
        f"├─ Cycles: total={summary['total_cycles']}, "
        f"avg_time={summary['average_cycle_time']:.3f}s, "
        f"total_time={summary['total_duration']:.3f}s",
    ]

    token_parts = [
        f"in={usage['input_tokens']}",
        f"out={usage['output_tokens']}",
        f"total={usage['total_tokens']}",
    ]
    if usage["cache_read_input_tokens"]:
        token_parts.append(f"cache_read_input_tokens={usage['cache_read_input_tokens']}")
    if usage["cache_write_input_tokens"]:
        token_parts.append(f"cache_write_input_tokens={usage['cache_write_input_tokens']}")
    lines.append(f"├─ Tokens: {', '.join(token_parts)}")
    lines.append(f"├─ Latency: {summary['accumulated_metrics']['latency_ms']}ms")

    lines.append("├─ Tool Usage:")
    for name, data in summary["tool_usage"].items():
        stats = data["execution_stats"]
        lines.append(f"   └─ {name}:")
        lines.append(f"      ├─ Stats: calls={stats['call_count']}, success={stats['success_count']}")
        lines.append(
            f"      │         errors={stats['error_count']}, "
            f"success_rate={stats['success_rate'] * 100:.1f}%"
        )
        lines.append(
            f"      └─ Timing: avg={stats['average_time']:.3f}s, total={stats['total_time']:.3f}s"
        )

    lines.append("├─ Execution Trace:")
    for trace in summary["traces"]:
        lines.extend(_trace_to_lines(trace, indent=1))
    return "\n".join(lines)


def _trace_to_lines(trace: dict[str, Any], indent: int) -> list[str]:
    pad = "   " * indent
    duration = trace["duration"]
    timing = f"{duration:.4f}s" if duration is not None else "N/A"
    lines = [f"{pad}└─ {trace['raw_name'] or trace['name']} - Duration: {timing}"]
    for child in trace["children"]:
        lines.extend(_trace_to_lines(child, indent + 1))
    return lines
