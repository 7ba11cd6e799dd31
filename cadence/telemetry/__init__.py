"""Telemetry -- OpenTelemetry spans and metrics for the agent loop.

Public API:
    Tracer               - Starts/ends agent, cycle, model and tool spans
    TracerHookAdapter    - Hook provider mapping lifecycle events to Tracer calls
    TelemetryHookProvider - TracerHookAdapter bound to the default Tracer
    SpanContextStack     - Explicit LIFO stack of span contexts
    MeterHookAdapter     - Hook provider mapping lifecycle events to meter records
    OtelMeter            - Meter backed by OpenTelemetry counters and histograms
    EventLoopMetrics     - Per-agent cycle, tool and usage accounting
    setup_tracer         - Install the global TracerProvider with exporters
    setup_meter          - Install the global MeterProvider with exporters
    instrument_mcp_client - Propagate trace context into MCP tool calls
"""

from cadence.telemetry.adapter import TelemetryHookProvider, TracerHookAdapter
from cadence.telemetry.config import (
    reset_meter_provider,
    reset_tracer_provider,
    setup_meter,
    setup_tracer,
)
from cadence.telemetry.context_stack import SpanContextStack, span_context_stack
from cadence.telemetry.mcp_instrumentation import (
    inject_trace_context,
    instrument_mcp_client,
    is_instrumented,
)
from cadence.telemetry.meter_adapter import (
    AgentInvocationRecord,
    CycleRecord,
    Meter,
    MeterHookAdapter,
    ModelCallRecord,
    OtelMeter,
    ToolExecutionRecord,
)
from cadence.telemetry.metrics import (
    EventLoopMetrics,
    MetricsClient,
    ToolMetrics,
    Trace,
    metrics_to_string,
)
from cadence.telemetry.tracer import SpanHandle, Tracer, get_tracer, serialize
from cadence.telemetry.usage import accumulate_usage, empty_usage

__all__ = [
    "AgentInvocationRecord",
    "CycleRecord",
    "EventLoopMetrics",
    "Meter",
    "MeterHookAdapter",
    "MetricsClient",
    "ModelCallRecord",
    "OtelMeter",
    "SpanContextStack",
    "SpanHandle",
    "TelemetryHookProvider",
    "ToolExecutionRecord",
    "ToolMetrics",
    "Trace",
    "Tracer",
    "TracerHookAdapter",
    "accumulate_usage",
    "empty_usage",
    "get_tracer",
    "inject_trace_context",
    "instrument_mcp_client",
    "is_instrumented",
    "metrics_to_string",
    "reset_meter_provider",
    "reset_tracer_provider",
    "serialize",
    "setup_meter",
    "setup_tracer",
    "span_context_stack",
]
