"""W3C trace-context view of the span a tool runs under."""

from __future__ import annotations

from dataclasses import dataclass

from opentelemetry.trace import Span

TRACEPARENT_VERSION = "00"


@dataclass(frozen=True)
class TracingContext:
    traceparent: str
    trace_id: str
    span_id: str
    trace_flags: str
    tracestate: str | None = None

    @classmethod
    def from_span(cls, span: Span) -> TracingContext | None:
        """Build from a span, or None when the span context is invalid."""
        ctx = span.get_span_context()
        if not ctx.is_valid:
            return None
        trace_id = f"{ctx.trace_id:032x}"
        span_id = f"{ctx.span_id:016x}"
        trace_flags = f"{int(ctx.trace_flags):02x}"
        tracestate = ctx.trace_state.to_header() if ctx.trace_state else None
        return cls(
            traceparent=format_traceparent(trace_id, span_id, trace_flags),
            trace_id=trace_id,
            span_id=span_id,
            trace_flags=trace_flags,
            tracestate=tracestate or None,
        )


def format_traceparent(trace_id: str, span_id: str, trace_flags: str) -> str:
    """{version}-{trace_id}-{span_id}-{trace_flags}"""
    return f"{TRACEPARENT_VERSION}-{trace_id}-{span_id}-{trace_flags}"
