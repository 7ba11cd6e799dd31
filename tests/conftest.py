"""Shared fixtures: a scripted model provider and in-memory span and metric capture."""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator, Sequence
from typing import Any

import pytest
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from cadence.config import Settings
from cadence.models.model import Model
from cadence.telemetry.context_stack import span_context_stack
from cadence.telemetry.metrics import MetricsClient
from cadence.telemetry.tracer import Tracer
from cadence.types.content import Message, TextBlock, ToolUseBlock
from cadence.types.streaming import Metrics, ModelResponse, ModelStreamEvent, Usage

# ---------------------------------------------------------------------------
# Scripted model
# ---------------------------------------------------------------------------


class ScriptedModel(Model):
    """Replays a fixed list of responses, one per model call.

    An Exception in the script is raised instead of returning a response.
    Every call records a snapshot of the messages it was given.
    """

    def __init__(self, script: Sequence[ModelResponse | Exception], model_id: str = "scripted-model") -> None:
        self._script = list(script)
        self._model_id = model_id
        self.calls: list[list[Message]] = []
        self.tool_specs: list[list[dict[str, Any]]] = []
        self.system_prompts: list[str | None] = []

    @property
    def model_id(self) -> str:
        return self._model_id

    async def stream_aggregated(
        self,
        messages: Sequence[Message],
        *,
        tool_specs: Sequence[dict[str, Any]] | None = None,
        system_prompt: str | None = None,
    ) -> AsyncIterator[ModelStreamEvent | ModelResponse]:
        self.calls.append(list(messages))
        self.tool_specs.append(list(tool_specs or []))
        self.system_prompts.append(system_prompt)
        if not self._script:
            raise AssertionError("ScriptedModel ran out of responses")
        item = self._script.pop(0)
        if isinstance(item, Exception):
            raise item
        yield ModelStreamEvent("message_start", {"usage": {}})
        for index, block in enumerate(item.message.content):
            if isinstance(block, TextBlock):
                yield ModelStreamEvent("text_delta", {"index": index, "text": block.text})
        yield item


def make_response(
    text: str = "",
    tool_uses: list[dict[str, Any]] | None = None,
    stop_reason: str | None = None,
    usage: Usage | None = None,
) -> ModelResponse:
    """Build a ModelResponse with text and/or tool_use blocks.

    stop_reason defaults to tool_use when tool_uses are given, else end_turn.
    """
    content: list[Any] = []
    if text:
        content.append(TextBlock(text))
    for tu in tool_uses or []:
        content.append(ToolUseBlock(
            name=tu["name"],
            tool_use_id=tu.get("id", f"toolu_{uuid.uuid4().hex[:12]}"),
            input=tu.get("input", {}),
        ))
    if stop_reason is None:
        stop_reason = "tool_use" if tool_uses else "end_turn"
    return ModelResponse(
        message=Message(role="assistant", content=tuple(content)),
        stop_reason=stop_reason,
        usage=usage,
        metrics=Metrics(latency_ms=12.5, time_to_first_byte_ms=3.0),
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    """Settings isolated from any local .env file."""
    return Settings(_env_file=None)


@pytest.fixture(autouse=True)
def _clean_span_stack():
    span_context_stack.clear()
    yield
    span_context_stack.clear()


@pytest.fixture
def span_exporter():
    return InMemorySpanExporter()


@pytest.fixture
def tracer_provider(span_exporter):
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    return provider


@pytest.fixture
def tracer(settings, tracer_provider):
    return Tracer(settings, tracer_provider=tracer_provider)


@pytest.fixture
def metric_reader():
    return InMemoryMetricReader()


@pytest.fixture
def metrics_client(metric_reader):
    """MetricsClient on a private MeterProvider, read through metric_reader."""
    return MetricsClient(MeterProvider(metric_readers=[metric_reader]))


def collected_metrics(reader: InMemoryMetricReader) -> dict[str, list]:
    """Metric name -> data points from one collection."""
    points: dict[str, list] = {}
    data = reader.get_metrics_data()
    if data is None:
        return points
    for resource_metrics in data.resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                points.setdefault(metric.name, []).extend(metric.data.data_points)
    return points
