"""Stream items, usage counters and the final invocation result."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from cadence.types.content import Message, TextBlock


class StopReason:
    """Stop reasons reported by model providers."""

    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"


@dataclass
class Usage:
    """Token counters. Cache counters stay None until a report measures them."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cache_read_input_tokens: int | None = None
    cache_write_input_tokens: int | None = None


@dataclass
class Metrics:
    latency_ms: float | None = None
    time_to_first_byte_ms: float | None = None


@dataclass
class ModelStreamEvent:
    """A provider chunk. Opaque to the loop, forwarded to the caller."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelResponse:
    """Terminal item of Model.stream_aggregated()."""

    message: Message
    stop_reason: str
    usage: Usage | None = None
    metrics: Metrics | None = None


@dataclass
class ToolStreamEvent:
    """Intermediate progress reported by a tool while it runs."""

    data: Any = None
    tool_use_id: str | None = None


@dataclass
class AgentResult:
    """Final item of Agent.stream(), returned by Agent.invoke()."""

    stop_reason: str
    last_message: Message

    @property
    def text(self) -> str:
        return "\n".join(
            b.text for b in self.last_message.content if isinstance(b, TextBlock)
        )

    def __str__(self) -> str:
        return self.text
