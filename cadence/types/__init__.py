"""Data model shared by the agent loop, tools, hooks and telemetry."""

from cadence.types.content import (
    ContentBlock,
    JsonBlock,
    Message,
    Role,
    TextBlock,
    ToolResultBlock,
    ToolUse,
    ToolUseBlock,
    content_block_from_dict,
)
from cadence.types.streaming import (
    AgentResult,
    Metrics,
    ModelResponse,
    ModelStreamEvent,
    StopReason,
    ToolStreamEvent,
    Usage,
)

__all__ = [
    "AgentResult",
    "ContentBlock",
    "JsonBlock",
    "Message",
    "Metrics",
    "ModelResponse",
    "ModelStreamEvent",
    "Role",
    "StopReason",
    "TextBlock",
    "ToolResultBlock",
    "ToolStreamEvent",
    "ToolUse",
    "ToolUseBlock",
    "Usage",
    "content_block_from_dict",
]
