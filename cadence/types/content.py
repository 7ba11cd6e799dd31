"""Conversation content: blocks and messages.

Blocks and messages are frozen. The agent loop only ever appends new
Message instances to a conversation, it never edits one in place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal

Role = Literal["user", "assistant"]
ToolResultStatus = Literal["success", "error"]


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: ClassVar[str] = "text"

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text}


@dataclass(frozen=True)
class JsonBlock:
    """Structured tool-result content."""

    json: Any
    type: ClassVar[str] = "json"

    def to_dict(self) -> dict[str, Any]:
        return {"json": self.json}


@dataclass(frozen=True)
class ToolUse:
    """Hook-level view of a tool request, independent of the content block."""

    name: str
    tool_use_id: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolUseBlock:
    name: str
    tool_use_id: str
    input: dict[str, Any] = field(default_factory=dict)
    type: ClassVar[str] = "tool_use"

    def to_tool_use(self) -> ToolUse:
        return ToolUse(name=self.name, tool_use_id=self.tool_use_id, input=self.input)

    def to_dict(self) -> dict[str, Any]:
        return {
            "toolUse": {
                "name": self.name,
                "toolUseId": self.tool_use_id,
                "input": self.input,
            }
        }


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    status: ToolResultStatus
    content: tuple[TextBlock | JsonBlock, ...] = ()
    # Normalized exception for error results, kept out of equality
    error: Exception | None = field(default=None, compare=False)
    type: ClassVar[str] = "tool_result"

    def __post_init__(self) -> None:
        if not isinstance(self.content, tuple):
            object.__setattr__(self, "content", tuple(self.content))

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))

    def to_dict(self) -> dict[str, Any]:
        return {
            "toolResult": {
                "toolUseId": self.tool_use_id,
                "status": self.status,
                "content": [b.to_dict() for b in self.content],
            }
        }


ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock | JsonBlock


@dataclass(frozen=True)
class Message:
    role: Role
    content: tuple[ContentBlock, ...] = ()

    def __post_init__(self) -> None:
        if self.role not in ("user", "assistant"):
            raise ValueError(f"Invalid message role: {self.role!r}")
        if not isinstance(self.content, tuple):
            object.__setattr__(self, "content", tuple(self.content))

    @classmethod
    def user_text(cls, text: str) -> Message:
        return cls(role="user", content=(TextBlock(text),))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        """ToolUse blocks in the order the model emitted them."""
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": [b.to_dict() for b in self.content]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        content = data.get("content", [])
        if isinstance(content, str):
            blocks: list[ContentBlock] = [TextBlock(content)]
        else:
            blocks = [content_block_from_dict(item) for item in content]
        return cls(role=data["role"], content=tuple(blocks))


def content_block_from_dict(data: dict[str, Any] | ContentBlock) -> ContentBlock:
    """Convert a plain dict into a content block.

    Accepts the keyed form produced by to_dict() ({"text": ...},
    {"toolUse": {...}}, {"toolResult": {...}}, {"json": ...}) as well as the
    Anthropic typed form ({"type": "text", "text": ...}, ...).
    Blocks are returned unchanged.
    """
    if isinstance(data, (TextBlock, ToolUseBlock, ToolResultBlock, JsonBlock)):
        return data

    block_type = data.get("type")

    if "toolUse" in data:
        tu = data["toolUse"]
        return ToolUseBlock(name=tu["name"], tool_use_id=tu["toolUseId"], input=tu.get("input") or {})
    if block_type == "tool_use":
        return ToolUseBlock(name=data["name"], tool_use_id=data["id"], input=data.get("input") or {})

    if "toolResult" in data:
        tr = data["toolResult"]
        return ToolResultBlock(
            tool_use_id=tr["toolUseId"],
            status=tr.get("status", "success"),
            content=tuple(_result_content(c) for c in tr.get("content", [])),
        )
    if block_type == "tool_result":
        raw = data.get("content", [])
        if isinstance(raw, str):
            raw = [{"text": raw}]
        return ToolResultBlock(
            tool_use_id=data["tool_use_id"],
            status="error" if data.get("is_error") else "success",
            content=tuple(_result_content(c) for c in raw),
        )

    if "json" in data:
        return JsonBlock(data["json"])
    if "text" in data:
        return TextBlock(data["text"])

    raise ValueError(f"Unrecognized content block: {sorted(data)}")


def _result_content(data: dict[str, Any]) -> TextBlock | JsonBlock:
    block = content_block_from_dict(data)
    if not isinstance(block, (TextBlock, JsonBlock)):
        raise ValueError("Tool result content must be text or json")
    return block
