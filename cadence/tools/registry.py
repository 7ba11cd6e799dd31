"""Tool registry -- name-keyed lookup of the tools an agent can call."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator
from typing import Any

from cadence.tools.tool import Tool

logger = logging.getLogger(__name__)

_TOOL_NAME_RE = re.compile(r"^[a-zA-Z0-9_\-]{1,64}$")


class ToolRegistry:
    """Registers tools by name and serves their definitions to the model.

    Lookup misses return None; the agent loop turns them into error
    tool results rather than raising.
    """

    def __init__(self, tools: Iterable[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        if tools:
            self.register_all(tools)

    def register(self, tool: Tool) -> None:
        """Register a tool. Names must be unique and match [a-zA-Z0-9_-]{1,64}."""
        name = getattr(tool, "name", None)
        if not isinstance(name, str) or not _TOOL_NAME_RE.match(name):
            raise ValueError(f"Invalid tool name: {name!r}")
        if name in self._tools:
            raise ValueError(f"Tool '{name}' is already registered")
        self._tools[name] = tool
        logger.debug("Registered tool '%s'", name)

    def register_all(self, tools: Iterable[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def remove(self, name: str) -> Tool | None:
        return self._tools.pop(name, None)

    def names(self) -> list[str]:
        return list(self._tools)

    def values(self) -> list[Tool]:
        """Tools in registration order."""
        return list(self._tools.values())

    def tool_specs(self) -> list[dict[str, Any]]:
        """All tool definitions in the shape model providers expect."""
        return [tool.spec for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[Tool]:
        return iter(self.values())
