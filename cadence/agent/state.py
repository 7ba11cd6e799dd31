"""Per-agent key/value state visible to tools but never sent to the model."""

from __future__ import annotations

import copy
import json
from typing import Any


class AgentState:
    """JSON-serializable key/value store.

    Values are validated with json.dumps on write and deep-copied on read
    so callers cannot mutate stored state in place.
    """

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._state: dict[str, Any] = {}
        for key, value in (initial or {}).items():
            self.set(key, value)

    def set(self, key: str, value: Any) -> None:
        if not isinstance(key, str) or not key:
            raise ValueError("State key must be a non-empty string")
        try:
            json.dumps(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Value for state key '{key}' is not JSON serializable: {e}") from e
        self._state[key] = copy.deepcopy(value)

    def get(self, key: str | None = None, default: Any = None) -> Any:
        """Value for key, or a copy of the whole state when key is None."""
        if key is None:
            return copy.deepcopy(self._state)
        return copy.deepcopy(self._state.get(key, default))

    def delete(self, key: str) -> None:
        self._state.pop(key, None)

    def clear(self) -> None:
        self._state.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._state

    def __len__(self) -> int:
        return len(self._state)
