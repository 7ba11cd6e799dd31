"""Model provider interface the agent loop depends on."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from typing import Any

from cadence.types.content import Message
from cadence.types.streaming import ModelResponse, ModelStreamEvent


class Model(ABC):
    """A model provider.

    stream_aggregated() yields provider chunks as ModelStreamEvent items and
    finishes with exactly one ModelResponse holding the assembled assistant
    message, its stop reason, and usage/metrics when the provider reports them.
    """

    @property
    @abstractmethod
    def model_id(self) -> str | None: ...

    def get_config(self) -> dict[str, Any]:
        return {"model_id": self.model_id}

    @abstractmethod
    def stream_aggregated(
        self,
        messages: Sequence[Message],
        *,
        tool_specs: Sequence[dict[str, Any]] | None = None,
        system_prompt: str | None = None,
    ) -> AsyncIterator[ModelStreamEvent | ModelResponse]: ...
