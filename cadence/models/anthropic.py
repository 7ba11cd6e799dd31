"""Anthropic Messages API provider over httpx.

Streams the Messages API (SSE), forwards each parsed chunk to the agent
loop as a ModelStreamEvent, and reassembles the final assistant message:
text deltas are joined per block, tool_use input arrives as partial JSON
fragments that are concatenated and parsed at content_block_stop.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from cadence.config import Settings
from cadence.errors import ModelCallError, ModelThrottledError
from cadence.models.model import Model
from cadence.types.content import (
    ContentBlock,
    JsonBlock,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from cadence.types.streaming import Metrics, ModelResponse, ModelStreamEvent, Usage

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

_THROTTLE_STATUS = frozenset({429, 529})
_THROTTLE_ERROR_TYPES = frozenset({"rate_limit_error", "overloaded_error"})


def parse_sse_event(data: dict[str, Any]) -> ModelStreamEvent | None:
    """Parse an Anthropic SSE data payload into a ModelStreamEvent.

    Ping keepalives and unknown event types return None. stop_reason
    arrives in message_delta.delta, not message_start.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return ModelStreamEvent("error", {
            "error_type": error.get("type", "unknown"),
            "message": error.get("message", ""),
        })

    if event_type == "message_start":
        return ModelStreamEvent("message_start", {
            "usage": data.get("message", {}).get("usage", {}),
        })

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return ModelStreamEvent("tool_start", {
                "index": index,
                "name": block.get("name", ""),
                "tool_use_id": block.get("id", ""),
            })
        return ModelStreamEvent("text_block_start", {"index": index})

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        index = data.get("index", 0)
        if delta.get("type") == "text_delta":
            return ModelStreamEvent("text_delta", {"index": index, "text": delta.get("text", "")})
        if delta.get("type") == "input_json_delta":
            return ModelStreamEvent("tool_input_delta", {
                "index": index,
                "partial_json": delta.get("partial_json", ""),
            })
        return None

    if event_type == "content_block_stop":
        return ModelStreamEvent("block_stop", {"index": data.get("index", 0)})

    if event_type == "message_delta":
        return ModelStreamEvent("message_delta", {
            "stop_reason": data.get("delta", {}).get("stop_reason") or "",
            "usage": data.get("usage", {}),
        })

    if event_type == "message_stop":
        return ModelStreamEvent("message_stop")

    return None


@dataclass
class _BlockAccumulator:
    kind: str
    text_parts: list[str] = field(default_factory=list)
    name: str = ""
    tool_use_id: str = ""


class StreamAggregator:
    """Folds parsed stream events into the final assistant message."""

    def __init__(self) -> None:
        self._open: dict[int, _BlockAccumulator] = {}
        self._blocks: list[tuple[int, ContentBlock]] = []
        self.stop_reason = ""
        self.usage: Usage | None = None

    def add(self, event: ModelStreamEvent) -> None:
        data = event.data
        if event.type == "message_start":
            self._update_usage(data.get("usage") or {})
        elif event.type == "text_block_start":
            self._open[data["index"]] = _BlockAccumulator("text")
        elif event.type == "tool_start":
            self._open[data["index"]] = _BlockAccumulator(
                "tool_use", name=data["name"], tool_use_id=data["tool_use_id"]
            )
        elif event.type == "text_delta":
            acc = self._open.setdefault(data["index"], _BlockAccumulator("text"))
            acc.text_parts.append(data["text"])
        elif event.type == "tool_input_delta":
            acc = self._open.get(data["index"])
            if acc:
                acc.text_parts.append(data["partial_json"])
        elif event.type == "block_stop":
            acc = self._open.pop(data["index"], None)
            if acc:
                self._blocks.append((data["index"], self._close(acc)))
        elif event.type == "message_delta":
            self.stop_reason = data.get("stop_reason") or self.stop_reason
            self._update_usage(data.get("usage") or {})

    def message(self) -> Message:
        # Blocks left open by a truncated stream are closed as-is
        for index, acc in sorted(self._open.items()):
            self._blocks.append((index, self._close(acc)))
        self._open.clear()
        blocks = [block for _, block in sorted(self._blocks, key=lambda item: item[0])]
        return Message(role="assistant", content=tuple(blocks))

    @staticmethod
    def _close(acc: _BlockAccumulator) -> ContentBlock:
        joined = "".join(acc.text_parts)
        if acc.kind == "text":
            return TextBlock(joined)
        try:
            tool_input = json.loads(joined) if joined else {}
        except json.JSONDecodeError:
            logger.warning("Malformed tool input JSON for %s, using {}", acc.name)
            tool_input = {}
        return ToolUseBlock(name=acc.name, tool_use_id=acc.tool_use_id, input=tool_input)

    def _update_usage(self, raw: dict[str, Any]) -> None:
        if not raw:
            return
        usage = self.usage or Usage()
        if "input_tokens" in raw:
            usage.input_tokens = int(raw["input_tokens"] or 0)
        if "output_tokens" in raw:
            usage.output_tokens = int(raw["output_tokens"] or 0)
        if raw.get("cache_read_input_tokens") is not None:
            usage.cache_read_input_tokens = int(raw["cache_read_input_tokens"])
        if raw.get("cache_creation_input_tokens") is not None:
            usage.cache_write_input_tokens = int(raw["cache_creation_input_tokens"])
        usage.total_tokens = usage.input_tokens + usage.output_tokens
        self.usage = usage


def format_message(message: Message) -> dict[str, Any]:
    """Message in Anthropic API shape."""
    return {"role": message.role, "content": [_format_block(b) for b in message.content]}


def _format_block(block: ContentBlock) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.tool_use_id, "name": block.name, "input": block.input}
    if isinstance(block, ToolResultBlock):
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": [_format_block(c) for c in block.content],
            "is_error": block.status == "error",
        }
    if isinstance(block, JsonBlock):
        return {"type": "text", "text": json.dumps(block.json)}
    raise TypeError(f"Unsupported content block: {type(block).__name__}")


class AnthropicModel(Model):
    """Streams the Anthropic Messages API with a shared httpx client."""

    def __init__(self, settings: Settings | None = None, *, model_id: str | None = None) -> None:
        self._settings = settings or Settings()
        self._model_id = model_id or self._settings.model
        self._http: httpx.AsyncClient | None = None

    @property
    def model_id(self) -> str:
        return self._model_id

    def get_config(self) -> dict[str, Any]:
        return {"model_id": self._model_id, "max_tokens": self._settings.max_tokens}

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings
        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        if settings.anthropic_auth_token:
            headers["authorization"] = f"Bearer {settings.anthropic_auth_token}"
        elif settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
        logger.info("httpx client initialized for %s", self._model_id)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    def build_payload(
        self,
        messages: Sequence[Message],
        tool_specs: Sequence[dict[str, Any]] | None = None,
        system_prompt: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._model_id,
            "max_tokens": self._settings.max_tokens,
            "messages": [format_message(m) for m in messages],
            "stream": True,
        }
        if system_prompt:
            payload["system"] = [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        if tool_specs:
            payload["tools"] = list(tool_specs)
        return payload

    async def stream_aggregated(
        self,
        messages: Sequence[Message],
        *,
        tool_specs: Sequence[dict[str, Any]] | None = None,
        system_prompt: str | None = None,
    ) -> AsyncIterator[ModelStreamEvent | ModelResponse]:
        await self.start()
        assert self._http is not None
        payload = self.build_payload(messages, tool_specs, system_prompt)
        aggregator = StreamAggregator()
        started = time.monotonic()
        first_byte_ms: float | None = None

        try:
            async with self._http.stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode(errors="replace")[:500]
                    raise _http_error(response, body)

                async for line in response.aiter_lines():
                    # Only data: lines carry payloads; event: lines repeat the type
                    if not line.startswith("data: "):
                        continue
                    if first_byte_ms is None:
                        first_byte_ms = (time.monotonic() - started) * 1000
                    event = parse_sse_event(json.loads(line[6:]))
                    if event is None:
                        continue
                    if event.type == "error":
                        error_type = event.data["error_type"]
                        message = f"{error_type}: {event.data['message']}"
                        if error_type in _THROTTLE_ERROR_TYPES:
                            raise ModelThrottledError(message)
                        raise ModelCallError(message)
                    aggregator.add(event)
                    yield event
        except httpx.TimeoutException as e:
            raise ModelCallError(f"API request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ModelCallError(f"HTTP error: {e}") from e

        yield ModelResponse(
            message=aggregator.message(),
            stop_reason=aggregator.stop_reason or "end_turn",
            usage=aggregator.usage,
            metrics=Metrics(
                latency_ms=(time.monotonic() - started) * 1000,
                time_to_first_byte_ms=first_byte_ms,
            ),
        )


def _http_error(response: httpx.Response, body: str) -> ModelCallError:
    try:
        error = json.loads(body).get("error", {})
        detail = f"{error.get('type', 'unknown')} - {error.get('message', 'unknown error')}"
    except (ValueError, AttributeError):
        detail = body
    message = f"Anthropic API error ({response.status_code}): {detail}"
    if response.status_code in _THROTTLE_STATUS:
        try:
            retry_after = float(response.headers["retry-after"])
        except (KeyError, ValueError):
            retry_after = None
        return ModelThrottledError(message, retry_after=retry_after)
    return ModelCallError(message)
