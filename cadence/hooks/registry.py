"""Hook registry for agent lifecycle events.

Callbacks are registered per event type and dispatched in registration
order. Unlike a fire-and-forget event bus, dispatch is part of the loop's
control flow: every callback is awaited before the loop moves on, and a
failing callback propagates to the caller.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Protocol, TypeVar, runtime_checkable

from cadence.hooks.events import HookEvent, event_name

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=HookEvent)

# Callbacks may be plain functions or coroutines taking the event
HookCallback = Callable[[Any], None | Awaitable[None]]


@runtime_checkable
class HookProvider(Protocol):
    """Bundles related callbacks; registers them all at once."""

    def register_hooks(self, registry: HookRegistry) -> None: ...


class HookRegistry:
    def __init__(self) -> None:
        self._callbacks: dict[type[HookEvent], list[HookCallback]] = defaultdict(list)

    def add_callback(self, event_type: type[E], callback: Callable[[E], Any]) -> None:
        """Register a callback for an event type. Can register multiple."""
        self._callbacks[event_type].append(callback)
        logger.debug(
            "Registered callback for '%s': %s",
            event_type.__name__,
            getattr(callback, "__qualname__", repr(callback)),
        )

    def add_hook(self, provider: HookProvider) -> None:
        provider.register_hooks(self)

    def add_hooks(self, providers: Iterable[HookProvider]) -> None:
        for provider in providers:
            self.add_hook(provider)

    def get_callbacks_for(self, event: HookEvent) -> list[HookCallback]:
        """Callbacks for the event's exact type and its base classes, in registration order."""
        callbacks: list[HookCallback] = []
        for cls in reversed(type(event).__mro__):
            callbacks.extend(self._callbacks.get(cls, ()))
        return callbacks

    def has_callbacks(self, event: HookEvent | type[HookEvent]) -> bool:
        cls = event if isinstance(event, type) else type(event)
        return any(self._callbacks.get(c) for c in cls.__mro__)

    async def invoke_callbacks(self, event: E) -> E:
        """Run every callback for the event, awaiting each before the next."""
        for callback in self.get_callbacks_for(event):
            result = callback(event)
            if inspect.isawaitable(result):
                await result
        logger.debug("Dispatched %s", event_name(event))
        return event
