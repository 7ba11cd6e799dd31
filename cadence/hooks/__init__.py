"""Hooks -- lifecycle events and the registry that dispatches them.

Public API:
    HookRegistry    - Ordered, awaited callback dispatch per event type
    HookProvider    - Protocol for objects that register a set of callbacks

Events:
    BeforeInvocationEvent, AfterInvocationEvent, MessageAddedEvent,
    BeforeModelCallEvent, AfterModelCallEvent, ModelStreamEventHook,
    BeforeToolsEvent, AfterToolsEvent, BeforeToolCallEvent, AfterToolCallEvent
"""

from cadence.hooks.events import (
    AfterInvocationEvent,
    AfterModelCallEvent,
    AfterToolCallEvent,
    AfterToolsEvent,
    BeforeInvocationEvent,
    BeforeModelCallEvent,
    BeforeToolCallEvent,
    BeforeToolsEvent,
    HookEvent,
    MessageAddedEvent,
    ModelStopData,
    ModelStreamEventHook,
)
from cadence.hooks.registry import HookCallback, HookProvider, HookRegistry

__all__ = [
    "AfterInvocationEvent",
    "AfterModelCallEvent",
    "AfterToolCallEvent",
    "AfterToolsEvent",
    "BeforeInvocationEvent",
    "BeforeModelCallEvent",
    "BeforeToolCallEvent",
    "BeforeToolsEvent",
    "HookCallback",
    "HookEvent",
    "HookProvider",
    "HookRegistry",
    "MessageAddedEvent",
    "ModelStopData",
    "ModelStreamEventHook",
]
