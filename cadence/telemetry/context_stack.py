"""Explicit LIFO stack of OpenTelemetry contexts.

The agent loop is a chain of async generators. Each resumption can run
under a different contextvars snapshot, so the ambient OpenTelemetry
context does not reliably name the span that this call chain started
last. Tracers push a context on every span start and pop it on every span
end, and parent new spans to the top of this stack instead.

The stack is shared by every Tracer in the process and is only touched
from the loop's single cooperative thread, so it takes no lock.
"""

from __future__ import annotations

import logging
from opentelemetry import context as otel_context
from opentelemetry.context import Context

logger = logging.getLogger(__name__)


class SpanContextStack:
    def __init__(self) -> None:
        self._stack: list[Context] = []

    def push(self, ctx: Context) -> None:
        self._stack.append(ctx)

    def pop(self, ctx: Context | None = None) -> Context | None:
        """Remove exactly one entry.

        With ctx given, removes that entry (searching from the top) so an
        out-of-order end still leaves the rest of the stack intact.
        """
        if not self._stack:
            logger.warning("Span context stack underflow")
            return None
        if ctx is None or self._stack[-1] is ctx:
            return self._stack.pop()
        for i in range(len(self._stack) - 1, -1, -1):
            if self._stack[i] is ctx:
                logger.warning("Span context popped out of order (depth %d of %d)", i + 1, len(self._stack))
                return self._stack.pop(i)
        logger.warning("Span context not found on stack, popping top")
        return self._stack.pop()

    def current(self) -> Context:
        """Top of the stack, else the ambient OpenTelemetry context."""
        if self._stack:
            return self._stack[-1]
        return otel_context.get_current()

    @property
    def depth(self) -> int:
        return len(self._stack)

    def clear(self) -> None:
        self._stack.clear()


span_context_stack = SpanContextStack()
