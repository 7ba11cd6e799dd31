"""Token usage accounting across the model calls of one invocation."""

from __future__ import annotations

from dataclasses import replace

from cadence.types.streaming import Usage


def empty_usage() -> Usage:
    return Usage()


def accumulate_usage(target: Usage, source: Usage) -> Usage:
    """Add source's counters into target in place and return target.

    Cache counters are only added when the source measured them, so a
    target that never saw a cache report keeps them as None.
    """
    target.input_tokens += source.input_tokens
    target.output_tokens += source.output_tokens
    target.total_tokens += source.total_tokens
    if source.cache_read_input_tokens is not None:
        target.cache_read_input_tokens = (
            target.cache_read_input_tokens or 0
        ) + source.cache_read_input_tokens
    if source.cache_write_input_tokens is not None:
        target.cache_write_input_tokens = (
            target.cache_write_input_tokens or 0
        ) + source.cache_write_input_tokens
    return target


def copy_usage(usage: Usage) -> Usage:
    return replace(usage)
