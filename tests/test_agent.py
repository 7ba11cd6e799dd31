"""Tests for the Agent loop: message accumulation, tool dispatch, hooks and errors.

Tests drive the loop with a ScriptedModel that replays fixed responses,
and use real FunctionTools so the whole dispatch path is exercised.
"""

from __future__ import annotations

import asyncio

import pytest

from cadence.agent import Agent, AgentState
from cadence.config import Settings
from cadence.errors import (
    ConcurrentInvocationError,
    MalformedModelOutputError,
    MaxCyclesExceededError,
    ModelCallError,
    ModelThrottledError,
    ToolExecutionError,
)
from cadence.hooks import (
    AfterInvocationEvent,
    AfterModelCallEvent,
    AfterToolCallEvent,
    AfterToolsEvent,
    BeforeInvocationEvent,
    BeforeModelCallEvent,
    BeforeToolCallEvent,
    BeforeToolsEvent,
    HookEvent,
    HookRegistry,
    MessageAddedEvent,
    ModelStreamEventHook,
)
from cadence.tools import FunctionTool, Tool, ToolContext, function_tool
from cadence.types import (
    AgentResult,
    JsonBlock,
    Message,
    ModelStreamEvent,
    TextBlock,
    ToolResultBlock,
    ToolStreamEvent,
    Usage,
)
from tests.conftest import ScriptedModel, make_response

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@function_tool
def echo(message: str) -> str:
    """Echo the message back."""
    return f"Echo: {message}"


class RecordingHooks:
    """Hook provider that records every lifecycle event it sees."""

    EVENT_TYPES = (
        BeforeInvocationEvent,
        AfterInvocationEvent,
        MessageAddedEvent,
        BeforeModelCallEvent,
        AfterModelCallEvent,
        BeforeToolsEvent,
        AfterToolsEvent,
        BeforeToolCallEvent,
        AfterToolCallEvent,
    )

    def __init__(self) -> None:
        self.events: list[HookEvent] = []

    def register_hooks(self, registry: HookRegistry) -> None:
        for event_type in self.EVENT_TYPES:
            registry.add_callback(event_type, self.events.append)

    def of_type(self, event_type: type) -> list:
        return [e for e in self.events if isinstance(e, event_type)]

    @property
    def names(self) -> list[str]:
        return [type(e).__name__ for e in self.events]


class RetryOnError:
    """Asks the loop to retry failed model calls up to max_retries times."""

    def __init__(self, max_retries: int = 2) -> None:
        self.max_retries = max_retries
        self.retries = 0

    def register_hooks(self, registry: HookRegistry) -> None:
        registry.add_callback(AfterModelCallEvent, self.on_after_model_call)

    async def on_after_model_call(self, event: AfterModelCallEvent) -> None:
        if event.error is not None and self.retries < self.max_retries:
            self.retries += 1
            event.retry_model_call = True


def _make_agent(script, tools=None, hooks=None, settings=None, **kwargs) -> tuple[Agent, ScriptedModel]:
    model = ScriptedModel(script)
    agent = Agent(model, tools=tools or [], hooks=hooks or [], settings=settings, **kwargs)
    return agent, model


async def _collect(agent: Agent, prompt) -> list:
    return [event async for event in agent.stream(prompt)]


# ---------------------------------------------------------------------------
# Basic turns
# ---------------------------------------------------------------------------


class TestSimpleTurn:
    @pytest.mark.asyncio
    async def test_text_response_returns_result(self, settings):
        """A plain end_turn response finishes the invocation in one cycle."""
        agent, model = _make_agent([make_response("Hello!")], settings=settings)

        result = await agent.invoke("Hi")

        assert isinstance(result, AgentResult)
        assert result.stop_reason == "end_turn"
        assert result.text == "Hello!"
        assert str(result) == "Hello!"
        assert [m.role for m in agent.messages] == ["user", "assistant"]
        assert len(model.calls) == 1

    @pytest.mark.asyncio
    async def test_stream_event_order(self, settings):
        """Lifecycle events arrive in loop order and the AgentResult is last."""
        agent, _ = _make_agent([make_response("Hello!")], settings=settings)

        events = await _collect(agent, "Hi")

        hook_names = [type(e).__name__ for e in events if isinstance(e, HookEvent)]
        assert hook_names == [
            "BeforeInvocationEvent",
            "MessageAddedEvent",
            "BeforeModelCallEvent",
            "AfterModelCallEvent",
            "MessageAddedEvent",
            "AfterInvocationEvent",
        ]
        assert isinstance(events[-1], AgentResult)
        assert isinstance(events[-2], AfterInvocationEvent)
        deltas = [e for e in events if isinstance(e, ModelStreamEvent) and e.type == "text_delta"]
        assert deltas[0].data["text"] == "Hello!"

    @pytest.mark.asyncio
    async def test_model_receives_system_prompt_and_tool_specs(self, settings):
        agent, model = _make_agent(
            [make_response("ok")], tools=[echo], settings=settings, system_prompt="Be brief."
        )

        await agent.invoke("Hi")

        assert model.system_prompts == ["Be brief."]
        assert [spec["name"] for spec in model.tool_specs[0]] == ["echo"]
        assert model.tool_specs[0][0]["description"] == "Echo the message back."

    @pytest.mark.asyncio
    async def test_conversation_persists_across_invocations(self, settings):
        agent, model = _make_agent([make_response("one"), make_response("two")], settings=settings)

        await agent.invoke("first")
        await agent.invoke("second")

        assert [m.text for m in agent.messages] == ["first", "one", "second", "two"]
        assert len(model.calls[1]) == 3


# ---------------------------------------------------------------------------
# Input normalization
# ---------------------------------------------------------------------------


class TestInput:
    @pytest.mark.asyncio
    async def test_content_blocks_become_one_user_message(self, settings):
        agent, _ = _make_agent([make_response("ok")], settings=settings)

        await agent.invoke([TextBlock("part one"), {"text": "part two"}])

        first = agent.messages[0]
        assert first.role == "user"
        assert [b.text for b in first.content] == ["part one", "part two"]

    @pytest.mark.asyncio
    async def test_messages_are_appended_as_given(self, settings):
        agent, _ = _make_agent([make_response("ok")], settings=settings)

        await agent.invoke([
            {"role": "user", "content": [{"text": "question"}]},
            {"role": "assistant", "content": [{"text": "clarify?"}]},
            Message.user_text("answer"),
        ])

        assert [m.role for m in agent.messages] == ["user", "assistant", "user", "assistant"]
        assert agent.messages[2].text == "answer"

    @pytest.mark.asyncio
    async def test_none_continues_existing_conversation(self, settings):
        agent, model = _make_agent(
            [make_response("ok")], settings=settings, messages=[{"role": "user", "content": "hello"}]
        )

        await agent.invoke()

        assert model.calls[0][0].text == "hello"
        assert len(agent.messages) == 2

    @pytest.mark.asyncio
    async def test_mixed_messages_and_blocks_rejected(self, settings):
        agent, _ = _make_agent([make_response("ok")], settings=settings)

        with pytest.raises(TypeError):
            await agent.invoke([Message.user_text("a"), TextBlock("b")])


# ---------------------------------------------------------------------------
# Tool cycles
# ---------------------------------------------------------------------------


class TestToolCycle:
    @pytest.mark.asyncio
    async def test_single_tool_cycle_builds_four_messages(self, settings):
        """user -> assistant(tool_use) -> user(tool_result) -> assistant."""
        agent, model = _make_agent([
            make_response(tool_uses=[{"id": "t1", "name": "echo", "input": {"message": "hi"}}]),
            make_response("Done"),
        ], tools=[echo], settings=settings)

        result = await agent.invoke("Say hi")

        assert result.text == "Done"
        assert [m.role for m in agent.messages] == ["user", "assistant", "user", "assistant"]
        tool_result = agent.messages[2].content[0]
        assert isinstance(tool_result, ToolResultBlock)
        assert tool_result.tool_use_id == "t1"
        assert tool_result.status == "success"
        assert tool_result.text == "Echo: hi"
        # Second model call saw the tool exchange
        assert len(model.calls[1]) == 3

    @pytest.mark.asyncio
    async def test_tools_run_sequentially_in_request_order(self, settings):
        """Results follow request order even when the first tool is the slowest."""
        trace: list[str] = []

        async def slow(label: str) -> str:
            trace.append(f"start {label}")
            await asyncio.sleep(0.05)
            trace.append(f"end {label}")
            return label

        async def fast(label: str) -> str:
            trace.append(f"start {label}")
            trace.append(f"end {label}")
            return label

        agent, _ = _make_agent([
            make_response(tool_uses=[
                {"id": "a", "name": "slow", "input": {"label": "A"}},
                {"id": "b", "name": "fast", "input": {"label": "B"}},
            ]),
            make_response("Done"),
        ], tools=[slow, fast], settings=settings)

        await agent.invoke("go")

        results = agent.messages[2].tool_results
        assert [r.tool_use_id for r in results] == ["a", "b"]
        assert [r.text for r in results] == ["A", "B"]
        assert trace == ["start A", "end A", "start B", "end B"]

    @pytest.mark.asyncio
    async def test_slower_second_tool_keeps_order(self, settings):
        async def quick() -> str:
            return "A"

        async def slow() -> str:
            await asyncio.sleep(0.05)
            return "B"

        agent, _ = _make_agent([
            make_response(tool_uses=[{"id": "a", "name": "quick"}, {"id": "b", "name": "slow"}]),
            make_response("Done"),
        ], tools=[quick, slow], settings=settings)

        await agent.invoke("go")

        assert [r.text for r in agent.messages[2].tool_results] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_missing_tool_produces_error_result(self, settings):
        hooks = RecordingHooks()
        agent, model = _make_agent([
            make_response(tool_uses=[{"id": "t1", "name": "nope"}]),
            make_response("Sorry"),
        ], hooks=[hooks], settings=settings)

        result = await agent.invoke("go")

        assert result.text == "Sorry"
        block = agent.messages[2].content[0]
        assert block.status == "error"
        assert block.text == "Tool 'nope' not found in registry"
        assert isinstance(block.error, ToolExecutionError)
        assert block.error.tool_name == "nope"
        assert hooks.of_type(BeforeToolCallEvent) == []
        after = hooks.of_type(AfterToolCallEvent)
        assert len(after) == 1
        assert after[0].tool is None
        assert after[0].result is block
        assert len(model.calls) == 2

    @pytest.mark.asyncio
    async def test_tool_exception_becomes_error_result(self, settings):
        hooks = RecordingHooks()

        def explode() -> str:
            raise RuntimeError("boom")

        agent, _ = _make_agent([
            make_response(tool_uses=[{"id": "t1", "name": "explode"}]),
            make_response("Recovered"),
        ], tools=[explode], hooks=[hooks], settings=settings)

        result = await agent.invoke("go")

        assert result.text == "Recovered"
        block = agent.messages[2].content[0]
        assert block.status == "error"
        assert block.text == "Error: boom"
        after = hooks.of_type(AfterToolCallEvent)[0]
        assert isinstance(after.error, RuntimeError)
        assert after.result.status == "error"

    @pytest.mark.asyncio
    async def test_invalid_tool_input_becomes_error_result(self, settings):
        def add(a: int, b: int) -> int:
            return a + b

        agent, _ = _make_agent([
            make_response(tool_uses=[{"id": "t1", "name": "add", "input": {"a": "x"}}]),
            make_response("ok"),
        ], tools=[add], settings=settings)

        await agent.invoke("go")

        block = agent.messages[2].content[0]
        assert block.status == "error"
        assert block.text.startswith("Error: ")

    @pytest.mark.asyncio
    async def test_tool_without_result_becomes_error_result(self, settings):
        class Silent(Tool):
            name = "silent"

            async def stream(self, context: ToolContext):
                yield ToolStreamEvent(data={"progress": 50})

        agent, _ = _make_agent([
            make_response(tool_uses=[{"id": "t1", "name": "silent"}]),
            make_response("ok"),
        ], tools=[Silent()], settings=settings)

        events = await _collect(agent, "go")

        progress = [e for e in events if isinstance(e, ToolStreamEvent)]
        assert progress[0].data == {"progress": 50}
        assert progress[0].tool_use_id == "t1"
        block = agent.messages[2].content[0]
        assert block.status == "error"
        assert block.text == "Tool 'silent' did not return a result"
        assert isinstance(block.error, ToolExecutionError)

    @pytest.mark.asyncio
    async def test_result_tool_use_id_is_corrected(self, settings):
        class WrongId(Tool):
            name = "wrong_id"

            async def stream(self, context: ToolContext):
                yield ToolResultBlock(tool_use_id="other", status="success", content=(TextBlock("x"),))

        agent, _ = _make_agent([
            make_response(tool_uses=[{"id": "t1", "name": "wrong_id"}]),
            make_response("ok"),
        ], tools=[WrongId()], settings=settings)

        await agent.invoke("go")

        assert agent.messages[2].content[0].tool_use_id == "t1"

    @pytest.mark.asyncio
    async def test_tool_context_exposes_agent_state(self, settings):
        def remember(value: str, tool_context: ToolContext) -> dict:
            tool_context.agent.state.set("remembered", value)
            return {"stored": value, "tool_use_id": tool_context.tool_use.tool_use_id}

        agent, _ = _make_agent([
            make_response(tool_uses=[{"id": "t1", "name": "remember", "input": {"value": "v"}}]),
            make_response("ok"),
        ], tools=[remember], settings=settings, state={"existing": 1})

        await agent.invoke("go")

        assert agent.state.get("remembered") == "v"
        assert agent.state.get("existing") == 1
        block = agent.messages[2].content[0]
        assert block.content == (JsonBlock({"stored": "v", "tool_use_id": "t1"}),)
        assert "tool_context" not in agent.tool_registry.get("remember").input_schema["properties"]

    @pytest.mark.asyncio
    async def test_after_tools_runs_before_messages_are_appended(self, settings):
        lengths: list[int] = []

        class Inspector:
            def register_hooks(self, registry: HookRegistry) -> None:
                registry.add_callback(AfterToolsEvent, lambda e: lengths.append(len(e.agent.messages)))

        agent, _ = _make_agent([
            make_response(tool_uses=[{"id": "t1", "name": "echo", "input": {"message": "x"}}]),
            make_response("ok"),
        ], tools=[echo], hooks=[Inspector()], settings=settings)

        await agent.invoke("go")

        assert lengths == [1]


# ---------------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------------


class TestHooks:
    @pytest.mark.asyncio
    async def test_message_added_order(self, settings):
        hooks = RecordingHooks()
        agent, _ = _make_agent([
            make_response(tool_uses=[{"id": "t1", "name": "echo", "input": {"message": "x"}}]),
            make_response("ok"),
        ], tools=[echo], hooks=[hooks], settings=settings)

        await agent.invoke("go")

        added = hooks.of_type(MessageAddedEvent)
        assert [e.message.role for e in added] == ["user", "assistant", "user", "assistant"]
        assert [e.message for e in added] == agent.messages

    @pytest.mark.asyncio
    async def test_tool_cycle_hook_sequence(self, settings):
        hooks = RecordingHooks()
        agent, _ = _make_agent([
            make_response(tool_uses=[{"id": "t1", "name": "echo", "input": {"message": "x"}}]),
            make_response("ok"),
        ], tools=[echo], hooks=[hooks], settings=settings)

        await agent.invoke("go")

        assert hooks.names == [
            "BeforeInvocationEvent",
            "MessageAddedEvent",
            "BeforeModelCallEvent",
            "AfterModelCallEvent",
            "BeforeToolsEvent",
            "BeforeToolCallEvent",
            "AfterToolCallEvent",
            "AfterToolsEvent",
            "MessageAddedEvent",
            "MessageAddedEvent",
            "BeforeModelCallEvent",
            "AfterModelCallEvent",
            "MessageAddedEvent",
            "AfterInvocationEvent",
        ]
        after_tools = hooks.of_type(AfterToolsEvent)[0]
        assert after_tools.tool_result_message.tool_results[0].text == "Echo: x"

    @pytest.mark.asyncio
    async def test_callbacks_complete_before_event_is_yielded(self, settings):
        finished: list[str] = []

        async def slow_callback(event: BeforeModelCallEvent) -> None:
            await asyncio.sleep(0.01)
            finished.append("before_model")

        class Slow:
            def register_hooks(self, registry: HookRegistry) -> None:
                registry.add_callback(BeforeModelCallEvent, slow_callback)

        agent, _ = _make_agent([make_response("ok")], hooks=[Slow()], settings=settings)

        async for event in agent.stream("go"):
            if isinstance(event, BeforeModelCallEvent):
                assert finished == ["before_model"]

    @pytest.mark.asyncio
    async def test_model_stream_events_dispatched_to_hooks(self, settings):
        seen: list[str] = []

        class StreamWatcher:
            def register_hooks(self, registry: HookRegistry) -> None:
                registry.add_callback(ModelStreamEventHook, lambda e: seen.append(e.event.type))

        agent, _ = _make_agent([make_response("ok")], hooks=[StreamWatcher()], settings=settings)

        await agent.invoke("go")

        assert seen == ["message_start", "text_delta"]

    @pytest.mark.asyncio
    async def test_stream_hook_error_is_not_a_model_error(self, settings):
        def fail(event: ModelStreamEventHook) -> None:
            raise ValueError("stream hook failed")

        class FailingWatcher:
            def register_hooks(self, registry: HookRegistry) -> None:
                registry.add_callback(ModelStreamEventHook, fail)

        hooks = RecordingHooks()
        retry = RetryOnError()
        agent, model = _make_agent(
            [make_response("ok"), make_response("again")],
            hooks=[FailingWatcher(), hooks, retry],
            settings=settings,
        )

        with pytest.raises(ValueError, match="stream hook failed"):
            await agent.invoke("go")

        assert hooks.of_type(AfterModelCallEvent) == []
        assert retry.retries == 0
        assert len(model.calls) == 1
        assert isinstance(hooks.of_type(AfterInvocationEvent)[0].error, ValueError)

    @pytest.mark.asyncio
    async def test_failing_before_invocation_still_runs_after_invocation(self, settings):
        def fail(event: BeforeInvocationEvent) -> None:
            raise ValueError("rejected")

        class Gate:
            def register_hooks(self, registry: HookRegistry) -> None:
                registry.add_callback(BeforeInvocationEvent, fail)

        hooks = RecordingHooks()
        agent, model = _make_agent([make_response("ok")], hooks=[Gate(), hooks], settings=settings)

        with pytest.raises(ValueError, match="rejected"):
            await agent.invoke("go")

        after = hooks.of_type(AfterInvocationEvent)
        assert len(after) == 1
        assert after[0].result is None
        assert isinstance(after[0].error, ValueError)
        assert model.calls == []

    @pytest.mark.asyncio
    async def test_failing_callback_propagates(self, settings):
        def fail(event: BeforeModelCallEvent) -> None:
            raise ValueError("hook failed")

        class Failing:
            def register_hooks(self, registry: HookRegistry) -> None:
                registry.add_callback(BeforeModelCallEvent, fail)

        hooks = RecordingHooks()
        agent, _ = _make_agent([make_response("ok")], hooks=[Failing(), hooks], settings=settings)

        with pytest.raises(ValueError, match="hook failed"):
            await agent.invoke("go")

        after = hooks.of_type(AfterInvocationEvent)
        assert len(after) == 1
        assert isinstance(after[0].error, ValueError)


# ---------------------------------------------------------------------------
# Model errors and retries
# ---------------------------------------------------------------------------


class TestModelErrors:
    @pytest.mark.asyncio
    async def test_model_error_propagates_after_invocation_hook(self, settings):
        hooks = RecordingHooks()
        agent, _ = _make_agent([ModelCallError("down")], hooks=[hooks], settings=settings)

        with pytest.raises(ModelCallError, match="down"):
            await agent.invoke("go")

        after_model = hooks.of_type(AfterModelCallEvent)[0]
        assert isinstance(after_model.error, ModelCallError)
        assert after_model.stop_data is None
        after = hooks.of_type(AfterInvocationEvent)[0]
        assert after.result is None
        assert isinstance(after.error, ModelCallError)

    @pytest.mark.asyncio
    async def test_retry_requested_by_hook(self, settings):
        retry = RetryOnError()
        agent, model = _make_agent(
            [ModelThrottledError("slow down"), make_response("ok")], hooks=[retry], settings=settings
        )

        result = await agent.invoke("go")

        assert result.text == "ok"
        assert retry.retries == 1
        assert len(model.calls) == 2
        assert [m.role for m in agent.messages] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_retry_gives_up_when_hook_stops_asking(self, settings):
        retry = RetryOnError(max_retries=1)
        agent, model = _make_agent(
            [ModelThrottledError("one"), ModelThrottledError("two")], hooks=[retry], settings=settings
        )

        with pytest.raises(ModelThrottledError, match="two"):
            await agent.invoke("go")
        assert len(model.calls) == 2

    @pytest.mark.asyncio
    async def test_tool_use_without_tool_blocks_is_malformed(self, settings):
        agent, _ = _make_agent([make_response("I will call a tool", stop_reason="tool_use")], settings=settings)

        with pytest.raises(MalformedModelOutputError):
            await agent.invoke("go")

        # The unanswerable assistant message is never appended
        assert [m.role for m in agent.messages] == ["user"]

    @pytest.mark.asyncio
    async def test_max_cycles_exceeded(self, settings):
        tool_call = {"name": "echo", "input": {"message": "again"}}
        agent, model = _make_agent(
            [make_response(tool_uses=[tool_call]) for _ in range(3)],
            tools=[echo],
            settings=settings,
            max_cycles=2,
        )

        with pytest.raises(MaxCyclesExceededError) as exc_info:
            await agent.invoke("loop forever")

        assert exc_info.value.max_cycles == 2
        assert len(model.calls) == 2
        # Every tool request that was made got its answer
        assert agent.messages[-1].role == "user"
        assert agent.messages[-1].tool_results

    @pytest.mark.asyncio
    async def test_max_cycles_from_settings(self):
        agent, _ = _make_agent(
            [make_response(tool_uses=[{"name": "echo", "input": {"message": "x"}}])],
            tools=[echo],
            settings=Settings(_env_file=None, max_cycles=1),
        )

        with pytest.raises(MaxCyclesExceededError):
            await agent.invoke("go")


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


class TestUsage:
    @pytest.mark.asyncio
    async def test_usage_accumulates_across_cycles(self, settings):
        hooks = RecordingHooks()
        agent, _ = _make_agent([
            make_response(
                tool_uses=[{"id": "t1", "name": "echo", "input": {"message": "x"}}],
                usage=Usage(input_tokens=10, output_tokens=5, total_tokens=15),
            ),
            make_response(
                "ok",
                usage=Usage(input_tokens=20, output_tokens=7, total_tokens=27, cache_read_input_tokens=3),
            ),
        ], tools=[echo], hooks=[hooks], settings=settings)

        await agent.invoke("go")

        usage = agent.accumulated_usage
        assert (usage.input_tokens, usage.output_tokens, usage.total_tokens) == (30, 12, 42)
        assert usage.cache_read_input_tokens == 3
        assert usage.cache_write_input_tokens is None
        assert hooks.of_type(AfterInvocationEvent)[0].accumulated_usage == usage

    @pytest.mark.asyncio
    async def test_usage_resets_per_invocation(self, settings):
        agent, _ = _make_agent([
            make_response("a", usage=Usage(input_tokens=5, output_tokens=5, total_tokens=10)),
            make_response("b", usage=Usage(input_tokens=1, output_tokens=1, total_tokens=2)),
        ], settings=settings)

        await agent.invoke("one")
        await agent.invoke("two")

        assert agent.accumulated_usage.total_tokens == 2

    @pytest.mark.asyncio
    async def test_event_loop_metrics_track_cycles_and_tools(self, settings):
        agent, _ = _make_agent([
            make_response(
                tool_uses=[{"id": "t1", "name": "echo", "input": {"message": "x"}}],
                usage=Usage(input_tokens=10, output_tokens=5, total_tokens=15),
            ),
            make_response("ok", usage=Usage(input_tokens=20, output_tokens=7, total_tokens=27)),
        ], tools=[echo], settings=settings)

        await agent.invoke("go")

        loop_metrics = agent.event_loop_metrics
        assert loop_metrics.cycle_count == 2
        assert len(loop_metrics.cycle_durations) == 2
        assert loop_metrics.tool_metrics["echo"].call_count == 1
        assert loop_metrics.tool_metrics["echo"].success_count == 1
        assert loop_metrics.accumulated_usage.total_tokens == 42
        assert loop_metrics.accumulated_metrics.latency_ms == 25.0

        invocation = loop_metrics.latest_agent_invocation
        assert [c.event_loop_cycle_id for c in invocation.cycles] == ["cycle-1", "cycle-2"]
        assert [c.usage.total_tokens for c in invocation.cycles] == [15, 27]
        first_cycle = loop_metrics.traces[0]
        assert first_cycle.end_time is not None
        assert first_cycle.children[0].raw_name == "echo - t1"

    @pytest.mark.asyncio
    async def test_event_loop_metrics_end_cycle_on_model_error(self, settings):
        agent, _ = _make_agent([ModelCallError("down")], settings=settings)

        with pytest.raises(ModelCallError):
            await agent.invoke("go")

        assert agent.event_loop_metrics.cycle_count == 1
        assert agent.event_loop_metrics.traces[0].end_time is not None


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_second_invocation_rejected_while_streaming(self, settings):
        hooks = RecordingHooks()
        agent, _ = _make_agent([make_response("first"), make_response("second")], hooks=[hooks], settings=settings)

        stream = agent.stream("one")
        first = await stream.__anext__()
        assert isinstance(first, BeforeInvocationEvent)

        with pytest.raises(ConcurrentInvocationError):
            await agent.invoke("two")

        await stream.aclose()

        # Closing the stream ran AfterInvocation and released the agent
        assert len(hooks.of_type(AfterInvocationEvent)) == 1
        result = await agent.invoke("three")
        assert result.text == "first"

    @pytest.mark.asyncio
    async def test_concurrent_tasks_one_fails(self, settings):
        gate = asyncio.Event()

        async def wait_for_gate() -> str:
            await gate.wait()
            return "done"

        agent, _ = _make_agent([
            make_response(tool_uses=[{"id": "t1", "name": "wait_for_gate"}]),
            make_response("ok"),
        ], tools=[wait_for_gate], settings=settings)

        first = asyncio.create_task(agent.invoke("one"))
        await asyncio.sleep(0.01)
        with pytest.raises(ConcurrentInvocationError):
            await agent.invoke("two")
        gate.set()

        result = await first
        assert result.text == "ok"


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_callables_are_wrapped_and_nested_lists_flattened(self, settings):
        def alpha() -> str:
            return "a"

        async def beta() -> str:
            return "b"

        agent = Agent(ScriptedModel([]), tools=[[alpha, [beta]], echo], settings=settings)

        assert agent.tool_registry.names() == ["alpha", "beta", "echo"]
        assert all(isinstance(t, FunctionTool) for t in agent.tools)

    def test_unsupported_tool_rejected(self, settings):
        with pytest.raises(TypeError):
            Agent(ScriptedModel([]), tools=[42], settings=settings)

    def test_duplicate_tool_names_rejected(self, settings):
        with pytest.raises(ValueError):
            Agent(ScriptedModel([]), tools=[echo, FunctionTool(lambda: "x", name="echo")], settings=settings)

    def test_defaults_from_settings(self, settings):
        agent = Agent(ScriptedModel([]), settings=settings)

        assert agent.name == "Cadence Agent"
        assert agent.agent_id.startswith("agent-")
        assert agent.tracing_enabled is False
        assert isinstance(agent.state, AgentState)
