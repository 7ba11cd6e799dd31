"""Cadence -- an agent loop with lifecycle hooks and OpenTelemetry tracing."""

from cadence.agent import Agent, AgentState
from cadence.config import Settings
from cadence.errors import (
    CadenceError,
    ConcurrentInvocationError,
    MalformedModelOutputError,
    MaxCyclesExceededError,
    ModelCallError,
    ModelThrottledError,
    ToolExecutionError,
)
from cadence.hooks import HookProvider, HookRegistry
from cadence.models import AnthropicModel, Model
from cadence.telemetry import (
    EventLoopMetrics,
    MeterHookAdapter,
    Tracer,
    TracerHookAdapter,
    setup_meter,
    setup_tracer,
)
from cadence.tools import FunctionTool, McpClient, Tool, ToolContext, function_tool
from cadence.types import AgentResult, Message

__version__ = "0.1.0"

__all__ = [
    "Agent",
    "AgentResult",
    "AgentState",
    "AnthropicModel",
    "CadenceError",
    "ConcurrentInvocationError",
    "EventLoopMetrics",
    "FunctionTool",
    "HookProvider",
    "HookRegistry",
    "MalformedModelOutputError",
    "MaxCyclesExceededError",
    "McpClient",
    "MeterHookAdapter",
    "Message",
    "Model",
    "ModelCallError",
    "ModelThrottledError",
    "Settings",
    "Tool",
    "ToolContext",
    "ToolExecutionError",
    "Tracer",
    "TracerHookAdapter",
    "function_tool",
    "setup_meter",
    "setup_tracer",
]
