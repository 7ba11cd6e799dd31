"""Cadence command-line entry point.

Runs one prompt through an Agent backed by the Anthropic model and
streams the reply to stdout:
  Settings -> logging -> (tracer provider) -> AnthropicModel -> Agent -> stream
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import UTC, datetime

from cadence.agent import Agent
from cadence.config import Settings
from cadence.models import AnthropicModel
from cadence.telemetry import setup_meter, setup_tracer
from cadence.tools import function_tool
from cadence.types import AgentResult, ModelStreamEvent

logger = logging.getLogger(__name__)


@function_tool
def current_time() -> str:
    """Return the current UTC time in ISO 8601 format."""
    return datetime.now(UTC).isoformat()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cadence", description="Run a prompt through a Cadence agent")
    parser.add_argument("prompt", nargs="?", help="Prompt text (read from stdin when omitted)")
    parser.add_argument("--system", default=None, help="System prompt")
    parser.add_argument("--model", default=None, help="Override CADENCE_MODEL")
    return parser


async def run(settings: Settings, prompt: str, system_prompt: str | None = None, model_id: str | None = None) -> AgentResult:
    model = AnthropicModel(settings, model_id=model_id)
    agent = Agent(model, tools=[current_time], system_prompt=system_prompt, settings=settings)
    result: AgentResult | None = None
    try:
        async for event in agent.stream(prompt):
            if isinstance(event, ModelStreamEvent) and event.type == "text_delta":
                sys.stdout.write(event.data["text"])
                sys.stdout.flush()
            elif isinstance(event, AgentResult):
                result = event
    finally:
        await model.close()
    sys.stdout.write("\n")
    assert result is not None
    logger.info("Stop reason: %s", result.stop_reason)
    return result


def main(argv: list[str] | None = None) -> int:
    """Entry point -- parse args and settings, run the prompt."""
    args = build_parser().parse_args(argv)
    settings = Settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Cadence agent: %s", settings.agent_name)
    logger.info("Model: %s", args.model or settings.model)
    logger.info("Telemetry: %s", "enabled" if settings.telemetry_enabled else "disabled")
    logger.info("Metrics: %s", "enabled" if settings.metrics_enabled else "disabled")

    prompt = args.prompt if args.prompt is not None else sys.stdin.read()
    if not prompt.strip():
        logger.error("Empty prompt")
        return 2

    if settings.telemetry_enabled:
        setup_tracer(settings)
    if settings.metrics_enabled:
        setup_meter(settings)

    asyncio.run(run(settings, prompt, args.system, args.model))
    return 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
