"""Model providers.

Public API:
    Model           - Provider interface (stream_aggregated)
    AnthropicModel  - Anthropic Messages API over httpx
"""

from cadence.models.anthropic import AnthropicModel
from cadence.models.model import Model

__all__ = ["AnthropicModel", "Model"]
