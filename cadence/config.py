"""Settings via pydantic-settings with CADENCE_ env prefix.

OpenTelemetry fields use validation_alias to read the standard unprefixed
env vars (OTEL_SERVICE_NAME, OTEL_SEMCONV_STABILITY_OPT_IN, etc.) so the SDK
honours the same configuration as any other instrumented process.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LATEST_EXPERIMENTAL_OPT_IN = "gen_ai_latest_experimental"
TOOL_DEFINITIONS_OPT_IN = "gen_ai_tool_definitions"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CADENCE_", env_file=".env", extra="ignore", populate_by_name=True
    )

    # Agent
    agent_name: str = "Cadence Agent"
    log_level: str = "info"
    # None means the loop runs until the model stops asking for tools
    max_cycles: int | None = None

    # Telemetry
    telemetry_enabled: bool = False
    enable_cycle_spans: bool = True
    metrics_enabled: bool = False
    enable_cycle_metrics: bool = True
    otel_semconv_stability_opt_in: str = Field(
        "", validation_alias="OTEL_SEMCONV_STABILITY_OPT_IN"
    )
    otel_service_name: str = Field("cadence", validation_alias="OTEL_SERVICE_NAME")
    otel_service_namespace: str = Field("cadence", validation_alias="OTEL_SERVICE_NAMESPACE")
    otel_deployment_environment: str = Field(
        "development", validation_alias="OTEL_DEPLOYMENT_ENVIRONMENT"
    )
    otel_exporter_otlp_endpoint: str = Field("", validation_alias="OTEL_EXPORTER_OTLP_ENDPOINT")
    otel_console_exporter: bool = False

    # Model provider
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    model: str = "claude-sonnet-4-5-20250514"
    max_tokens: int = 4096
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: float = 10.0
    api_timeout_read: float = 120.0

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_cycles is not None and self.max_cycles < 1:
            raise ValueError("max_cycles must be >= 1 when set")
        if self.max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")
        return self

    @property
    def semconv_opt_in(self) -> set[str]:
        """Parsed OTEL_SEMCONV_STABILITY_OPT_IN values."""
        return {
            value.strip()
            for value in self.otel_semconv_stability_opt_in.split(",")
            if value.strip()
        }
