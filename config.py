"""Environment configuration - parsed once at startup into a validated Settings model."""

import os
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError, ValidationInfo, field_validator

from exceptions import ConfigError

GROQ_API_URL = "https://api.groq.com/openai/v1/chat/completions"

# Hard timeout of one provider-chain attempt. The provider timeouts must sum to less.
ATTEMPT_TIMEOUT_SECONDS = 10.0

# Environment variable -> Settings field
_ENV_FIELDS = {
    "GROQ_API_KEY": "groq_api_key",
    "GROQ_API_URL": "groq_api_url",
    "GROQ_MODEL": "groq_model",
    "PRIMARY_TIMEOUT_SECONDS": "primary_timeout_seconds",
    "EXTERNAL_AI_API_URL": "external_api_url",
    "EXTERNAL_AI_API_KEY": "external_api_key",
    "EXTERNAL_AI_MODEL": "external_model",
    "SECONDARY_TIMEOUT_SECONDS": "secondary_timeout_seconds",
    "AI_TEMPERATURE": "temperature",
    "AI_MAX_TOKENS": "max_tokens",
    "REDIS_URL": "redis_url",
    "CACHE_TTL_SECONDS": "cache_ttl_seconds",
    "RATE_LIMIT_PER_MINUTE": "rate_limit_per_minute",
    "RATE_LIMIT_WINDOW_SECONDS": "rate_limit_window_seconds",
    "LOG_LEVEL": "log_level",
}


class Settings(BaseModel):
    """Validated service configuration."""

    groq_api_key: Optional[str] = None
    groq_api_url: str = GROQ_API_URL
    groq_model: str = "llama-3.1-8b-instant"
    primary_timeout_seconds: float = Field(default=4.0, ge=1.0, lt=ATTEMPT_TIMEOUT_SECONDS)

    external_api_url: Optional[str] = None
    external_api_key: Optional[str] = None
    external_model: str = "gpt-3.5-turbo"
    secondary_timeout_seconds: float = Field(default=4.0, ge=1.0, lt=ATTEMPT_TIMEOUT_SECONDS, validate_default=True)

    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, ge=1, le=4000)

    redis_url: Optional[str] = None
    cache_ttl_seconds: int = Field(default=3600, ge=60, le=86400)

    rate_limit_per_minute: int = Field(default=100, ge=1, le=10000)
    rate_limit_window_seconds: int = Field(default=60, ge=1, le=3600)

    log_level: Literal["debug", "info", "warning", "error"] = "info"

    @field_validator("secondary_timeout_seconds")
    @classmethod
    def _chain_fits_attempt(cls, value: float, info: ValidationInfo) -> float:
        primary = info.data.get("primary_timeout_seconds")
        configured = info.data.get("external_api_url") and info.data.get("external_api_key")
        if primary is not None and configured and primary + value >= ATTEMPT_TIMEOUT_SECONDS:
            raise ValueError(
                f"primary + secondary timeout ({primary + value}s) must be below the {ATTEMPT_TIMEOUT_SECONDS}s attempt timeout"
            )
        return value

    @property
    def external_configured(self) -> bool:
        """Secondary provider is enabled only when both URL and key are present."""
        return bool(self.external_api_url and self.external_api_key)

    @classmethod
    def from_env(cls, env: Optional[dict] = None) -> "Settings":
        """Build Settings from environment variables. Raises ConfigError naming the bad variable."""
        source = os.environ if env is None else env
        raw = {}
        for env_name, field_name in _ENV_FIELDS.items():
            value = source.get(env_name)
            if value is None or value == "":
                continue
            raw[field_name] = value.lower() if env_name == "LOG_LEVEL" else value

        try:
            return cls(**raw)
        except ValidationError as e:
            reverse = {field: env_name for env_name, field in _ENV_FIELDS.items()}
            bad = sorted({reverse.get(str(err["loc"][0]), str(err["loc"][0])) for err in e.errors()})
            raise ConfigError(f"Invalid environment configuration: {', '.join(bad)}") from e
