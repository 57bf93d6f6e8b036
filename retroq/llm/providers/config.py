"""
Provider configuration (Pydantic v2).

Validated once at construction so providers can trust their settings. The
API key never shows up in repr or redacted dumps.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from retroq import config
from retroq.utils.redaction import redact

DEFAULT_MODELS: dict[str, str] = {
    "gemini": config.GEMINI_DEFAULT_MODEL,
}

# Vertex AI authenticates with application default credentials; providers
# added through register_provider() need an API key
KEYLESS_PROVIDERS = frozenset({"gemini"})


class ProviderConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    model: str | None = None
    api_key: str | None = None
    timeout_seconds: float = Field(default=config.LLM_TIMEOUT_SECONDS, gt=0)
    max_tokens: int = Field(default=config.LLM_MAX_OUTPUT_TOKENS, gt=0)
    temperature: float = Field(default=config.LLM_TEMPERATURE, ge=0.0, le=2.0)
    retry_attempts: int = Field(default=config.LLM_MAX_RETRIES, ge=1)
    retry_delay_seconds: float = Field(default=config.LLM_RETRY_DELAY_SECONDS, ge=0.0)
    base_url: str | None = None
    project: str | None = config.GOOGLE_CLOUD_PROJECT
    location: str = config.GEMINI_LOCATION

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if not v:
            raise ValueError("provider is required")
        return v

    @model_validator(mode="after")
    def _check_credentials(self) -> ProviderConfig:
        if not self.api_key and self.provider not in KEYLESS_PROVIDERS:
            raise ValueError(f"API key is required for provider '{self.provider}'")
        return self

    @property
    def resolved_model(self) -> str:
        return self.model or DEFAULT_MODELS.get(self.provider, "default")

    def redacted(self) -> dict[str, Any]:
        data = self.model_dump(exclude_none=True)
        if self.api_key:
            data["api_key"] = redact(self.api_key)
        return data

    def __repr__(self) -> str:
        return f"ProviderConfig({self.redacted()})"

    @classmethod
    def from_env(cls) -> ProviderConfig | None:
        """
        Build a config from RETROQ_* environment constants.

        Returns:
            None when no provider is configured

        Raises:
            pydantic.ValidationError: provider named but settings invalid
        """
        if not config.LLM_PROVIDER:
            return None
        return cls(
            provider=config.LLM_PROVIDER,
            model=config.LLM_MODEL,
            api_key=config.LLM_API_KEY,
            timeout_seconds=config.LLM_TIMEOUT_SECONDS,
            max_tokens=config.LLM_MAX_OUTPUT_TOKENS,
            temperature=config.LLM_TEMPERATURE,
            retry_attempts=config.LLM_MAX_RETRIES,
            retry_delay_seconds=config.LLM_RETRY_DELAY_SECONDS,
        )
