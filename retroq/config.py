"""Centralized configuration for the RetroQ orchestration engine.

Typed constants read from the environment. Every value has a safe default so
the engine starts without any env configuration (LLM analysis simply stays
disabled until a provider is named).
"""

from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off", "")


# --- App ---
APP_VERSION: str = "0.1.0"

# --- LLM provider ---
LLM_PROVIDER: str | None = os.getenv("RETROQ_LLM_PROVIDER") or None
LLM_MODEL: str | None = os.getenv("RETROQ_LLM_MODEL") or None
LLM_ENABLED: bool = _env_bool("RETROQ_LLM_ENABLED", True)
LLM_API_KEY: str | None = os.getenv("RETROQ_LLM_API_KEY") or None
LLM_TEMPERATURE: float = float(os.getenv("RETROQ_LLM_TEMPERATURE", "0.2"))
LLM_MAX_OUTPUT_TOKENS: int = int(os.getenv("RETROQ_LLM_MAX_OUTPUT_TOKENS", "20000"))

# --- Retry / timeout ---
LLM_TIMEOUT_SECONDS: float = float(os.getenv("RETROQ_LLM_TIMEOUT", "30"))
LLM_MAX_RETRIES: int = int(os.getenv("RETROQ_LLM_MAX_RETRIES", "3"))
LLM_RETRY_DELAY_SECONDS: float = float(os.getenv("RETROQ_LLM_RETRY_DELAY", "1.0"))

# --- Privacy ---
PRIVACY_LEVEL: str = os.getenv("RETROQ_PRIVACY_LEVEL", "moderate")

# --- Strategy ---
PROGRESSIVE_THRESHOLD_TOKENS: int = int(os.getenv("RETROQ_PROGRESSIVE_THRESHOLD_TOKENS", "150000"))
MIN_ITEMS_PER_SOURCE: int = int(os.getenv("RETROQ_MIN_ITEMS_PER_SOURCE", "1"))
CHUNK_SUMMARY_MAX_CHARS: int = 4000
CHUNK_PROMPT_MAX_CHARS: int = 200_000

# --- Metrics ---
METRICS_MAX_HISTORY: int = int(os.getenv("RETROQ_METRICS_MAX_HISTORY", "1000"))
METRICS_MAX_AGE_SECONDS: float = float(os.getenv("RETROQ_METRICS_MAX_AGE", str(24 * 60 * 60)))

# --- Vertex AI / Gemini ---
GOOGLE_CLOUD_PROJECT: str | None = os.getenv("GOOGLE_CLOUD_PROJECT") or None
GEMINI_LOCATION: str = os.getenv("RETROQ_GEMINI_LOCATION", "us-central1")
GEMINI_DEFAULT_MODEL: str = os.getenv("RETROQ_GEMINI_MODEL", "gemini-2.5-flash")
GEMINI_FALLBACK_MODEL: str = "gemini-2.5-flash"
