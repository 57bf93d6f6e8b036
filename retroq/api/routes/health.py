"""Health check endpoint for the RetroQ API."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter

from retroq import config

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Health check endpoint.

    Reports credential readiness for Vertex AI / Gemini without making an
    API call.
    """
    has_project = bool(config.GOOGLE_CLOUD_PROJECT)
    has_api_key = bool(config.LLM_API_KEY)

    return {
        "status": "healthy",
        "service": "RetroQ API",
        "version": config.APP_VERSION,
        "timestamp": datetime.now(UTC).isoformat(),
        "llm": {
            "enabled": config.LLM_ENABLED,
            "provider": config.LLM_PROVIDER,
            "ready": has_project or has_api_key,
            "google_cloud_project": has_project,
            "api_key": has_api_key,
        },
    }
