"""LLM status and performance endpoints for the RetroQ API.

- GET /api/llm/status - Provider, model, metrics and recommendations
- POST /api/llm/metrics/reset - Clear collected performance metrics
- GET /api/llm/models - Supported models and their token capacities
- GET /api/config/insights - Merge and categorization thresholds
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, HTTPException, Query

from retroq.llm.capacity import DEFAULT_REGISTRY
from retroq.observability.logging import get_logger
from retroq.observability.telemetry import log_event

if TYPE_CHECKING:
    from retroq.llm.analyzer import LLMAnalyzer

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["llm"])

# Module-level storage for the analyzer injected at startup
_analyzer: LLMAnalyzer | None = None


def set_analyzer(analyzer: LLMAnalyzer | None) -> None:
    """Inject the analyzer dependency.

    Side Effects:
        - Sets module-level _analyzer variable
    """
    global _analyzer
    _analyzer = analyzer


def _require_analyzer() -> LLMAnalyzer:
    if _analyzer is None:
        raise HTTPException(status_code=503, detail="LLM analyzer not initialized")
    return _analyzer


@router.get("/llm/status")
async def get_llm_status(data_volume: int = Query(0, alias="dataVolume", ge=0)) -> dict[str, Any]:
    """
    Current LLM configuration with performance metrics.

    Args:
        data_volume: Expected data size in tokens, used for model advice

    Side Effects:
        None (reads in-memory monitor state only)
    """
    analyzer = _require_analyzer()
    status = analyzer.get_status()
    return {
        "enabled": status["enabled"],
        "provider": status["provider"],
        "model": status["model"],
        "metrics": analyzer.get_performance_metrics(),
        "recommendations": analyzer.get_optimization_recommendations(data_volume),
        "lastUpdated": datetime.now(UTC).isoformat(),
    }


@router.post("/llm/metrics/reset")
async def reset_llm_metrics() -> dict[str, Any]:
    """
    Clear the analyzer's performance history.

    Side Effects:
        - Resets the analyzer's PerformanceMonitor
        - Logs telemetry event
    """
    analyzer = _require_analyzer()
    analyzer.reset_performance_metrics()
    log_event("api.llm.metrics_reset")
    logger.info("LLM performance metrics reset via API")
    return {"success": True, "message": "Performance metrics reset"}


@router.get("/llm/models")
async def get_llm_models() -> dict[str, Any]:
    """Supported models per provider with their token capacities."""
    supported = DEFAULT_REGISTRY.get_supported_models()
    capacities = {
        provider: {
            model: {
                "total_tokens": capacity.total_tokens,
                "input_cap": capacity.input_cap,
                "output_cap": capacity.output_cap,
            }
            for model in models
            for capacity in (DEFAULT_REGISTRY.get_capacity(provider, model),)
        }
        for provider, models in supported.items()
    }
    return {"providers": sorted(supported), "models": capacities}


@router.get("/config/insights")
async def get_insight_thresholds() -> dict[str, Any]:
    """
    Merge and categorization thresholds for frontend use.

    Side Effects:
        None (pure function - reads config constants only)
    """
    from retroq.insights.thresholds import get_all_thresholds

    return {"version": "1.0.0", "thresholds": get_all_thresholds()}
