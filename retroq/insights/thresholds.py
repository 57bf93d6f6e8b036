"""
Insight merge and categorization thresholds.

IMPORTANT: Values are loaded from config/retroq_policy.yaml. The constants
below carry the hardcoded defaults used when the file (or a key) is missing.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from retroq.observability.logging import get_logger

logger = get_logger(__name__)


def _load_policy_config() -> dict[str, Any]:
    """
    Load configuration from retroq_policy.yaml.

    Side Effects:
        - Reads config/retroq_policy.yaml file from filesystem

    Returns:
        Dict with merger, categorizer and confidence_defaults sections
    """
    possible_paths = [
        Path(__file__).parent.parent.parent / "config" / "retroq_policy.yaml",
        Path(__file__).parent.parent / "config" / "retroq_policy.yaml",
        Path("config/retroq_policy.yaml"),
    ]

    for config_path in possible_paths:
        if config_path.exists():
            with open(config_path) as f:
                config = yaml.safe_load(f) or {}
                logger.debug("Loaded insight policy from %s", config_path)
                return config

    logger.warning("retroq_policy.yaml not found, using hardcoded defaults")
    return {}


_POLICY_CONFIG = _load_policy_config()
_MERGER_CONFIG = _POLICY_CONFIG.get("merger", {})
_CATEGORIZER_CONFIG = _POLICY_CONFIG.get("categorizer", {})
_CONFIDENCE_CONFIG = _POLICY_CONFIG.get("confidence_defaults", {})

# ============================================================================
# MERGER
# ============================================================================

SIMILARITY_THRESHOLD = _MERGER_CONFIG.get("similarity_threshold", 0.5)
MAX_INSIGHTS_PER_CATEGORY = _MERGER_CONFIG.get("max_insights_per_category", 10)
PRIORITIZE_AI = _MERGER_CONFIG.get("prioritize_ai", True)
ENABLE_CATEGORIZATION = _MERGER_CONFIG.get("enable_categorization", True)

# ============================================================================
# CATEGORIZER
# ============================================================================

CATEGORY_SCORE_THRESHOLD = _CATEGORIZER_CONFIG.get("category_score_threshold", 0.3)
ALTERNATIVE_SCORE_THRESHOLD = _CATEGORIZER_CONFIG.get("alternative_score_threshold", 0.2)

PRIORITY_WEIGHTS: dict[str, float] = {
    "confidence": 0.4,
    "impact": 0.3,
    "urgency": 0.2,
    "source": 0.1,
    **_CATEGORIZER_CONFIG.get("priority_weights", {}),
}

# ============================================================================
# CONFIDENCE DEFAULTS (by insight source)
# ============================================================================

DEFAULT_CONFIDENCE_BY_SOURCE: dict[str, float] = {
    "ai": 0.8,
    "rules": 0.9,
    "hybrid": 0.85,
    "other": 0.7,
    **_CONFIDENCE_CONFIG,
}


def get_all_thresholds() -> dict[str, Any]:
    """
    Get all thresholds as a dictionary (for API exposure)

    Returns:
        Dict of merger, categorizer and confidence thresholds
    """
    return {
        "merger": {
            "similarity_threshold": SIMILARITY_THRESHOLD,
            "max_insights_per_category": MAX_INSIGHTS_PER_CATEGORY,
            "prioritize_ai": PRIORITIZE_AI,
            "enable_categorization": ENABLE_CATEGORIZATION,
        },
        "categorizer": {
            "category_score_threshold": CATEGORY_SCORE_THRESHOLD,
            "alternative_score_threshold": ALTERNATIVE_SCORE_THRESHOLD,
            "priority_weights": dict(PRIORITY_WEIGHTS),
        },
        "confidence_defaults": dict(DEFAULT_CONFIDENCE_BY_SOURCE),
    }


def validate_thresholds() -> bool:
    """
    Validate that all thresholds are within valid ranges

    Raises:
        ValueError: If thresholds are inconsistent
    """
    errors = []

    unit_values = {
        "similarity_threshold": SIMILARITY_THRESHOLD,
        "category_score_threshold": CATEGORY_SCORE_THRESHOLD,
        "alternative_score_threshold": ALTERNATIVE_SCORE_THRESHOLD,
        **{f"priority_weights.{k}": v for k, v in PRIORITY_WEIGHTS.items()},
        **{f"confidence_defaults.{k}": v for k, v in DEFAULT_CONFIDENCE_BY_SOURCE.items()},
    }
    for name, val in unit_values.items():
        if not isinstance(val, (int, float)) or not (0.0 <= val <= 1.0):
            errors.append(f"Threshold {name}={val} is outside valid range [0.0, 1.0]")

    if not isinstance(MAX_INSIGHTS_PER_CATEGORY, int) or MAX_INSIGHTS_PER_CATEGORY < 1:
        errors.append(f"max_insights_per_category ({MAX_INSIGHTS_PER_CATEGORY}) must be a positive integer")

    if ALTERNATIVE_SCORE_THRESHOLD > CATEGORY_SCORE_THRESHOLD:
        errors.append(
            f"ALTERNATIVE_SCORE_THRESHOLD ({ALTERNATIVE_SCORE_THRESHOLD}) "
            f"must be <= CATEGORY_SCORE_THRESHOLD ({CATEGORY_SCORE_THRESHOLD})"
        )

    weight_total = sum(PRIORITY_WEIGHTS.values())
    if abs(weight_total - 1.0) > 1e-6:
        errors.append(f"Priority weights sum to {weight_total:.3f}, expected 1.0")

    if errors:
        raise ValueError("Threshold validation failed:\n" + "\n".join(errors))

    return True


# Validate on import
try:
    validate_thresholds()
    logger.info("Insight thresholds validated successfully")
except ValueError as e:
    logger.warning("Insight threshold validation warning: %s", e)
