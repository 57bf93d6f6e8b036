"""RetroQ - Adaptive LLM orchestration for team retrospective insights"""

from __future__ import annotations

__version__ = "0.1.0"


# Lazy imports so lightweight modules do not pull in the provider SDKs
def __getattr__(name: str):
    """
    Lazy imports to avoid loading heavy dependencies when only importing lightweight modules.
    """
    if name in ("LLMAnalyzer", "AnalyzerConfig"):
        from retroq.llm import analyzer

        return getattr(analyzer, name)

    if name in ("generate_retro", "add_fallback_content"):
        from retroq import pipeline

        return getattr(pipeline, name)

    if name == "InsightMerger":
        from retroq.insights.merger import InsightMerger

        return InsightMerger

    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)


__all__ = [
    "AnalyzerConfig",
    "InsightMerger",
    "LLMAnalyzer",
    "add_fallback_content",
    "generate_retro",
]
