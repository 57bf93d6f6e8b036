"""
LLM orchestration: prompt budgeting, providers, retries, progressive
analysis and performance tracking.
"""

from retroq.llm.analyzer import AnalyzerConfig, LLMAnalyzer
from retroq.llm.errors import LLMError, LLMParseError, LLMTimeoutError, classify_error
from retroq.llm.progress import ProgressTracker

__all__ = [
    "AnalyzerConfig",
    "LLMAnalyzer",
    "LLMError",
    "LLMParseError",
    "LLMTimeoutError",
    "ProgressTracker",
    "classify_error",
]
