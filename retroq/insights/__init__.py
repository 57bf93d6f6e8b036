"""
Post-analysis insight handling: merging rule-based and LLM insights,
categorization and priority scoring.
"""

from retroq.insights.categorizer import CategoryDefinition, CategoryRules, InsightCategorizer
from retroq.insights.merger import InsightMerger, MergerConfig, is_similar

__all__ = [
    "CategoryDefinition",
    "CategoryRules",
    "InsightCategorizer",
    "InsightMerger",
    "MergerConfig",
    "is_similar",
]
