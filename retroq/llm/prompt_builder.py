"""
Prompt construction for retrospective analysis.

PromptBuilder turns team data plus run context into a (system, user) prompt
pair sized for the target model:

1. Pick a template from the sources present (or the temporal mode).
2. Render the system prompt and measure it.
3. Ask the capacity registry for a budget using the measured size.
4. Shrink the team data to the data budget (newest items first).
5. Render the user prompt, trimming the JSON if it still overflows.

Token counts are character estimates (len / 3.5), not tokenizer output.
"""

from __future__ import annotations

import json
import math
from collections.abc import Iterator
from dataclasses import dataclass, field, replace
from typing import Any

from retroq.config import MIN_ITEMS_PER_SOURCE
from retroq.contracts.team_data import SOURCE_COLLECTIONS, present_sources
from retroq.llm.capacity import DEFAULT_REGISTRY, ModelCapacityRegistry, PromptBudget
from retroq.llm.prompts import PromptLoader, get_loader
from retroq.observability.logging import get_logger
from retroq.observability.telemetry import counter
from retroq.utils.redaction import neutralize_injection
from retroq.utils.timestamps import to_epoch_seconds

logger = get_logger(__name__)

CHARS_PER_TOKEN = 3.5
TRUNCATION_MARKER = "... [truncated to fit budget]"
TEMPORAL_AGGREGATION = "temporal_aggregation"
REDUCTION_STEP = 0.9

# Template by frozenset of present sources
SOURCE_TEMPLATES: dict[frozenset[str], str] = {
    frozenset({"github", "linear", "slack"}): "full_analysis",
    frozenset({"github", "linear"}): "dev_focused",
    frozenset({"github", "slack"}): "code_communication",
    frozenset({"linear", "slack"}): "project_communication",
    frozenset({"github"}): "code_only",
    frozenset({"linear"}): "project_only",
    frozenset({"slack"}): "communication_only",
    frozenset(): "minimal",
}

STRICT_JSON_MODEL_PREFIXES = ("gpt-5", "gemini")


def estimate_tokens(text: str | None) -> int:
    """ceil(len / 3.5); 0 for empty text."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_text(text: Any, max_length: int) -> Any:
    if not isinstance(text, str) or len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


@dataclass(frozen=True)
class PromptBuilderConfig:
    provider: str = "openai"
    model: str = "gpt-4o"
    system_prompt_tokens: int = 800
    safety_margin: float = 0.92
    target_utilization: float = 0.95
    total_headroom: float = 0.85
    clamp_headroom: float = 0.92
    min_items_per_source: int = MIN_ITEMS_PER_SOURCE
    commit_message_chars: int = 100
    issue_title_chars: int = 80
    issue_description_chars: int = 150
    message_text_chars: int = 200

    def __post_init__(self) -> None:
        # Frozen dataclass: clamp through object.__setattr__
        object.__setattr__(self, "safety_margin", max(0.85, min(0.99, self.safety_margin)))
        object.__setattr__(self, "target_utilization", max(0.8, min(0.98, self.target_utilization)))
        object.__setattr__(self, "min_items_per_source", max(0, int(self.min_items_per_source)))


@dataclass(frozen=True)
class Prompt:
    system: str
    user: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DataReduction:
    reduced: bool
    original_tokens: int
    optimized_tokens: int
    ratio: float = 1.0

    @property
    def reduction_ratio(self) -> float:
        if not self.original_tokens:
            return 0.0
        return (self.original_tokens - self.optimized_tokens) / self.original_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "reduced": self.reduced,
            "original_tokens": self.original_tokens,
            "optimized_tokens": self.optimized_tokens,
            "applied_ratio": round(self.ratio, 4),
            "reduction_ratio": round(self.reduction_ratio, 4),
        }


def _commit_date(item: dict[str, Any]) -> Any:
    if item.get("date"):
        return item["date"]
    return ((item.get("commit") or {}).get("author") or {}).get("date")


# (source, collection) -> function returning the item's sort date
DATE_KEYS = {
    ("github", "commits"): _commit_date,
    ("github", "pullRequests"): lambda item: item.get("created_at"),
    ("linear", "issues"): lambda item: item.get("updatedAt"),
    ("slack", "messages"): lambda item: item.get("ts"),
}


def _newest_first(items: list[dict[str, Any]], date_of) -> list[dict[str, Any]]:
    def key(item: dict[str, Any]) -> float:
        seconds = to_epoch_seconds(date_of(item)) if isinstance(item, dict) else None
        return seconds if seconds is not None else float("-inf")

    return sorted(items, key=key, reverse=True)


class PromptBuilder:
    """
    Builds model-sized prompts from team data.

    Example:
        >>> builder = PromptBuilder.for_model("gemini", "gemini-2.5-flash")
        >>> prompt = builder.build_prompt(team_data, {"date_range": {"start": "...", "end": "..."}})
        >>> builder.validate_prompt_size(prompt)
        True
    """

    def __init__(
        self,
        config: PromptBuilderConfig | None = None,
        registry: ModelCapacityRegistry | None = None,
        loader: PromptLoader | None = None,
    ):
        self.config = config or PromptBuilderConfig()
        self.registry = registry or DEFAULT_REGISTRY
        self.loader = loader or get_loader()

    @classmethod
    def for_model(cls, provider: str, model: str, **overrides: Any) -> PromptBuilder:
        return cls(PromptBuilderConfig(provider=provider, model=model, **overrides))

    def with_config(self, **overrides: Any) -> PromptBuilder:
        return PromptBuilder(replace(self.config, **overrides), self.registry, self.loader)

    # ------------------------------------------------------------------
    # Template selection and rendering
    # ------------------------------------------------------------------

    @staticmethod
    def select_template(team_data: dict[str, Any] | None, context: dict[str, Any] | None = None) -> str:
        context = context or {}
        if context.get("temporal_chunk"):
            return "temporal_chunk"
        if context.get("analysis_type") == TEMPORAL_AGGREGATION:
            return "temporal_aggregation"
        return SOURCE_TEMPLATES[frozenset(present_sources(team_data))]

    @staticmethod
    def _context_block(context: dict[str, Any]) -> str:
        date_range = context.get("date_range") or {}
        if date_range.get("start") and date_range.get("end"):
            period = f"{date_range['start']} to {date_range['end']}"
        else:
            period = "Not specified"

        lines = [
            "Context Information:",
            f"- Analysis Period: {period}",
            f"- Team Size: {context.get('team_size') or 'Unknown'}",
            f"- Repositories: {', '.join(context.get('repositories') or []) or 'Not specified'}",
            f"- Communication Channels: {', '.join(context.get('channels') or []) or 'Not specified'}",
        ]

        chunk = context.get("temporal_chunk")
        if chunk:
            lines.append(f"- Time Window: {chunk.get('time_range', 'unknown')}")
            lines.append(f"- Events in Window: {chunk.get('event_count', 0)}")
            lines.append(f"- Activity Patterns: {json.dumps(chunk.get('patterns') or {}, default=str)}")

        if context.get("analysis_type") == TEMPORAL_AGGREGATION:
            lines.append("- Analysis Type: Temporal Aggregation")
            lines.append(f"- Time Windows Analyzed: {context.get('total_chunks', 0)}")

        return "\n".join(lines)

    @staticmethod
    def _temporal_guidance(context: dict[str, Any]) -> str:
        if context.get("temporal_chunk"):
            return "focus on the order of events inside this single time window and how they relate."
        if context.get("analysis_type") == TEMPORAL_AGGREGATION:
            return "combine the time windows into trends that span the whole period."
        return "consider when things happened to understand the team's rhythm and workflow."

    def build_system_prompt(self, template: str, model: str, context: dict[str, Any]) -> str:
        base = self.loader.get_system_prompt(
            context_block=self._context_block(context),
            focus=self.loader.get_focus(template),
            temporal_guidance=self._temporal_guidance(context),
        )
        strict = (model or "").lower().startswith(STRICT_JSON_MODEL_PREFIXES)
        return f"{base}\n\n{self.loader.get_output_format(strict=strict)}"

    def build_user_prompt(self, team_data: dict[str, Any], context: dict[str, Any], max_data_tokens: int) -> str:
        if context.get("temporal_chunk"):
            mode = "temporal_chunk"
        elif context.get("analysis_type") == TEMPORAL_AGGREGATION:
            mode = "temporal_aggregation"
        else:
            mode = "standard"

        data_string = neutralize_injection(json.dumps(team_data, indent=2, default=str))
        approx_tokens = estimate_tokens(data_string)
        if approx_tokens > max_data_tokens:
            ratio = max_data_tokens / approx_tokens
            target_chars = math.floor(len(data_string) * ratio)
            data_string = data_string[: max(0, target_chars - len(TRUNCATION_MARKER))] + TRUNCATION_MARKER
            logger.info("User data trimmed to fit budget: %d -> ~%d tokens", approx_tokens, max_data_tokens)

        return (
            f"Team Data for Analysis:\n\n{data_string}\n\n"
            f"{self.loader.get_instructions(mode)}\n\n"
            "Analyze this data following the instructions and answer in the JSON format described above."
        )

    # ------------------------------------------------------------------
    # Budgeting
    # ------------------------------------------------------------------

    def max_data_tokens(self, budget: PromptBudget) -> int:
        return math.floor(budget.user_data * self.config.safety_margin * self.config.target_utilization)

    def build_prompt(self, team_data: dict[str, Any] | None, context: dict[str, Any] | None = None) -> Prompt:
        """
        Build a prompt sized for the context's (or the default) model.

        Args:
            team_data: {"github": {...}, "linear": {...}, "slack": {...}}
            context: date_range, team_size, repositories, channels, provider,
                model, temporal_chunk, analysis_type, total_chunks

        Returns:
            Prompt with system text, user text and sizing metadata
        """
        team_data = team_data or {}
        context = context or {}
        provider = context.get("provider") or self.config.provider
        model = context.get("model") or self.config.model

        template = self.select_template(team_data, context)
        system = self.build_system_prompt(template, model, context)
        system_tokens = estimate_tokens(system)

        # Second pass: budget with the measured system prompt
        budget = self.registry.calculate_optimal_split(provider, model, system_tokens)
        capacity = self.registry.get_capacity(provider, model)
        max_data_tokens = self.max_data_tokens(budget)

        optimized, reduction = self.optimize_data_for_tokens(team_data, max_data_tokens)
        user = self.build_user_prompt(optimized, context, max_data_tokens)

        metadata = {
            "template": template,
            "provider": provider,
            "model": model,
            "estimated_tokens": system_tokens + estimate_tokens(user),
            "system_tokens": system_tokens,
            "max_data_tokens": max_data_tokens,
            "data_reduced": reduction.reduced,
            "optimization": {
                "efficiency": round(budget.efficiency, 4),
                "tokenizer": capacity.tokenizer_id,
                "budget": budget.to_dict(),
                **reduction.to_dict(),
            },
        }
        logger.debug(
            "Built %s prompt for %s/%s: ~%d tokens (data budget %d)",
            template,
            provider,
            model,
            metadata["estimated_tokens"],
            max_data_tokens,
        )
        return Prompt(system=system, user=user, metadata=metadata)

    def optimize_data_for_tokens(
        self, team_data: dict[str, Any], max_data_tokens: int
    ) -> tuple[dict[str, Any], DataReduction]:
        """
        Keep the newest items of each collection so the data fits the budget.

        Every non-empty collection keeps at least min_items_per_source items
        and never grows. Long text fields are cut to their caps. The ratio
        is lowered and the result re-measured until it fits the budget or
        every collection is down to its minimum. Input is not mutated.

        Side Effects:
            - Bumps prompt.reduction when data is reduced
        """
        estimated = estimate_tokens(json.dumps(team_data, default=str))
        if estimated <= max_data_tokens:
            return team_data, DataReduction(False, estimated, estimated)

        budget = max(0, max_data_tokens)
        ratio = min(1.0, budget / estimated) if estimated else 1.0
        passes = 0
        while True:
            passes += 1
            optimized = self._reduce_collections(team_data, ratio)
            optimized_tokens = estimate_tokens(json.dumps(optimized, default=str))
            if optimized_tokens <= budget or self._at_minimum(team_data, ratio):
                break
            # Newest items can be larger than average; shrink and measure again
            ratio *= min(REDUCTION_STEP, budget / optimized_tokens)

        counter("prompt.reduction")
        logger.info(
            "Reduced team data for budget: %d -> %d tokens (ratio %.3f, budget %d, passes %d)",
            estimated,
            optimized_tokens,
            ratio,
            max_data_tokens,
            passes,
        )
        if optimized_tokens > budget:
            logger.warning("Team data still over budget at minimum item counts: %d > %d", optimized_tokens, budget)
        return optimized, DataReduction(True, estimated, optimized_tokens, ratio)

    def _keep_count(self, count: int, ratio: float) -> int:
        return min(count, max(self.config.min_items_per_source, math.floor(count * ratio)))

    def _collections(self, team_data: dict[str, Any]) -> Iterator[tuple[str, str, list[Any]]]:
        """Yield (source, name, items) for every list collection present."""
        for source, collections in SOURCE_COLLECTIONS.items():
            payload = team_data.get(source)
            if not isinstance(payload, dict):
                continue
            for name in collections:
                items = payload.get(name)
                if isinstance(items, list):
                    yield source, name, items

    def _at_minimum(self, team_data: dict[str, Any], ratio: float) -> bool:
        return all(
            self._keep_count(len(items), ratio) == min(len(items), self.config.min_items_per_source)
            for _, _, items in self._collections(team_data)
        )

    def _reduce_collections(self, team_data: dict[str, Any], ratio: float) -> dict[str, Any]:
        optimized = {
            key: dict(value) if key in SOURCE_COLLECTIONS and isinstance(value, dict) else value
            for key, value in team_data.items()
        }
        for source, name, items in self._collections(team_data):
            newest = _newest_first(items, DATE_KEYS[(source, name)])[: self._keep_count(len(items), ratio)]
            optimized[source][name] = [self._compact_item(source, name, item) for item in newest]
        return optimized

    def _compact_item(self, source: str, collection: str, item: Any) -> Any:
        if not isinstance(item, dict):
            return item
        compact = dict(item)
        if (source, collection) == ("github", "commits"):
            compact["message"] = truncate_text(compact.get("message"), self.config.commit_message_chars)
            nested = compact.get("commit")
            if isinstance(nested, dict) and isinstance(nested.get("message"), str):
                compact["commit"] = {
                    **nested,
                    "message": truncate_text(nested["message"], self.config.commit_message_chars),
                }
        elif source == "linear":
            compact["title"] = truncate_text(compact.get("title"), self.config.issue_title_chars)
            compact["description"] = truncate_text(compact.get("description"), self.config.issue_description_chars)
        elif source == "slack":
            compact["text"] = truncate_text(compact.get("text"), self.config.message_text_chars)
        # Do not introduce keys the item never had
        return {k: v for k, v in compact.items() if k in item}

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _target(self, prompt: Prompt) -> tuple[str, str]:
        meta = prompt.metadata or {}
        return meta.get("provider") or self.config.provider, meta.get("model") or self.config.model

    def validate_prompt_size(self, prompt: Prompt) -> bool:
        """True when system + user fit in (total - output buffer) * total_headroom."""
        provider, model = self._target(prompt)
        system_tokens = estimate_tokens(prompt.system)
        total = system_tokens + estimate_tokens(prompt.user)
        capacity = self.registry.get_capacity(provider, model)
        budget = self.registry.calculate_optimal_split(provider, model, system_tokens)
        available = max(0, math.floor((capacity.total_tokens - budget.output_buffer) * self.config.total_headroom))
        return total <= available

    def clamp_prompt_to_budget(self, prompt: Prompt) -> Prompt:
        """
        Trim the user part when the whole prompt exceeds total * clamp_headroom.

        Returns:
            The same prompt when it fits, otherwise a trimmed copy with
            clamped/clamp_info in its metadata
        """
        provider, model = self._target(prompt)
        capacity = self.registry.get_capacity(provider, model)
        system_tokens = estimate_tokens(prompt.system)
        user_tokens = estimate_tokens(prompt.user)
        hard_cap = math.floor(capacity.total_tokens * self.config.clamp_headroom)
        if system_tokens + user_tokens <= hard_cap:
            return prompt

        max_user_tokens = max(0, hard_cap - system_tokens)
        if max_user_tokens <= 0:
            trimmed = ""
        else:
            ratio = max_user_tokens / max(1, user_tokens)
            target_chars = max(0, math.floor(len(prompt.user) * ratio) - 3)
            trimmed = prompt.user[:target_chars] + "..."

        counter("prompt.clamped")
        clamp_info = {
            "hard_cap": hard_cap,
            "system_tokens": system_tokens,
            "user_tokens_before": user_tokens,
            "user_tokens_after": estimate_tokens(trimmed),
        }
        logger.warning("Prompt clamped for %s/%s: %s", provider, model, clamp_info)
        return replace(prompt, user=trimmed, metadata={**prompt.metadata, "clamped": True, "clamp_info": clamp_info})

    def get_token_usage(self, prompt: Prompt) -> dict[str, Any]:
        provider, model = self._target(prompt)
        capacity = self.registry.get_capacity(provider, model)
        system_tokens = estimate_tokens(prompt.system)
        user_tokens = estimate_tokens(prompt.user)
        total = system_tokens + user_tokens
        return {
            "system": system_tokens,
            "user": user_tokens,
            "total": total,
            "max_tokens": capacity.total_tokens,
            "utilization": total / capacity.total_tokens if capacity.total_tokens else 0.0,
            "within_limit": total <= capacity.total_tokens,
        }

    def get_current_model_info(self) -> dict[str, Any]:
        capacity = self.registry.get_capacity(self.config.provider, self.config.model)
        budget = self.registry.calculate_optimal_split(
            self.config.provider, self.config.model, self.config.system_prompt_tokens
        )
        return {
            "provider": self.config.provider,
            "model": self.config.model,
            "max_tokens": capacity.total_tokens,
            "max_data_tokens": self.max_data_tokens(budget),
            "output_buffer": budget.output_buffer,
            "tokenizer": capacity.tokenizer_id,
        }
