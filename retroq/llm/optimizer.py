"""
Model selection and prompt shrinking.

PerformanceOptimizer scores every known (provider, model) pair against a
workload's priorities and the monitor's observed history, and trims prompts
that are too large for their target model.
"""

from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass, fields
from typing import Any

from retroq.llm.monitor import PerformanceMonitor, calculate_cost
from retroq.observability.logging import get_logger
from retroq.observability.telemetry import counter

logger = get_logger(__name__)

EXAMPLES_PATTERN = re.compile(
    r"(Example[s]?:|For example:|e\.g\.|Examples include:)(.*?)(?=\n\n|\n[A-Z]|$)",
    re.DOTALL,
)
DATA_BLOCK_PATTERN = re.compile(r"(\{[\s\S]*?\}|\[[\s\S]*?\])")
EXAMPLES_MARKER = "... [truncated for optimization]"
DATA_MARKER = "... [data truncated for optimization]"
MIN_DATA_BLOCK_CHARS = 200


@dataclass(frozen=True)
class ModelCharacteristics:
    speed: int
    cost: int
    quality: int
    max_tokens: int


MODEL_CHARACTERISTICS: dict[str, dict[str, ModelCharacteristics]] = {
    "openai": {
        "gpt-4": ModelCharacteristics(speed=3, cost=5, quality=5, max_tokens=8192),
        "gpt-4-turbo": ModelCharacteristics(speed=4, cost=3, quality=5, max_tokens=128000),
        "gpt-3.5-turbo": ModelCharacteristics(speed=5, cost=1, quality=3, max_tokens=16385),
    },
    "anthropic": {
        "claude-3-opus": ModelCharacteristics(speed=3, cost=4, quality=5, max_tokens=200000),
        "claude-3-sonnet": ModelCharacteristics(speed=4, cost=2, quality=4, max_tokens=200000),
        "claude-3-haiku": ModelCharacteristics(speed=5, cost=1, quality=3, max_tokens=200000),
    },
    "gemini": {
        "gemini-2.5-pro": ModelCharacteristics(speed=3, cost=3, quality=5, max_tokens=1000000),
        "gemini-2.5-flash": ModelCharacteristics(speed=5, cost=1, quality=4, max_tokens=1000000),
    },
    "local": {
        "default": ModelCharacteristics(speed=2, cost=0, quality=2, max_tokens=4096),
    },
}


@dataclass
class OptimizationThresholds:
    max_response_time_ms: float = 30_000
    max_cost_per_request: float = 0.20
    max_tokens_per_request: int = 10_000
    min_success_rate: float = 0.95


@dataclass
class ModelRequirements:
    data_volume: int = 0
    complexity: str = "medium"
    prioritize_cost: bool = False
    prioritize_speed: bool = False
    prioritize_quality: bool = False
    providers: tuple[str, ...] | None = None

    @classmethod
    def from_mapping(cls, values: dict[str, Any] | None) -> ModelRequirements:
        values = values or {}
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in values.items() if k in known}
        if "data_size" in values and "data_volume" not in kwargs:
            kwargs["data_volume"] = values["data_size"]
        if kwargs.get("providers") is not None:
            kwargs["providers"] = tuple(kwargs["providers"])
        return cls(**kwargs)


@dataclass(frozen=True)
class ModelCandidate:
    provider: str
    model: str
    score: float
    estimated_cost: float
    characteristics: ModelCharacteristics

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["score"] = round(self.score, 3)
        return data


@dataclass(frozen=True)
class ModelSelection:
    provider: str
    model: str
    score: float
    reason: str
    estimated_cost: float = 0.0
    alternatives: tuple[ModelCandidate, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "score": round(self.score, 3),
            "reason": self.reason,
            "estimated_cost": self.estimated_cost,
            "alternatives": [alt.to_dict() for alt in self.alternatives],
        }


@dataclass(frozen=True)
class PromptOptimization:
    optimized: bool
    prompt: str
    original_tokens: int
    optimized_tokens: int
    reduction_ratio: float = 0.0
    reason: str = ""

    def to_dict(self, include_prompt: bool = False) -> dict[str, Any]:
        data = asdict(self)
        if not include_prompt:
            data.pop("prompt")
        return data


DEFAULT_SELECTION = ModelSelection(
    provider="openai",
    model="gpt-3.5-turbo",
    score=0.0,
    reason="Default fallback model",
)


def _estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4) if text else 0


def _cut_at_boundary(text: str, target: int) -> str:
    """Cut text to about target chars, backing up to a , } ] or newline past 80%."""
    if len(text) <= target:
        return text
    cut = text[:target]
    boundary = max(cut.rfind(","), cut.rfind("}"), cut.rfind("]"), cut.rfind("\n"))
    if boundary > target * 0.8:
        cut = cut[: boundary + 1]
    return cut


class PerformanceOptimizer:
    def __init__(
        self,
        monitor: PerformanceMonitor | None = None,
        thresholds: OptimizationThresholds | None = None,
        characteristics: dict[str, dict[str, ModelCharacteristics]] | None = None,
    ):
        self.monitor = monitor or PerformanceMonitor()
        self.thresholds = thresholds or OptimizationThresholds()
        self.characteristics = characteristics or MODEL_CHARACTERISTICS

    def get_characteristics(self, provider: str, model: str) -> ModelCharacteristics | None:
        models = self.characteristics.get((provider or "").lower(), {})
        return models.get((model or "").lower()) or models.get("default")

    def _score(self, provider: str, model: str, traits: ModelCharacteristics, req: ModelRequirements) -> float:
        metrics = self.monitor.get_metrics()
        average_ms = metrics["average_response_time_ms"]
        average_cost = self.monitor.average_cost()
        observed = metrics["successful_requests"] + metrics["failed_requests"] > 0

        score = 0.0
        if req.prioritize_speed:
            score += traits.speed * 2
            if observed and average_ms < self.thresholds.max_response_time_ms:
                score += 2
        else:
            score += traits.speed

        if req.prioritize_cost:
            score += (6 - traits.cost) * 2
            if observed and average_cost < self.thresholds.max_cost_per_request:
                score += 2
        else:
            score += 6 - traits.cost

        if req.prioritize_quality:
            score += traits.quality * 2
        else:
            score += traits.quality

        if req.data_volume > traits.max_tokens * 0.8:
            score -= 5

        success_rate, completed = self.monitor.success_rate(provider, model)
        if completed >= 5 and success_rate >= self.thresholds.min_success_rate:
            score += 2

        return score

    def select_optimal_model(self, requirements: ModelRequirements | dict[str, Any] | None = None) -> ModelSelection:
        """
        Pick the best-scoring model for a workload.

        Args:
            requirements: data volume (tokens), priority flags and an optional
                provider allow-list

        Returns:
            Best candidate plus up to two alternatives, or the fixed default
            (openai/gpt-3.5-turbo) when nothing qualifies
        """
        req = requirements if isinstance(requirements, ModelRequirements) else ModelRequirements.from_mapping(requirements)
        allowed = {p.lower() for p in req.providers} if req.providers else None

        candidates: list[ModelCandidate] = []
        for provider, models in self.characteristics.items():
            if allowed is not None and provider not in allowed:
                continue
            for model, traits in models.items():
                candidates.append(
                    ModelCandidate(
                        provider=provider,
                        model=model,
                        score=self._score(provider, model, traits, req),
                        estimated_cost=calculate_cost(provider, model, req.data_volume * 0.1, req.data_volume * 0.05),
                        characteristics=traits,
                    )
                )

        if not candidates:
            logger.info("No model candidates qualified, using default %s/%s", DEFAULT_SELECTION.provider, DEFAULT_SELECTION.model)
            return DEFAULT_SELECTION

        # Stable sort keeps table order for ties
        candidates.sort(key=lambda c: c.score, reverse=True)
        best = candidates[0]
        return ModelSelection(
            provider=best.provider,
            model=best.model,
            score=best.score,
            reason=self._selection_reason(req),
            estimated_cost=best.estimated_cost,
            alternatives=tuple(candidates[1:3]),
        )

    @staticmethod
    def _selection_reason(req: ModelRequirements) -> str:
        reasons = []
        if req.prioritize_speed:
            reasons.append("speed")
        if req.prioritize_cost:
            reasons.append("cost efficiency")
        if req.prioritize_quality:
            reasons.append("quality")
        if not reasons:
            return "Best overall performance"
        return "Selected for " + " and ".join(reasons)

    def estimate_response_time(self, provider: str, model: str) -> float:
        """Expected latency in ms from the speed rating (5 = fastest)."""
        traits = self.get_characteristics(provider, model)
        if traits is None:
            return 5000.0
        return 5000.0 * (6 - traits.speed) / 5

    def optimize_prompt_size(self, prompt: str, provider: str, model: str, estimated_tokens: int) -> PromptOptimization:
        """
        Shrink a prompt that exceeds 80% of the model's window.

        Steps run in order and stop once the target is met: whitespace
        collapse, example-section truncation, structured-block truncation.
        """
        traits = self.get_characteristics(provider, model)
        if traits is None:
            return PromptOptimization(False, prompt, estimated_tokens, estimated_tokens, reason="Unknown model")

        safe_limit = math.floor(traits.max_tokens * 0.8)
        if estimated_tokens <= safe_limit:
            return PromptOptimization(False, prompt, estimated_tokens, estimated_tokens, reason="Within limits")

        ratio = safe_limit / estimated_tokens if estimated_tokens else 1.0
        target_chars = math.floor(len(prompt) * ratio)
        steps: list[str] = []

        optimized = re.sub(r"[ \t]+", " ", prompt)
        optimized = re.sub(r"\n\s*\n+", "\n\n", optimized).strip()
        steps.append("whitespace")

        if len(optimized) > target_chars and ratio < 0.9:
            optimized = self._truncate_examples(optimized, ratio)
            steps.append("examples")

        if len(optimized) > target_chars and ratio < 0.7:
            optimized = self._truncate_data_blocks(optimized, ratio)
            steps.append("data_blocks")

        optimized_tokens = _estimate_tokens(optimized)
        original_tokens = estimated_tokens
        reduction = 1 - (optimized_tokens / original_tokens) if original_tokens else 0.0
        counter("prompt.optimized")
        logger.info(
            "Prompt optimized for %s/%s: %d -> %d tokens (%s)",
            provider,
            model,
            original_tokens,
            optimized_tokens,
            ",".join(steps),
        )
        return PromptOptimization(
            optimized=True,
            prompt=optimized,
            original_tokens=original_tokens,
            optimized_tokens=optimized_tokens,
            reduction_ratio=max(0.0, reduction),
            reason=f"Reduced prompt by {max(0.0, reduction) * 100:.1f}% via {', '.join(steps)}",
        )

    @staticmethod
    def _truncate_examples(text: str, ratio: float) -> str:
        def shorten(match: re.Match[str]) -> str:
            label, body = match.group(1), match.group(2)
            keep = math.floor(len(body) * ratio)
            if keep >= len(body):
                return match.group(0)
            return f"{label}{body[:keep]}{EXAMPLES_MARKER}"

        return EXAMPLES_PATTERN.sub(shorten, text)

    @staticmethod
    def _truncate_data_blocks(text: str, ratio: float) -> str:
        def shorten(match: re.Match[str]) -> str:
            block = match.group(0)
            if len(block) < MIN_DATA_BLOCK_CHARS:
                return block
            target = math.floor(len(block) * ratio)
            return _cut_at_boundary(block, target) + DATA_MARKER

        return DATA_BLOCK_PATTERN.sub(shorten, text)

    def get_optimization_recommendations(self, data_volume: int = 0) -> dict[str, Any]:
        """Monitor advice plus reliability and token-size advice from recent requests."""
        recommendations = list(self.monitor.get_optimization_recommendations(data_volume))
        recent = self.monitor.recent_requests(20)

        finished = [r for r in recent if r.status.value != "pending"]
        if finished:
            failures = sum(1 for r in finished if r.status.value == "error")
            if failures / len(finished) > 0.1:
                recommendations.append(
                    {
                        "type": "reliability",
                        "priority": "high",
                        "message": f"{failures} of the last {len(finished)} requests failed. Consider a more reliable model.",
                    }
                )

        if any(r.input_tokens + r.output_tokens > 8_000 for r in recent):
            recommendations.append(
                {
                    "type": "token_usage",
                    "priority": "medium",
                    "message": "Some requests exceed 8K tokens. Consider prompt optimization or progressive analysis.",
                }
            )

        return {
            "recommendations": recommendations,
            "optimal_model": self.select_optimal_model({"data_volume": data_volume}).to_dict(),
            "thresholds": asdict(self.thresholds),
        }

    def update_thresholds(self, **values: Any) -> OptimizationThresholds:
        """
        Update selected thresholds; unknown names raise ValueError.

        Side Effects:
            - Replaces self.thresholds
        """
        known = {f.name for f in fields(OptimizationThresholds)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown optimization thresholds: {', '.join(sorted(unknown))}")
        current = asdict(self.thresholds)
        current.update(values)
        self.thresholds = OptimizationThresholds(**current)
        logger.info("Optimization thresholds updated: %s", values)
        return self.thresholds
