"""
Model capacity registry.

Static lookup of (provider, model) -> context window and the token split
between system prompt, user data and reserved output. The table is an
immutable mapping; a registry can be built over an injected table for tests
or deployments with private models.

Unknown models never raise: they resolve to a conservative 8K default and a
warning is logged.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from retroq.observability.logging import get_logger
from retroq.observability.telemetry import counter

logger = get_logger(__name__)


@dataclass(frozen=True)
class ModelCapacity:
    provider: str
    model: str
    total_tokens: int
    input_cap: int
    output_cap: int
    tokenizer_id: str = "cl100k_base"
    buffer_percent: float = 10.0


@dataclass(frozen=True)
class PromptBudget:
    """Token split for one prompt. system + user_data + output_buffer <= total."""

    total: int
    system_prompt: int
    user_data: int
    output_buffer: int
    efficiency: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "system_prompt": self.system_prompt,
            "user_data": self.user_data,
            "output_buffer": self.output_buffer,
            "efficiency": round(self.efficiency, 4),
        }


def _freeze(table: dict[str, dict[str, ModelCapacity]]) -> Mapping[str, Mapping[str, ModelCapacity]]:
    return MappingProxyType({p: MappingProxyType(dict(models)) for p, models in table.items()})


def _entries(provider: str, models: tuple[str, ...], **fields: Any) -> dict[str, ModelCapacity]:
    return {name: ModelCapacity(provider=provider, model=name, **fields) for name in models}


MODEL_CAPACITIES: Mapping[str, Mapping[str, ModelCapacity]] = _freeze(
    {
        "openai": {
            **_entries("openai", ("gpt-3.5-turbo",), total_tokens=16385, input_cap=14000, output_cap=2385, buffer_percent=15),
            **_entries("openai", ("gpt-4",), total_tokens=8192, input_cap=6500, output_cap=1692, buffer_percent=15),
            **_entries("openai", ("gpt-4-turbo",), total_tokens=128000, input_cap=120000, output_cap=8000, buffer_percent=10),
            **_entries(
                "openai",
                ("gpt-4o",),
                total_tokens=128000,
                input_cap=120000,
                output_cap=8000,
                tokenizer_id="o200k_base",
                buffer_percent=10,
            ),
            **_entries(
                "openai",
                ("gpt-5",),
                total_tokens=400000,
                input_cap=272000,
                output_cap=4000,
                tokenizer_id="o200k_base",
                buffer_percent=1,
            ),
        },
        "anthropic": _entries(
            "anthropic",
            ("claude-3-opus", "claude-3-sonnet", "claude-3-haiku"),
            total_tokens=200000,
            input_cap=180000,
            output_cap=20000,
            tokenizer_id="claude",
            buffer_percent=10,
        ),
        "local": _entries(
            "local",
            ("llama", "mistral"),
            total_tokens=32768,
            input_cap=28000,
            output_cap=4768,
            tokenizer_id="llama",
            buffer_percent=15,
        ),
        "gemini": _entries(
            "gemini",
            ("gemini-2.5-pro", "gemini-2.5-flash"),
            total_tokens=1000000,
            input_cap=900000,
            output_cap=100000,
            tokenizer_id="gemini",
            buffer_percent=2,
        ),
    }
)

DEFAULT_CAPACITY = ModelCapacity(
    provider="unknown",
    model="unknown",
    total_tokens=8000,
    input_cap=6000,
    output_cap=2000,
    tokenizer_id="cl100k_base",
    buffer_percent=20,
)


class ModelCapacityRegistry:
    """Read-only view over a capacity table."""

    def __init__(
        self,
        table: Mapping[str, Mapping[str, ModelCapacity]] | None = None,
        default: ModelCapacity = DEFAULT_CAPACITY,
    ):
        source = MODEL_CAPACITIES if table is None else table
        # Lower-cased index so lookups are case-insensitive
        self._table = _freeze(
            {
                provider.lower(): {name.lower(): cap for name, cap in models.items()}
                for provider, models in source.items()
            }
        )
        self._default = default

    @property
    def default(self) -> ModelCapacity:
        return self._default

    def get_capacity(self, provider: str | None, model: str | None) -> ModelCapacity:
        """
        Look up a model's capacity. Unknown pairs resolve to the default.

        Side Effects:
            - Logs a warning and bumps capacity.unknown_model for unknown pairs
        """
        models = self._table.get((provider or "").lower())
        if models is not None:
            capacity = models.get((model or "").lower())
            if capacity is not None:
                return capacity

        counter("capacity.unknown_model")
        logger.warning(
            "Unknown model %s/%s, using conservative default (%d tokens)",
            provider,
            model,
            self._default.total_tokens,
        )
        return self._default

    def calculate_optimal_split(
        self, provider: str | None, model: str | None, system_prompt_tokens: int
    ) -> PromptBudget:
        """
        Split a model's window between system prompt, user data and output.

        Args:
            provider: Provider name (case-insensitive)
            model: Model name (case-insensitive)
            system_prompt_tokens: Measured size of the rendered system prompt

        Returns:
            PromptBudget whose three parts never exceed the total window
        """
        cap = self.get_capacity(provider, model)
        total = cap.total_tokens
        system_tokens = max(0, int(system_prompt_tokens))

        output_buffer = max(cap.output_cap, math.floor(total * cap.buffer_percent / 100))
        output_buffer = min(output_buffer, total)
        max_input = max(0, cap.input_cap or (total - output_buffer))
        input_room = min(max_input, total - output_buffer)
        user_data = max(0, input_room - system_tokens)
        # An oversized system prompt is reported at what actually fits
        system_reported = min(system_tokens, total - output_buffer)

        return PromptBudget(
            total=total,
            system_prompt=system_reported,
            user_data=user_data,
            output_buffer=output_buffer,
            efficiency=user_data / total if total else 0.0,
        )

    def get_optimization_recommendation(
        self, provider: str | None, model: str | None, data_tokens: int, system_tokens: int = 800
    ) -> dict[str, Any]:
        """Recommend direct, smart_truncation or progressive for a data size."""
        budget = self.calculate_optimal_split(provider, model, system_tokens)
        ratio = data_tokens / budget.user_data if budget.user_data else math.inf

        if ratio > 1:
            strategy = "progressive"
            reason = "Data exceeds token limits, progressive analysis recommended"
        elif ratio > 0.8:
            strategy = "smart_truncation"
            reason = "Data near token limits, smart truncation recommended"
        else:
            strategy = "direct"
            reason = "Data fits comfortably within token limits"

        return {
            "strategy": strategy,
            "reason": reason,
            "utilization_ratio": ratio,
            "data_tokens": data_tokens,
            "available_tokens": budget.user_data,
            "budget": budget.to_dict(),
        }

    def get_supported_models(self) -> dict[str, list[str]]:
        return {provider: sorted(models) for provider, models in self._table.items()}

    def get_recommended_model(self, estimated_tokens: int, system_tokens: int = 800) -> dict[str, Any]:
        """
        Smallest model whose data budget still fits the estimate.

        Returns a progressive recommendation when nothing fits.
        """
        fitting: list[tuple[int, str, str, PromptBudget]] = []
        for provider, models in self._table.items():
            for name in models:
                budget = self.calculate_optimal_split(provider, name, system_tokens)
                if budget.user_data >= estimated_tokens:
                    fitting.append((budget.user_data - estimated_tokens, provider, name, budget))

        if not fitting:
            return {
                "provider": None,
                "model": None,
                "recommendation": "progressive",
                "reason": "Data too large for any single model, progressive analysis required",
            }

        fitting.sort(key=lambda entry: (entry[0], entry[1], entry[2]))
        overkill, provider, name, budget = fitting[0]
        return {
            "provider": provider,
            "model": name,
            "recommendation": "direct",
            "reason": f"Smallest model that fits {estimated_tokens} tokens",
            "surplus_tokens": overkill,
            "budget": budget.to_dict(),
        }


# Shared registry over the built-in table
DEFAULT_REGISTRY = ModelCapacityRegistry()


def get_capacity(provider: str | None, model: str | None) -> ModelCapacity:
    return DEFAULT_REGISTRY.get_capacity(provider, model)


def calculate_optimal_split(provider: str | None, model: str | None, system_prompt_tokens: int) -> PromptBudget:
    return DEFAULT_REGISTRY.calculate_optimal_split(provider, model, system_prompt_tokens)
