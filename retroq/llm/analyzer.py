"""
LLM analysis orchestrator.

LLMAnalyzer runs one retro analysis end to end:

    prepare -> sanitize -> assess complexity -> choose strategy
        -> direct (one prompt) | progressive (temporal chunks)
        -> parse -> attach metadata

Provider calls go through a retry loop with a per-attempt asyncio timeout.
Any failure is classified; fallback-eligible errors return None so callers
continue with rule-based insights only, everything else surfaces as an
LLMError.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import UTC, datetime
from typing import Any, TypeVar

from pydantic import ValidationError

from retroq import config as app_config
from retroq.contracts.insights import SECTION_KEYS, AnalysisResult, Insight, InsightSections
from retroq.contracts.providers import LLMProvider, RawText, Sanitizer
from retroq.contracts.team_data import present_sources
from retroq.llm.errors import (
    LLMError,
    LLMParseError,
    LLMTimeoutError,
    classify_error,
    is_non_retryable,
    should_fallback,
)
from retroq.llm.monitor import PerformanceMonitor
from retroq.llm.optimizer import ModelRequirements, PerformanceOptimizer, PromptOptimization
from retroq.llm.progress import (
    AI_ANALYSIS,
    DATA_PREPARATION,
    INSIGHT_MERGING,
    PROMPT_GENERATION,
    RESPONSE_PROCESSING,
    ProgressTracker,
)
from retroq.llm.progressive import ProgressiveAnalyzer
from retroq.llm.prompt_builder import Prompt, PromptBuilder
from retroq.llm.providers.config import ProviderConfig
from retroq.llm.providers.factory import create_provider
from retroq.llm.response_parser import DEFAULT_REASONING, JSON_CONFIDENCE, ResponseParser
from retroq.observability.logging import get_logger
from retroq.observability.telemetry import counter, log_event, time_block
from retroq.temporal.chunker import ChunkConfig, TemporalChunker

logger = get_logger(__name__)

T = TypeVar("T")

USER_DATA_MARKER = "\n\nUser Data:\n"
DIRECT = "direct"
PROGRESSIVE = "progressive"

# Settings that require a new provider instance when changed
PROVIDER_FIELDS = frozenset({"provider", "model", "api_key", "temperature", "max_tokens", "timeout_seconds"})


@dataclass
class AnalyzerConfig:
    provider: str | None = app_config.LLM_PROVIDER
    model: str | None = app_config.LLM_MODEL
    api_key: str | None = app_config.LLM_API_KEY
    enabled: bool = app_config.LLM_ENABLED
    timeout_seconds: float = app_config.LLM_TIMEOUT_SECONDS
    retry_attempts: int = app_config.LLM_MAX_RETRIES
    retry_delay_seconds: float = app_config.LLM_RETRY_DELAY_SECONDS
    temperature: float = app_config.LLM_TEMPERATURE
    max_tokens: int = app_config.LLM_MAX_OUTPUT_TOKENS
    privacy_level: str = app_config.PRIVACY_LEVEL
    progressive_threshold_tokens: int = app_config.PROGRESSIVE_THRESHOLD_TOKENS
    chunk_config: ChunkConfig = field(default_factory=ChunkConfig)

    def provider_config(self) -> ProviderConfig:
        """
        Raises:
            pydantic.ValidationError: invalid provider settings
        """
        return ProviderConfig(
            provider=self.provider or "",
            model=self.model,
            api_key=self.api_key,
            timeout_seconds=self.timeout_seconds,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            retry_attempts=max(1, self.retry_attempts),
            retry_delay_seconds=self.retry_delay_seconds,
        )


def assess_complexity(team_data: dict[str, Any], serialized: str | None = None) -> str:
    """high: >50000 chars or 3 sources; medium: >20000 chars or 2 sources; else low."""
    size = len(serialized if serialized is not None else json.dumps(team_data, default=str))
    sources = len(present_sources(team_data))
    if size > 50_000 or sources >= 3:
        return "high"
    if size > 20_000 or sources >= 2:
        return "medium"
    return "low"


def prepare_team_data(github: Any, linear: Any, slack: Any) -> dict[str, Any]:
    """
    Keep only sources that carry items.

    linear and slack may be a bare list of issues/messages or a dict with
    "issues"/"messages".
    """
    team_data: dict[str, Any] = {}

    if isinstance(github, Mapping) and (github.get("commits") or github.get("pullRequests")):
        team_data["github"] = {
            "commits": list(github.get("commits") or []),
            "pullRequests": list(github.get("pullRequests") or []),
        }

    issues = linear.get("issues") if isinstance(linear, Mapping) else linear
    if issues:
        team_data["linear"] = {"issues": list(issues)}

    messages = slack.get("messages") if isinstance(slack, Mapping) else slack
    if messages:
        team_data["slack"] = {"messages": list(messages)}

    return team_data


def _is_empty_response(response: Any) -> bool:
    if response is None:
        return True
    if isinstance(response, RawText):
        return not response.text.strip()
    if isinstance(response, str):
        return not response.strip()
    return False


class LLMAnalyzer:
    """
    Orchestrates LLM analysis for one team.

    Each analyzer owns its monitor, optimizer and prompt builder. Use a
    separate analyzer per concurrent run.

    Args:
        config: AnalyzerConfig (defaults from environment)
        provider: Pre-built provider; skips factory creation
        sanitizer: Optional PII sanitizer applied before any data leaves
        monitor: Optional PerformanceMonitor to share
    """

    def __init__(
        self,
        config: AnalyzerConfig | None = None,
        provider: LLMProvider | None = None,
        sanitizer: Sanitizer | None = None,
        monitor: PerformanceMonitor | None = None,
    ):
        self.config = config or AnalyzerConfig()
        self.sanitizer = sanitizer
        self.monitor = monitor or PerformanceMonitor()
        self.optimizer = PerformanceOptimizer(self.monitor)
        self.parser = ResponseParser()
        self.chunker = TemporalChunker(self.config.chunk_config)
        self.provider: LLMProvider | None = provider
        self.prompt_builder: PromptBuilder | None = None

        if self.provider is not None:
            self._attach_prompt_builder()
        elif self.config.enabled and self.config.provider:
            self._initialize_components()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def _initialize_components(self) -> None:
        """
        Create the provider and prompt builder from config.

        Side Effects:
            - Disables the analyzer (config.enabled = False) when the
              provider cannot be created
        """
        try:
            self.provider = create_provider(self.config.provider_config(), self.monitor)
        except (ValueError, ValidationError) as e:
            logger.error("Failed to initialize LLM components: %s", e)
            self.provider = None
            self.prompt_builder = None
            self.config.enabled = False
            return
        self._attach_prompt_builder()
        logger.info("LLMAnalyzer initialized with %s provider", self.config.provider)

    def _attach_prompt_builder(self) -> None:
        assert self.provider is not None
        self.prompt_builder = PromptBuilder.for_model(self.provider.get_provider_name(), self.provider.get_model())

    @classmethod
    def from_environment(cls, sanitizer: Sanitizer | None = None) -> LLMAnalyzer:
        """Analyzer configured from RETROQ_* settings; disabled when no provider is named."""
        if not app_config.LLM_PROVIDER:
            logger.info("No LLM provider configured, LLM analysis disabled")
            return cls(AnalyzerConfig(enabled=False), sanitizer=sanitizer)
        return cls(AnalyzerConfig(), sanitizer=sanitizer)

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def analyze_team_data(
        self,
        github: Any = None,
        linear: Any = None,
        slack: Any = None,
        date_range: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
        progress: ProgressTracker | None = None,
    ) -> AnalysisResult | None:
        """
        Generate LLM insights for a team's activity.

        Args:
            github: {"commits": [...], "pullRequests": [...]}
            linear: list of issues (or {"issues": [...]})
            slack: list of messages (or {"messages": [...]})
            date_range: {"start": iso, "end": iso}
            context: team_size, repositories, channels, prioritize_* flags
            progress: Optional tracker; initialized with the default steps if empty

        Returns:
            AnalysisResult, or None when disabled or on a fallback-eligible failure

        Raises:
            LLMError: non-fallback failures (already classified)
        """
        if not self.config.enabled or self.provider is None:
            logger.info("LLM analysis disabled or not configured, skipping")
            return None

        if progress is not None and not progress.steps:
            progress.initialize()

        try:
            with time_block("llm.analysis_ms"):
                return await self._analyze(github, linear, slack, date_range, dict(context or {}), progress)
        except Exception as exc:
            llm_error = classify_error(exc, "analyze_team_data")
            logger.error("LLM analysis failed: %s", llm_error.message)
            log_event(
                "llm.analysis_failed",
                error_type=llm_error.error_type.value,
                code=llm_error.code,
                provider=self.config.provider,
            )
            if progress is not None:
                progress.fail(llm_error.message)

            if should_fallback(llm_error):
                counter("llm.fallback")
                logger.info("Falling back to rule-based analysis due to: %s", llm_error.message)
                return None
            if llm_error is exc:
                raise
            raise llm_error from exc

    async def _analyze(
        self,
        github: Any,
        linear: Any,
        slack: Any,
        date_range: dict[str, Any] | None,
        context: dict[str, Any],
        progress: ProgressTracker | None,
    ) -> AnalysisResult:
        assert self.provider is not None and self.prompt_builder is not None
        started = time.monotonic()
        provider_name = self.provider.get_provider_name()
        model = self.provider.get_model()
        logger.info("Starting LLM analysis with %s/%s", provider_name, model)

        # Prepare and sanitize
        team_data = prepare_team_data(github, linear, slack)
        if progress is not None:
            progress.start_step(DATA_PREPARATION, {"sources": present_sources(team_data)})
            progress.update_step_progress(DATA_PREPARATION, 0.5, "Data collected, sanitizing...")
        sanitized, was_sanitized = self._sanitize(team_data)
        serialized = json.dumps(sanitized, default=str)
        if progress is not None:
            progress.complete_step(DATA_PREPARATION, {"data_size": len(serialized), "sanitized": was_sanitized})
            progress.start_step(PROMPT_GENERATION)

        # Complexity and strategy
        complexity = assess_complexity(sanitized, serialized)
        data_tokens = self.provider.estimate_token_count(serialized)
        recommendation = self.optimizer.select_optimal_model(
            ModelRequirements(
                data_volume=data_tokens,
                complexity=complexity,
                prioritize_cost=bool(context.get("prioritize_cost")),
                prioritize_speed=bool(context.get("prioritize_speed")),
                prioritize_quality=bool(context.get("prioritize_quality")),
            )
        )
        logger.info(
            "Performance optimizer recommends %s/%s: %s",
            recommendation.provider,
            recommendation.model,
            recommendation.reason,
        )
        strategy = PROGRESSIVE if data_tokens > self.config.progressive_threshold_tokens else DIRECT

        analysis_context = {
            "repositories": [],
            "channels": [],
            **context,
            "date_range": date_range,
            "provider": provider_name,
            "model": model,
        }

        optimization: PromptOptimization | None = None
        chunk_stats: dict[str, Any] | None = None
        if strategy == DIRECT:
            prompt, optimization = self._build_direct_prompt(sanitized, analysis_context, provider_name, model)
            if progress is not None:
                progress.complete_step(
                    PROMPT_GENERATION,
                    {"prompt_tokens": self.provider.estimate_token_count(prompt.system + prompt.user)},
                )
                progress.start_step(AI_ANALYSIS, {"provider": provider_name, "model": model, "strategy": strategy})
            response = await self.run_with_retry(
                lambda: self.provider.generate_insights(sanitized, {**analysis_context, "prompt": prompt}),
                "generate_insights",
                progress=progress,
            )
        else:
            logger.info(
                "Data estimated at %d tokens (> %d), using progressive analysis",
                data_tokens,
                self.config.progressive_threshold_tokens,
            )
            if progress is not None:
                progress.complete_step(PROMPT_GENERATION, {"strategy": strategy, "data_tokens": data_tokens})
                progress.start_step(AI_ANALYSIS, {"provider": provider_name, "model": model, "strategy": strategy})
            outcome = await ProgressiveAnalyzer(
                self.provider, self.prompt_builder, self.run_with_retry, self.chunker
            ).analyze(sanitized, date_range, analysis_context, progress)
            prompt, response, chunk_stats = outcome.prompt, outcome.response, outcome.chunk_stats

        if progress is not None:
            progress.complete_step(AI_ANALYSIS, {"strategy": strategy})
            progress.start_step(RESPONSE_PROCESSING)

        sections = self.parse_response(response)
        if progress is not None:
            progress.complete_step(RESPONSE_PROCESSING, sections.counts())
            progress.start_step(INSIGHT_MERGING)

        duration_ms = round((time.monotonic() - started) * 1000)
        token_usage = self.prompt_builder.get_token_usage(prompt)
        result = self.attach_metadata(
            sections,
            {
                "provider": provider_name,
                "model": model,
                "duration_ms": duration_ms,
                "strategy": strategy,
                "complexity": complexity,
                "data_size": len(serialized),
                "data_tokens": data_tokens,
                "token_usage": token_usage,
                "sanitized": was_sanitized,
                "model_recommendation": recommendation.to_dict(),
                "prompt_optimization": optimization.to_dict() if optimization and optimization.optimized else None,
                "prompt": {
                    "template": prompt.metadata.get("template"),
                    "data_reduced": prompt.metadata.get("data_reduced", False),
                    "clamped": prompt.metadata.get("clamped", False),
                },
                "chunk_stats": chunk_stats,
            },
        )
        if progress is not None:
            progress.complete_step(INSIGHT_MERGING, {"total_insights": result.total()})

        logger.info("LLM analysis completed in %dms (%s, %d insights)", duration_ms, strategy, result.total())
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _sanitize(self, team_data: dict[str, Any]) -> tuple[dict[str, Any], bool]:
        """
        Returns:
            (data to send, whether sanitization was applied)
        """
        if self.sanitizer is None or self.config.privacy_level == "none":
            return team_data, False
        try:
            sanitized = self.sanitizer.sanitize_team_data(team_data)
            report = self.sanitizer.validate_sanitization(sanitized)
            if not report.is_clean:
                logger.warning("Data sanitization incomplete: %s", report.violations)
            return sanitized, True
        except Exception as e:
            logger.error("Data sanitization failed, using unsanitized data: %s", e)
            return team_data, False

    def _build_direct_prompt(
        self, team_data: dict[str, Any], context: dict[str, Any], provider_name: str, model: str
    ) -> tuple[Prompt, PromptOptimization]:
        assert self.provider is not None and self.prompt_builder is not None
        prompt = self.prompt_builder.build_prompt(team_data, context)

        combined = prompt.system + USER_DATA_MARKER + prompt.user
        optimization = self.optimizer.optimize_prompt_size(
            combined, provider_name, model, self.provider.estimate_token_count(prompt.system + prompt.user)
        )
        if optimization.optimized:
            system, marker, user = optimization.prompt.partition(USER_DATA_MARKER.strip("\n"))
            if marker:
                logger.info("Prompt optimized: %s", optimization.reason)
                prompt = replace(
                    prompt,
                    system=system.rstrip("\n"),
                    user=user.lstrip("\n"),
                    metadata={
                        **prompt.metadata,
                        "optimized": True,
                        "original_tokens": optimization.original_tokens,
                        "optimized_tokens": optimization.optimized_tokens,
                    },
                )
            else:
                logger.warning("Optimized prompt lost its data marker, keeping the original prompt")

        if not self.prompt_builder.validate_prompt_size(prompt):
            logger.warning("Prompt exceeds token limits, analysis may be truncated")
        return prompt, optimization

    async def run_with_retry(
        self,
        call: Callable[[], Awaitable[T]],
        label: str = "provider_call",
        progress: ProgressTracker | None = None,
    ) -> T:
        """
        Await call() with a per-attempt timeout and exponential backoff.

        Attempt n waits retry_delay * 2^(n-1) before the next try. Empty
        responses count as failures. Non-retryable errors stop at once.

        Raises:
            Exception: the last attempt's error (LLMTimeoutError on timeout)
        """
        attempts = max(1, self.config.retry_attempts)
        last_error: BaseException | None = None

        for attempt in range(1, attempts + 1):
            if progress is not None:
                progress.update_step_progress(
                    AI_ANALYSIS,
                    0.1 + (attempt - 1) * 0.3,
                    f"Calling AI service (attempt {attempt}/{attempts})...",
                )
            try:
                with time_block("llm.provider_call_ms"):
                    response = await asyncio.wait_for(call(), timeout=self.config.timeout_seconds)
                if _is_empty_response(response):
                    raise RuntimeError("Empty response from LLM provider")
                return response
            except asyncio.TimeoutError:
                last_error = LLMTimeoutError(
                    details={"timeout_seconds": self.config.timeout_seconds, "attempt": attempt, "context": label}
                )
            except Exception as exc:
                last_error = exc

            logger.warning("%s attempt %d/%d failed: %s", label, attempt, attempts, last_error)
            if is_non_retryable(last_error) or is_non_retryable(classify_error(last_error, label)):
                logger.info("%s failed with a non-retryable error, not retrying", label)
                break

            if attempt < attempts:
                delay = self.config.retry_delay_seconds * 2 ** (attempt - 1)
                counter("llm.retry")
                logger.info("Retrying %s in %.1fs", label, delay)
                if progress is not None:
                    progress.update_step_progress(
                        AI_ANALYSIS, 0.1 + (attempt - 1) * 0.3, f"Retrying in {round(delay)}s due to: {last_error}"
                    )
                await asyncio.sleep(delay)

        assert last_error is not None
        raise last_error

    def parse_response(self, response: Any) -> InsightSections:
        """
        Normalize a provider response into the three sections.

        Accepts InsightSections, RawText, a plain string, or a dict with at
        least one section key. Missing sections become empty.

        Raises:
            LLMParseError: unsupported or malformed response
        """
        try:
            if isinstance(response, InsightSections):
                sections = response
            elif isinstance(response, RawText):
                sections = self.parser.parse_response(response.text, response.provider or self.config.provider or "unknown")
            elif isinstance(response, str):
                sections = self.parser.parse_response(response, self.config.provider or "unknown")
            elif isinstance(response, Mapping) and any(
                name in response or wire in response for name, wire in SECTION_KEYS.items()
            ):
                payload: dict[str, Any] = {}
                for name, wire in SECTION_KEYS.items():
                    items = response.get(name, response.get(wire))
                    payload[name] = list(items) if isinstance(items, (list, tuple)) else []
                payload["metadata"] = dict(response.get("metadata") or {})
                sections = InsightSections.model_validate(payload)
            else:
                raise LLMParseError(
                    f"Response parsing failed: unsupported response type {type(response).__name__}"
                )
        except LLMParseError:
            raise
        except Exception as exc:
            logger.error("Failed to parse LLM response: %s", exc)
            raise LLMParseError(f"Response parsing failed: {exc}") from exc

        logger.info("LLM insights parsed: %s", sections.counts())
        return sections

    def attach_metadata(self, sections: InsightSections, metadata: dict[str, Any]) -> AnalysisResult:
        """Stamp every insight with provider/model and defaults, and build analysis_metadata."""
        item_metadata = {
            "analysis_time": metadata.get("duration_ms"),
            "token_usage": metadata.get("token_usage"),
            "data_sanitized": metadata.get("sanitized"),
        }

        def stamp(insight: Insight) -> Insight:
            return insight.model_copy(
                update={
                    "source": "ai",
                    "llm_provider": metadata.get("provider"),
                    "llm_model": metadata.get("model"),
                    "confidence": insight.confidence if "confidence" in insight.model_fields_set else JSON_CONFIDENCE,
                    "reasoning": insight.reasoning or DEFAULT_REASONING,
                    "metadata": item_metadata,
                }
            )

        return AnalysisResult(
            **{name: tuple(stamp(item) for item in items) for name, items in sections.sections().items()},
            metadata=dict(sections.metadata),
            analysis_metadata={**metadata, "generated_at": datetime.now(UTC).isoformat()},
        )

    # ------------------------------------------------------------------
    # Configuration and status
    # ------------------------------------------------------------------

    async def test_configuration(self) -> dict[str, Any]:
        """Connectivity check plus one minimal analysis call. Never raises."""
        provider_name = self.config.provider or "none"
        if not self.config.enabled:
            return {"success": False, "message": "LLM analysis is disabled", "provider": provider_name}
        if self.provider is None:
            return {"success": False, "message": "LLM provider not initialized", "provider": provider_name}

        model = self.provider.get_model()
        try:
            if not await self.provider.validate_connection():
                return {
                    "success": False,
                    "message": "LLM provider connection failed",
                    "provider": provider_name,
                    "model": model,
                }

            test_data = {"github": {"commits": [], "pullRequests": []}, "linear": {"issues": []}, "slack": {"messages": []}}
            test_context = {"date_range": {"start": "2024-01-01", "end": "2024-01-02"}, "team_size": 1}
            response = await self.run_with_retry(
                lambda: self.provider.generate_insights(test_data, test_context), "test_configuration"
            )
        except Exception as e:
            return {
                "success": False,
                "message": f"LLM test failed: {e}",
                "provider": provider_name,
                "model": model,
                "error": str(e),
            }

        structured = isinstance(response, InsightSections)
        return {
            "success": True,
            "message": "LLM configuration test successful" if structured else "LLM connection successful",
            "provider": provider_name,
            "model": model,
        }

    def get_status(self) -> dict[str, Any]:
        return {
            "enabled": self.config.enabled,
            "provider": self.config.provider,
            "model": self.provider.get_model() if self.provider else self.config.model,
            "privacy_level": self.config.privacy_level,
            "timeout_seconds": self.config.timeout_seconds,
            "retry_attempts": self.config.retry_attempts,
            "progressive_threshold_tokens": self.config.progressive_threshold_tokens,
            "initialized": self.provider is not None,
            "components": {
                "provider": self.provider is not None,
                "prompt_builder": self.prompt_builder is not None,
                "sanitizer": self.sanitizer is not None,
            },
        }

    def update_configuration(self, **changes: Any) -> AnalyzerConfig:
        """
        Apply config changes and rebuild components that depend on them.

        Raises:
            ValueError: unknown setting names
        """
        known = {f.name for f in fields(AnalyzerConfig)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown analyzer settings: {', '.join(sorted(unknown))}")

        self.config = replace(self.config, **changes)
        self.chunker = TemporalChunker(self.config.chunk_config)

        if not self.config.enabled or not self.config.provider:
            self.provider = None
            self.prompt_builder = None
        elif self.provider is None or PROVIDER_FIELDS & set(changes):
            self._initialize_components()
        logger.info("Analyzer configuration updated: %s", sorted(changes))
        return self.config

    def describe_config(self) -> dict[str, Any]:
        data = asdict(self.config)
        if data.get("api_key"):
            data["api_key"] = "***"
        return data

    # ------------------------------------------------------------------
    # Performance passthroughs
    # ------------------------------------------------------------------

    def get_performance_metrics(self) -> dict[str, Any]:
        return self.monitor.get_metrics()

    def get_optimization_recommendations(self, data_volume: int = 0) -> dict[str, Any]:
        return self.optimizer.get_optimization_recommendations(data_volume)

    def reset_performance_metrics(self) -> None:
        self.monitor.reset()

    def cleanup_performance_data(self, max_age_seconds: float = app_config.METRICS_MAX_AGE_SECONDS) -> int:
        return self.monitor.cleanup_old_requests(max_age_seconds)

    def update_optimization_thresholds(self, **values: Any) -> dict[str, Any]:
        return asdict(self.optimizer.update_thresholds(**values))
