"""
Convert raw LLM output into the three retro sections.

Models are asked for JSON but do not always comply. Parsing runs in order:

1. JSON (whole text, fenced block, first balanced object, first array)
2. Markdown-ish text with section headers and bullet / numbered items
3. Sentence extraction with a crude sentiment split

Each stage only runs if the previous one found nothing usable.
"""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import ValidationError

from retroq.contracts.insights import SECTION_KEYS, Insight, InsightSections
from retroq.observability.logging import get_logger
from retroq.utils.redaction import redact_text

logger = get_logger(__name__)

JSON_CONFIDENCE = 0.8
TEXT_CONFIDENCE = 0.7
GENERAL_CONFIDENCE = 0.5
DEFAULT_REASONING = "Generated by LLM analysis"

FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
BULLET_PATTERN = re.compile(r"^(?:[*\-+]\s+|\d+\.\s+)")
SENTENCE_SPLIT = re.compile(r"[.!?]")

HEADER_KEYWORDS = (
    "went well",
    "positive",
    "success",
    "good",
    "didnt go well",
    "didn t go well",
    "negative",
    "issues",
    "problems",
    "challenges",
    "action items",
    "improvements",
    "recommendations",
    "next steps",
)

POSITIVE_WORDS = ("good", "great", "excellent", "success", "well", "improved", "better")
NEGATIVE_WORDS = ("bad", "poor", "issue", "problem", "difficult", "challenge", "failed")
ACTION_WORDS = ("should", "need", "must", "recommend", "suggest", "improve", "fix")

CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "technical": (
        "bug",
        "error",
        "fix",
        "code",
        "api",
        "database",
        "performance",
        "deployment",
        "build",
        "test",
        "security",
        "infrastructure",
    ),
    "process": (
        "process",
        "workflow",
        "sprint",
        "planning",
        "meeting",
        "documentation",
        "review",
        "agile",
        "scrum",
        "methodology",
        "procedure",
    ),
    "teamDynamics": (
        "team",
        "collaboration",
        "communication",
        "feedback",
        "culture",
        "morale",
        "onboarding",
        "mentoring",
        "conflict",
        "leadership",
    ),
}


def _clean(text: str) -> str:
    return re.sub(r"[^\w\s]", " ", text.lower())


def extract_title(text: str) -> str:
    """First sentence if it is short, else the first 47 chars plus '...'."""
    text = (text or "").strip()
    sentences = SENTENCE_SPLIT.split(text)
    if len(sentences) > 1 and len(sentences[0]) < 100:
        return sentences[0].strip()
    return text[:47].strip() + "..." if len(text) > 50 else text


def infer_category_from_text(text: str | None) -> str:
    """Keyword-count category guess; ties resolve technical > process > teamDynamics."""
    if not text or not isinstance(text, str):
        return "general"
    lower = text.lower()
    technical, process, team = (
        sum(1 for word in CATEGORY_KEYWORDS[name] if word in lower) for name in ("technical", "process", "teamDynamics")
    )
    if technical > process and technical > team:
        return "technical"
    if process > team:
        return "process"
    if team > 0:
        return "teamDynamics"
    return "general"


def analyze_sentiment(text: str) -> str:
    """'action', 'positive' or 'negative'. Neutral text counts as negative."""
    lower = text.lower()
    if any(word in lower for word in ACTION_WORDS):
        return "action"
    positive = sum(1 for word in POSITIVE_WORDS if word in lower)
    negative = sum(1 for word in NEGATIVE_WORDS if word in lower)
    if positive > negative:
        return "positive"
    return "negative"


def validate_insight(raw: Any) -> dict[str, Any]:
    """
    Normalize one raw insight into a dict with title, details and category.

    Raises:
        ValueError: raw is empty, not a dict/string, or has neither title nor details
    """
    if not raw:
        raise ValueError("Invalid insight: must be an object")
    if isinstance(raw, str):
        return {"title": extract_title(raw), "details": raw, "category": infer_category_from_text(raw)}
    if not isinstance(raw, dict):
        raise ValueError("Invalid insight: must be an object")

    title = raw.get("title")
    details = raw.get("details") or raw.get("description")
    if not title and not details:
        raise ValueError("Invalid insight: must have either title or details")

    normalized = dict(raw)
    normalized["title"] = title or extract_title(details)
    normalized["details"] = details or title
    normalized["category"] = raw.get("category") or infer_category_from_text(title or details)
    return normalized


def _balanced_span(text: str, opener: str, closer: str) -> str | None:
    """First balanced opener..closer span, skipping brackets inside JSON strings."""
    start = text.find(opener)
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == opener:
                depth += 1
            elif char == closer:
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        start = text.find(opener, start + 1)
    return None


def load_json_payload(text: str) -> Any | None:
    """Best-effort JSON extraction from model output; None when nothing parses."""
    candidates = [text.strip()]
    candidates.extend(match.strip() for match in FENCE_PATTERN.findall(text))
    for opener, closer in (("{", "}"), ("[", "]")):
        span = _balanced_span(text, opener, closer)
        if span:
            candidates.append(span)

    for candidate in candidates:
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None


def _section_lists(parsed: Any) -> dict[str, list[Any]] | None:
    """Map a parsed JSON payload to raw section lists, or None if unrecognized."""

    def pick(payload: dict[str, Any]) -> dict[str, list[Any]] | None:
        found = {}
        for field_name, wire_name in SECTION_KEYS.items():
            value = payload.get(wire_name, payload.get(field_name))
            if value is not None:
                found[field_name] = value if isinstance(value, list) else []
        return found or None

    if isinstance(parsed, dict):
        direct = pick(parsed)
        if direct:
            return direct
        nested = parsed.get("insights")
        if isinstance(nested, dict):
            return pick(nested)
        return None

    if isinstance(parsed, list):
        sections: dict[str, list[Any]] = {name: [] for name in SECTION_KEYS}
        for item in parsed:
            if not isinstance(item, dict) or not item.get("category") or not isinstance(item.get("insights"), list):
                continue
            label = str(item["category"]).lower()
            if "went well" in label or "positive" in label:
                sections["went_well"].extend(item["insights"])
            elif "didn't go well" in label or "negative" in label or "issues" in label:
                sections["didnt_go_well"].extend(item["insights"])
            elif "action" in label or "improvement" in label:
                sections["action_items"].extend(item["insights"])
        return sections

    return None


class ResponseParser:
    """Stateless parser; one instance can serve every provider."""

    def parse_response(self, response: str | None, provider: str = "unknown") -> InsightSections:
        """
        Parse raw LLM output into InsightSections.

        Args:
            response: Raw text from the model
            provider: Provider name recorded on each insight

        Returns:
            InsightSections; empty with parse_error metadata for blank input
        """
        if not response or not isinstance(response, str) or not response.strip():
            logger.warning("Empty LLM response from %s, returning empty insights", provider)
            return InsightSections.empty(provider=provider, parse_error="Empty response from LLM", fallback=True)

        parsed = self.parse_json_response(response, provider)
        if parsed is not None:
            return parsed

        logger.info("LLM response from %s is not JSON, using text extraction: %s", provider, redact_text(response))
        return self.parse_text_response(response, provider)

    def parse_json_response(self, response: str, provider: str) -> InsightSections | None:
        payload = load_json_payload(response)
        if payload is None:
            return None
        sections = _section_lists(payload)
        if sections is None:
            return None
        return InsightSections(
            went_well=self._normalize(sections.get("went_well", []), provider),
            didnt_go_well=self._normalize(sections.get("didnt_go_well", []), provider),
            action_items=self._normalize(sections.get("action_items", []), provider, action=True),
            metadata={"provider": provider, "format": "json"},
        )

    def _normalize(self, raw_items: list[Any], provider: str, action: bool = False) -> tuple[Insight, ...]:
        insights = []
        for raw in raw_items:
            try:
                normalized = validate_insight(raw)
            except ValueError as exc:
                logger.warning("Skipping malformed insight from %s: %s", provider, exc)
                continue
            normalized["source"] = "ai"
            normalized["llm_provider"] = provider
            normalized["confidence"] = normalized.get("confidence") or JSON_CONFIDENCE
            normalized["reasoning"] = normalized.get("reasoning") or DEFAULT_REASONING
            if action:
                normalized["priority"] = normalized.get("priority") or "medium"
                normalized["assignee"] = normalized.get("assignee") or "team"
            try:
                insights.append(Insight.model_validate(normalized))
            except ValidationError as exc:
                logger.warning("Skipping invalid insight from %s: %s", provider, exc.errors()[:1])
        return tuple(insights)

    @staticmethod
    def is_header_line(line: str) -> bool:
        if not line:
            return False
        if line.startswith("#"):
            return True
        cleaned = _clean(line)
        has_keyword = any(keyword in cleaned for keyword in HEADER_KEYWORDS)
        if re.match(r"^[*\-+]\s", line) and (has_keyword or ":" in line):
            return True
        return has_keyword

    @staticmethod
    def categorize_section(header: str) -> str:
        """Section for a header; unrecognized headers count as didnt_go_well."""
        lower = _clean(header)
        if any(word in lower for word in ("went well", "positive", "success", "good")):
            return "went_well"
        if any(word in lower for word in ("didnt go well", "didn t go well", "negative", "issues", "problems", "challenges")):
            return "didnt_go_well"
        if any(word in lower for word in ("action", "improvement", "recommendation", "next steps")):
            return "action_items"
        return "didnt_go_well"

    def extract_sections(self, text: str) -> list[tuple[str, list[str]]]:
        sections: list[tuple[str, list[str]]] = []
        for line in text.splitlines():
            stripped = line.strip()
            if self.is_header_line(stripped):
                sections.append((stripped, []))
            elif sections and stripped:
                sections[-1][1].append(stripped)
        return sections

    @staticmethod
    def extract_items(lines: list[str]) -> list[dict[str, str]]:
        items: list[dict[str, str]] = []
        for line in lines:
            if BULLET_PATTERN.match(line):
                clean = BULLET_PATTERN.sub("", line).strip()
                items.append({"title": extract_title(clean), "details": clean})
            elif items:
                items[-1]["details"] += " " + line
            else:
                items.append({"title": extract_title(line), "details": line})
        return items

    def parse_text_response(self, response: str, provider: str) -> InsightSections:
        buckets: dict[str, list[Insight]] = {name: [] for name in SECTION_KEYS}
        for header, content in self.extract_sections(response):
            section = self.categorize_section(header)
            for item in self.extract_items(content):
                fields: dict[str, Any] = {
                    "title": item["title"] or "Insight from AI analysis",
                    "details": item["details"] or item["title"],
                    "source": "ai",
                    "llm_provider": provider,
                    "confidence": TEXT_CONFIDENCE,
                    "reasoning": "Extracted from LLM text response",
                }
                if section == "action_items":
                    fields.update(priority="medium", assignee="team")
                buckets[section].append(Insight.model_validate(fields))

        if not any(buckets.values()):
            return self.extract_general_insights(response, provider)

        return InsightSections(**buckets, metadata={"provider": provider, "format": "text"})

    def extract_general_insights(self, text: str, provider: str) -> InsightSections:
        buckets: dict[str, list[Insight]] = {name: [] for name in SECTION_KEYS}
        for sentence in SENTENCE_SPLIT.split(text):
            sentence = sentence.strip()
            if len(sentence) <= 10:
                continue
            fields: dict[str, Any] = {
                "title": extract_title(sentence),
                "details": sentence,
                "source": "ai",
                "llm_provider": provider,
                "confidence": GENERAL_CONFIDENCE,
                "reasoning": "Extracted from unstructured LLM response",
            }
            sentiment = analyze_sentiment(sentence)
            if sentiment == "action":
                fields.update(priority="medium", assignee="team")
                buckets["action_items"].append(Insight.model_validate(fields))
            elif sentiment == "positive":
                buckets["went_well"].append(Insight.model_validate(fields))
            else:
                buckets["didnt_go_well"].append(Insight.model_validate(fields))
        return InsightSections(**buckets, metadata={"provider": provider, "format": "sentences"})
