"""
Redaction helpers for logs and prompts.

Provides:
- redact(): stable hash of a sensitive string for log correlation
- redact_text(): short preview plus hash, used when logging prompts/responses
- neutralize_injection(): masks prompt-injection phrases in team-authored text
"""

from __future__ import annotations

import re
from hashlib import sha256

# Phrases in commit messages, issues or chat that try to steer the model
INJECTION_PATTERNS = [
    r"ignore\s+(previous|above|all)\s+instructions?",
    r"disregard\s+(previous|above|all)\s+instructions?",
    r"forget\s+(previous|above|all)\s+instructions?",
    r"new\s+instructions?:",
    r"\[INST\]",
    r"\[/INST\]",
    r"<\|im_start\|>",
    r"<\|im_end\|>",
]
INJECTION_REGEX = re.compile("|".join(INJECTION_PATTERNS), re.IGNORECASE)


def redact(value: str | None) -> str:
    """
    Return a stable hash representation of a sensitive string.
    """
    if not value:
        return "hash:missing"
    digest = sha256(value.encode("utf-8")).hexdigest()[:12]
    return f"hash:{digest}"


def redact_text(text: str | None, preview_chars: int = 60) -> str:
    """
    Preview of a long text for logging: first characters plus a hash.

    Example:
        "Team Data for Analysis: {...}" ->
        "Team Data for Analysis: {\"github\": {\"commits\"... (len:52311 hash:1f2e3d4c5b6a)"
    """
    if not text:
        return "(empty)"
    preview = text[:preview_chars] + "..." if len(text) > preview_chars else text
    preview = preview.replace("\n", " ")
    return f"{preview} (len:{len(text)} {redact(text)})"


def neutralize_injection(text: str) -> str:
    """Replace known prompt-injection phrases with a placeholder."""
    if not text:
        return text
    return INJECTION_REGEX.sub("[REDACTED]", text)
