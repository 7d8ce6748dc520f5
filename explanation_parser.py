"""Parse raw provider text into an AIExplanation with a quality-based confidence score."""

import json
import logging
import math
import re

from exceptions import MalformedResponseError
from models import AIExplanation

logger = logging.getLogger(__name__)

MAX_FIXES = 3
MIN_FIXES = 2
PADDING_FIX = "Check Solana program logs for additional context"
DEFAULT_FIXES = [
    "Check Solana program logs for more details",
    "Verify account states and transaction parameters",
]

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_FIX_PREFIX_RE = re.compile(r"^fix\s*\d*:\s*", re.IGNORECASE)
_EXPLANATION_PREFIX_RE = re.compile(r"^explanation:\s*", re.IGNORECASE)


def estimate_tokens(text: str) -> int:
    """Rough token estimate, ~4 characters per token."""
    return math.ceil(len(text) / 4)


def score_confidence(explanation: str, fixes: list[str], base: float, cap: float) -> float:
    """Base score plus bonuses for detail and for pointing at concrete tooling."""
    confidence = base
    lowered = explanation.lower()
    if len(explanation) > 50:
        confidence += 0.1
    if "solana" in lowered or "anchor" in lowered:
        confidence += 0.1
    if len(fixes) >= MIN_FIXES:
        confidence += 0.05
    if any("anchor test" in fix.lower() or "solana logs" in fix.lower() for fix in fixes):
        confidence += 0.05
    return round(min(confidence, cap), 4)


def _parse_json(text: str) -> tuple[str, list[str]] | None:
    match = _JSON_OBJECT_RE.search(text)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None

    explanation = parsed.get("explanation")
    fixes = parsed.get("fixes")
    if not isinstance(explanation, str) or not explanation.strip() or not isinstance(fixes, list):
        return None

    cleaned = [str(fix).strip() for fix in fixes if str(fix).strip()][:MAX_FIXES]
    while len(cleaned) < MIN_FIXES:
        cleaned.append(PADDING_FIX)
    return explanation.strip(), cleaned


def _parse_lines(text: str, code: int) -> tuple[str, list[str]]:
    explanation = f"Error code {code} encountered"
    fixes: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        lowered = stripped.lower()
        if "explanation:" in lowered:
            explanation = _EXPLANATION_PREFIX_RE.sub("", stripped) or explanation
        elif "fix" in lowered and ":" in stripped and len(fixes) < MAX_FIXES:
            fix = _FIX_PREFIX_RE.sub("", stripped)
            if fix:
                fixes.append(fix)
    if not fixes:
        fixes = list(DEFAULT_FIXES)
    return explanation, fixes


def parse_explanation(
    text: str,
    code: int,
    model: str,
    base_confidence: float,
    confidence_cap: float,
    fallback_confidence: float,
) -> AIExplanation:
    """
    Structured JSON answers are scored with score_confidence(); free text is
    parsed line by line and gets the fixed fallback_confidence. Empty text is
    a MalformedResponseError.
    """
    if not text or not text.strip():
        raise MalformedResponseError("Empty response from provider")

    structured = _parse_json(text)
    if structured is not None:
        explanation, fixes = structured
        confidence = score_confidence(explanation, fixes, base_confidence, confidence_cap)
    else:
        logger.debug(f"Provider answer for code {code} is not JSON, using line parser")
        explanation, fixes = _parse_lines(text, code)
        confidence = fallback_confidence

    return AIExplanation(
        explanation=explanation,
        fixes=fixes,
        confidence=confidence,
        model=model,
        tokens=estimate_tokens(text),
    )
