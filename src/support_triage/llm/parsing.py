"""Turn raw LLM output into verdicts.

The provider is asked for JSON, but models drift between a bare array,
``{"results": [...]}``, ``{"analyses": [...]}`` and ``{"threads": [...]}``.
``parse_verdicts`` folds all of these into one ``Ok`` shape and reports
anything else as an ``Err`` carrying the ParseError to raise.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from support_triage.core.exceptions import (
    EmptyResponse,
    InvalidResponseFormat,
    ParseError,
)
from support_triage.core.models import ClassificationResult, FaqReference, Sentiment

logger = logging.getLogger(__name__)

LIST_KEYS = ("results", "analyses", "threads")
DEFAULT_CONFIDENCE = 0.5


@dataclass(frozen=True)
class Ok:
    verdicts: tuple[dict[str, Any], ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Err:
    error: ParseError


ParseResult = Ok | Err


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()


def parse_verdicts(content: str | None, *, allow_single: bool = False) -> ParseResult:
    """Parse LLM content into a tuple of raw verdict dicts.

    Args:
        content: Raw message content from the provider.
        allow_single: Also accept a bare verdict object (single-email prompts).

    Returns:
        Ok with the verdict dicts, or Err with EmptyResponse/InvalidResponseFormat.
    """
    if content is None or not content.strip():
        return Err(EmptyResponse("Empty response from LLM provider"))

    try:
        parsed = json.loads(_strip_code_fence(content))
    except json.JSONDecodeError as e:
        return Err(InvalidResponseFormat(f"Response is not valid JSON: {e}"))

    items: Any = None
    if isinstance(parsed, list):
        items = parsed
    elif isinstance(parsed, dict):
        for key in LIST_KEYS:
            if isinstance(parsed.get(key), list):
                items = parsed[key]
                break
        if items is None and allow_single and parsed:
            items = [parsed]

    if items is None:
        return Err(InvalidResponseFormat(
            f"Expected an array or an object with one of {LIST_KEYS}, "
            f"got {type(parsed).__name__}"
        ))
    if not all(isinstance(item, dict) for item in items):
        return Err(InvalidResponseFormat("Verdict array contains non-object entries"))

    return Ok(tuple(items))


def _clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if confidence != confidence:  # NaN
        return DEFAULT_CONFIDENCE
    return min(max(confidence, 0.0), 1.0)


def _str_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,) if value else ()
    if isinstance(value, Sequence):
        return tuple(str(v) for v in value if v is not None and str(v))
    return ()


def _matched_faq(value: Any, faqs: Sequence[FaqReference]) -> FaqReference | None:
    by_id = {faq.faq_id: faq for faq in faqs}
    if isinstance(value, Mapping):
        faq_id = value.get("id")
        if faq_id is None:
            return None
        known = by_id.get(str(faq_id))
        return known or FaqReference(faq_id=str(faq_id), question=str(value.get("question", "")))
    if isinstance(value, str) and value:
        return by_id.get(value) or FaqReference(faq_id=value)
    return None


def to_result(
    verdict: Mapping[str, Any], faqs: Sequence[FaqReference] = ()
) -> ClassificationResult:
    """Normalize one raw verdict, defaulting any missing field.

    A missing ``isSupport`` is treated as not-support (fail-closed).
    """
    is_support = verdict.get("isSupport", verdict.get("isCustomer", False))
    return ClassificationResult(
        is_support=is_support is True or str(is_support).lower() == "true",
        confidence=_clamp_confidence(verdict.get("confidence")),
        reason=str(verdict.get("reason") or ""),
        sentiment=Sentiment.coerce(verdict.get("sentiment") or "neutral"),
        key_points=_str_tuple(verdict.get("keyPoints")),
        suggested_questions=_str_tuple(verdict.get("suggestedQuestions")),
        matched_faq=_matched_faq(verdict.get("matchedFAQ"), faqs),
        category=str(verdict.get("category") or "other").lower(),
    )
