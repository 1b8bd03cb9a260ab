"""Prompt construction and text cleanup for support classification."""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from typing import Any

from support_triage.core.models import FaqReference

SYSTEM_PROMPT = (
    "You are an expert at analyzing customer support emails. Decide whether each "
    "email is a customer support request, summarise it, and match it against the "
    "existing FAQ questions when one fits. Respond with JSON only."
)

VERDICT_SCHEMA = """{
  "isSupport": boolean,          // true if the sender needs help from us
  "confidence": number,          // between 0.0 and 1.0
  "reason": string,              // brief explanation
  "sentiment": "positive" | "negative" | "neutral",
  "keyPoints": string[],
  "suggestedQuestions": string[],  // FAQ-style questions this email raises
  "matchedFAQ": {"id": string, "question": string} | null,
  "category": "support" | "billing" | "feature_request" | "technical" | "feedback" | "other"
}"""

TRUNCATION_MARKER = "... [truncated]"

_QUOTED_REPLY = re.compile(r"\n{2,}On .+wrote:\n")
_CLEANUP_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"^-{3,}.*?-{3,}", re.MULTILINE), ""),
    (re.compile(r"^>+.*$", re.MULTILINE), ""),
    (re.compile(r"^(From|Sent|To|Subject|Date):.*$", re.MULTILINE), ""),
    (re.compile(r"<[^>]*>"), ""),
)
_ENTITIES = {"&nbsp;": " ", "&amp;": "&", "&lt;": "<", "&gt;": ">", "&quot;": '"', "&#39;": "'"}


def clean_text(text: str) -> str:
    """Strip quoting, reply headers and markup, keeping the newest message."""
    if not text:
        return ""

    # Cut the quoted history first, while the "On ... wrote:" marker is intact
    cleaned = _QUOTED_REPLY.split(text.replace("\r\n", "\n"), maxsplit=1)[0]
    for pattern, replacement in _CLEANUP_RULES:
        cleaned = pattern.sub(replacement, cleaned)
    for entity, char in _ENTITIES.items():
        cleaned = cleaned.replace(entity, char)

    lines = [line.rstrip() for line in cleaned.split("\n")]
    return "\n".join(line for line in lines if line.strip()).strip()


def truncate(text: str, max_chars: int) -> str:
    """Bound prompt size; ``max_chars <= 0`` disables truncation."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def _faq_block(faqs: Sequence[FaqReference]) -> list[dict[str, str]]:
    return [{"id": faq.faq_id, "question": faq.question} for faq in faqs]


def build_single_prompt(
    subject: str,
    content: str,
    faqs: Sequence[FaqReference] = (),
    max_chars: int = 3000,
) -> list[dict[str, str]]:
    """Chat messages asking for one verdict as a JSON object."""
    payload: dict[str, Any] = {
        "subject": subject,
        "content": truncate(clean_text(content), max_chars),
    }
    if faqs:
        payload["existingFaqs"] = _faq_block(faqs)

    instructions = (
        "Analyze this email and return a single JSON object with this structure:\n"
        f"{VERDICT_SCHEMA}\n"
        "Mark as support if it contains questions or issues, requests for help, "
        "payment or billing problems, technical problems or account changes. "
        "Newsletters, marketing, notifications and internal mail are not support."
    )
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": instructions},
        {"role": "user", "content": json.dumps(payload)},
    ]


def build_batch_prompt(
    emails: Sequence[tuple[str, str]],
    faqs: Sequence[FaqReference] = (),
    max_chars: int = 3000,
) -> list[dict[str, str]]:
    """Chat messages asking for one verdict per email, in order, under ``results``."""
    payload: dict[str, Any] = {
        "emails": [
            {
                "position": index + 1,
                "subject": subject,
                "content": truncate(clean_text(content), max_chars),
            }
            for index, (subject, content) in enumerate(emails)
        ]
    }
    if faqs:
        payload["existingFaqs"] = _faq_block(faqs)

    instructions = (
        f"Analyze these {len(emails)} emails. Return a JSON object with a 'results' "
        "array holding one analysis object per email, in the same order, each with "
        f"this structure:\n{VERDICT_SCHEMA}"
    )
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": instructions},
        {"role": "user", "content": json.dumps(payload)},
    ]
