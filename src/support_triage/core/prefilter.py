"""Keyword heuristic that gates which emails are worth an LLM call."""

from __future__ import annotations

SUPPORT_KEYWORDS: tuple[str, ...] = (
    "help",
    "support",
    "issue",
    "problem",
    "error",
    "question",
    "not working",
    "broken",
    "failed",
    "stuck",
    "can't",
    "cannot",
    "how to",
    "how do i",
    "assistance",
    "bug",
    "feature request",
)


def is_likely_support(subject: str, body: str) -> bool:
    """Return True if any support keyword appears in the subject or body.

    This is a cost gate, not a classifier: support emails that use none of
    the keywords are accepted false negatives.
    """
    lower_subject = (subject or "").lower()
    lower_body = (body or "").lower()
    return any(
        keyword in lower_subject or keyword in lower_body for keyword in SUPPORT_KEYWORDS
    )
