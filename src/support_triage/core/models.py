"""Frozen dataclasses for the Support Triage domain model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"

    @classmethod
    def coerce(cls, value: Any) -> Sentiment:
        """Map a free-form LLM value onto a Sentiment, defaulting to neutral."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.NEUTRAL


class Source(str, Enum):
    CACHE = "cache"
    FRESH = "fresh"


@dataclass(frozen=True)
class ThreadStub:
    """Lightweight thread reference from the Gmail threads.list API."""

    thread_id: str
    snippet: str = ""


@dataclass(frozen=True)
class ThreadPage:
    """One page of a thread listing."""

    threads: tuple[ThreadStub, ...] = field(default_factory=tuple)
    next_page_token: str | None = None
    result_size_estimate: int = 0


@dataclass(frozen=True)
class EmailHeader:
    """Parsed email headers."""

    subject: str
    sender: str
    to: str
    date: datetime
    cc: str = ""
    message_id_header: str = ""


@dataclass(frozen=True)
class ExtractedContent:
    """Decoded body content. Either field may be empty when nothing decodes."""

    text: str | None = None
    html: str | None = None

    @property
    def content_type(self) -> str:
        return "text/html" if self.html else "text/plain"

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.html

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "html": self.html, "contentType": self.content_type}


@dataclass(frozen=True)
class FaqReference:
    """An existing FAQ an email was matched against."""

    faq_id: str
    question: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"id": self.faq_id, "question": self.question}


@dataclass(frozen=True)
class ClassificationResult:
    """A single verdict for one email."""

    is_support: bool
    confidence: float
    reason: str = ""
    sentiment: Sentiment = Sentiment.NEUTRAL
    key_points: tuple[str, ...] = field(default_factory=tuple)
    suggested_questions: tuple[str, ...] = field(default_factory=tuple)
    matched_faq: FaqReference | None = None
    category: str = "other"

    def to_dict(self) -> dict[str, Any]:
        return {
            "isSupport": self.is_support,
            "confidence": self.confidence,
            "reason": self.reason,
            "sentiment": self.sentiment.value,
            "keyPoints": list(self.key_points),
            "suggestedQuestions": list(self.suggested_questions),
            "matchedFAQ": self.matched_faq.to_dict() if self.matched_faq else None,
            "category": self.category,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClassificationResult:
        """Rebuild a result from its persisted shape.

        Raises:
            KeyError, TypeError, ValueError: If the document is malformed.
        """
        faq = data.get("matchedFAQ")
        return cls(
            is_support=bool(data["isSupport"]),
            confidence=float(data["confidence"]),
            reason=str(data.get("reason", "")),
            sentiment=Sentiment.coerce(data.get("sentiment", "neutral")),
            key_points=tuple(data.get("keyPoints") or ()),
            suggested_questions=tuple(data.get("suggestedQuestions") or ()),
            matched_faq=(
                FaqReference(faq_id=str(faq["id"]), question=str(faq.get("question", "")))
                if faq
                else None
            ),
            category=str(data.get("category", "other")),
        )


@dataclass(frozen=True)
class CacheEntry:
    """A cached verdict for one thread."""

    key: str
    result: ClassificationResult
    timestamp_ms: int
    ttl_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "threadId": self.key,
            "analysis": self.result.to_dict(),
            "timestamp": self.timestamp_ms,
            "ttlMs": self.ttl_ms,
        }


@dataclass(frozen=True)
class EnrichedEmail:
    """Message metadata, content and verdict as returned to callers."""

    message_id: str
    thread_id: str
    subject: str
    sender: str
    received_at: datetime
    snippet: str = ""
    content: ExtractedContent = field(default_factory=ExtractedContent)
    analysis: ClassificationResult | None = None
    source: Source | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.message_id,
            "threadId": self.thread_id,
            "subject": self.subject,
            "sender": self.sender,
            "receivedAt": self.received_at.isoformat(),
            "snippet": self.snippet,
            "content": self.content.to_dict(),
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "source": self.source.value if self.source else None,
        }


@dataclass(frozen=True)
class IngestionPage:
    """Result of one ingestion request."""

    emails: tuple[EnrichedEmail, ...] = field(default_factory=tuple)
    has_more: bool = False
    next_page_token: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "emails": [email.to_dict() for email in self.emails],
            "hasMore": self.has_more,
            "nextPageToken": self.next_page_token,
        }


@dataclass(frozen=True)
class RefreshError:
    """A thread that could not be refreshed, and why."""

    thread_id: str
    error: str

    def to_dict(self) -> dict[str, str]:
        return {"threadId": self.thread_id, "error": self.error}


@dataclass(frozen=True)
class BatchRefresh:
    """Result of refreshing several threads at once."""

    emails: tuple[EnrichedEmail, ...] = field(default_factory=tuple)
    errors: tuple[RefreshError, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "refreshedEmails": [email.to_dict() for email in self.emails],
            "successCount": len(self.emails),
            "errorCount": len(self.errors),
            "errors": [error.to_dict() for error in self.errors],
        }


@dataclass(frozen=True)
class NewThreadsCheck:
    """Threads received since a point in time that the caller has not seen."""

    new_thread_ids: tuple[str, ...] = field(default_factory=tuple)
    total_found: int = 0
    has_more: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "newEmailsCount": len(self.new_thread_ids),
            "totalFound": self.total_found,
            "hasMore": self.has_more,
            "newThreadIds": list(self.new_thread_ids),
        }


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported by the LLM provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens
