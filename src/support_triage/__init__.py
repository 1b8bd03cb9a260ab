"""Support Triage - Classify Gmail threads as customer support with an LLM and cache the verdicts."""

from support_triage.core.models import (
    CacheEntry,
    ClassificationResult,
    EmailHeader,
    EnrichedEmail,
    ExtractedContent,
    FaqReference,
    IngestionPage,
    Sentiment,
    Source,
    ThreadPage,
    ThreadStub,
)
from support_triage.pipeline.ingestor import InboxIngestor

__all__ = [
    "CacheEntry",
    "ClassificationResult",
    "EmailHeader",
    "EnrichedEmail",
    "ExtractedContent",
    "FaqReference",
    "InboxIngestor",
    "IngestionPage",
    "Sentiment",
    "Source",
    "ThreadPage",
    "ThreadStub",
]
