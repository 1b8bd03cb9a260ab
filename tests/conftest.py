"""Shared fixtures for Support Triage tests."""

from __future__ import annotations

import base64
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from support_triage.core.models import ClassificationResult, FaqReference, Sentiment
from support_triage.storage.document_store import SQLiteDocumentStore


def b64url(text: str) -> str:
    """Encode text the way the Gmail API does (base64url, no padding)."""
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def text_part(body: str, mime_type: str = "text/plain") -> dict[str, Any]:
    return {"mimeType": mime_type, "body": {"data": b64url(body), "size": len(body)}}


def make_message(
    message_id: str,
    *,
    thread_id: str = "",
    subject: str = "Hello",
    sender: str = "alice@example.com",
    date: str = "Mon, 15 Jan 2024 10:30:00 +0000",
    body: str | None = "Hi there",
    parts: list[dict[str, Any]] | None = None,
    internal_date: int = 1705314600000,
    snippet: str = "",
) -> dict[str, Any]:
    """Build a Gmail API message dict (format=full)."""
    payload: dict[str, Any] = {
        "mimeType": "multipart/alternative" if parts else "text/plain",
        "headers": [
            {"name": "Subject", "value": subject},
            {"name": "From", "value": sender},
            {"name": "To", "value": "support@example.com"},
            {"name": "Date", "value": date},
        ],
        "body": {"size": 0},
    }
    if parts:
        payload["parts"] = parts
    elif body is not None:
        payload["body"] = {"data": b64url(body), "size": len(body)}

    return {
        "id": message_id,
        "threadId": thread_id or f"t_{message_id}",
        "labelIds": ["INBOX"],
        "snippet": snippet or (body or "")[:100],
        "internalDate": str(internal_date),
        "payload": payload,
    }


def make_thread(thread_id: str, *messages: dict[str, Any]) -> dict[str, Any]:
    """Build a Gmail API thread dict."""
    return {"id": thread_id, "messages": list(messages)}


class FakeClock:
    """Settable clock returning seconds since the epoch."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Temporary database path for tests."""
    return tmp_path / "test.db"


@pytest.fixture
def store(tmp_db_path: Path) -> Iterator[SQLiteDocumentStore]:
    """Connected SQLite document store on a temp file."""
    with SQLiteDocumentStore(tmp_db_path) as s:
        yield s


@pytest.fixture
def support_result() -> ClassificationResult:
    """A typical support verdict."""
    return ClassificationResult(
        is_support=True,
        confidence=0.9,
        reason="Customer cannot log in",
        sentiment=Sentiment.NEGATIVE,
        key_points=("login fails", "password reset did not help"),
        suggested_questions=("How do I reset my password?",),
        matched_faq=FaqReference(faq_id="faq_1", question="How do I reset my password?"),
        category="technical",
    )
