"""Tests for the FastAPI surface with a stubbed ingestion pipeline."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest
from conftest import FakeClock
from fastapi.testclient import TestClient

from support_triage.api.app import create_app
from support_triage.config.settings import SupportTriageSettings
from support_triage.core.exceptions import (
    AuthenticationError,
    ProviderError,
    RateLimitError,
    StorageError,
)
from support_triage.core.models import (
    BatchRefresh,
    ClassificationResult,
    EnrichedEmail,
    ExtractedContent,
    IngestionPage,
    NewThreadsCheck,
    RefreshError,
    Source,
)
from support_triage.llm.classifier import EmailInput
from support_triage.pipeline.rate_limiter import RequestRateLimiter

AUTH = {"Authorization": "Bearer tok-alice"}
VERDICT = ClassificationResult(is_support=True, confidence=0.9, reason="login")


def _email() -> EnrichedEmail:
    return EnrichedEmail(
        message_id="m1",
        thread_id="t1",
        subject="Login issue",
        sender="alice@example.com",
        received_at=datetime(2024, 1, 15, 10, 30, tzinfo=UTC),
        snippet="I can't log in",
        content=ExtractedContent(text="I can't log in"),
        analysis=VERDICT,
        source=Source.FRESH,
    )


@pytest.fixture
def ingestor() -> MagicMock:
    mock = MagicMock()
    mock.run.return_value = IngestionPage(emails=(_email(),), has_more=True, next_page_token="p2")
    return mock


@pytest.fixture
def tokens() -> list[str]:
    return []


@pytest.fixture
def client(ingestor: MagicMock, tokens: list[str], clock: FakeClock) -> TestClient:
    def factory(access_token: str) -> MagicMock:
        tokens.append(access_token)
        return ingestor

    app = create_app(
        SupportTriageSettings(_env_file=None, page_size=10),
        ingestor_factory=factory,
        rate_limiter=RequestRateLimiter(30, 5, 30, clock=clock),
    )
    return TestClient(app)


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True}


class TestLifespan:
    """The app closes the document store it opened itself."""

    def test_store_closed_on_shutdown(self) -> None:
        store = MagicMock()
        with (
            patch("support_triage.api.app.open_store", return_value=store),
            patch("support_triage.api.app.IngestorFactory"),
        ):
            app = create_app(SupportTriageSettings(_env_file=None))

        with TestClient(app) as client:
            assert client.get("/health").status_code == 200
            store.close.assert_not_called()

        store.close.assert_called_once()

    def test_store_closed_when_factory_fails(self) -> None:
        store = MagicMock()
        with (
            patch("support_triage.api.app.open_store", return_value=store),
            patch("support_triage.api.app.IngestorFactory", side_effect=ProviderError("no key")),
            pytest.raises(ProviderError),
        ):
            create_app(SupportTriageSettings(_env_file=None))

        store.close.assert_called_once()

    def test_injected_factory_leaves_nothing_to_close(self, ingestor: MagicMock) -> None:
        with patch("support_triage.api.app.open_store") as mock_open:
            app = create_app(
                SupportTriageSettings(_env_file=None), ingestor_factory=lambda token: ingestor
            )
            with TestClient(app):
                pass

        mock_open.assert_not_called()
        assert app.state.store is None


class TestInbox:
    def test_success(self, client: TestClient, ingestor: MagicMock, tokens: list[str]) -> None:
        response = client.get("/api/emails/inbox", headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["hasMore"] is True
        assert body["nextPageToken"] == "p2"
        assert body["emails"][0]["threadId"] == "t1"
        assert body["emails"][0]["analysis"]["isSupport"] is True
        assert body["emails"][0]["source"] == "fresh"
        assert body["emails"][0]["receivedAt"] == "2024-01-15T10:30:00+00:00"
        assert tokens == ["tok-alice"]
        ingestor.run.assert_called_once_with(page_token=None, page_size=10, force_refresh=False)

    def test_query_parameters(self, client: TestClient, ingestor: MagicMock) -> None:
        client.get(
            "/api/emails/inbox",
            params={"pageToken": "p2", "pageSize": "3", "forceRefresh": "true"},
            headers=AUTH,
        )
        ingestor.run.assert_called_once_with(page_token="p2", page_size=3, force_refresh=True)

    def test_header_parameters(self, client: TestClient, ingestor: MagicMock) -> None:
        client.get(
            "/api/emails/inbox",
            headers={**AUTH, "X-Page-Token": "p3", "X-Force-Refresh": "1"},
        )
        ingestor.run.assert_called_once_with(page_token="p3", page_size=10, force_refresh=True)

    def test_missing_token(self, client: TestClient, ingestor: MagicMock) -> None:
        response = client.get("/api/emails/inbox")

        assert response.status_code == 401
        assert response.json()["error"] == "No access token provided"
        ingestor.run.assert_not_called()

    def test_malformed_authorization(self, client: TestClient) -> None:
        response = client.get("/api/emails/inbox", headers={"Authorization": "Basic abc"})
        assert response.status_code == 401

    def test_invalid_page_size(self, client: TestClient) -> None:
        response = client.get("/api/emails/inbox", params={"pageSize": "0"}, headers=AUTH)
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"

    def test_repeat_request_rate_limited(self, client: TestClient, clock: FakeClock) -> None:
        client.get("/api/emails/inbox", headers=AUTH)
        clock.advance(10)

        response = client.get("/api/emails/inbox", headers=AUTH)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "20"
        assert response.json()["retryAfter"] == pytest.approx(20.0)

    def test_other_caller_not_limited(self, client: TestClient) -> None:
        client.get("/api/emails/inbox", headers=AUTH)
        response = client.get("/api/emails/inbox", headers={"Authorization": "Bearer tok-bob"})
        assert response.status_code == 200

    def test_expired_gmail_token(self, client: TestClient, ingestor: MagicMock) -> None:
        ingestor.run.side_effect = AuthenticationError("Gmail rejected the access token")

        response = client.get("/api/emails/inbox", headers=AUTH)

        assert response.status_code == 401
        assert response.json()["details"] == "Re-authenticate with Google and retry"

    def test_gmail_rate_limit_default_retry_after(
        self, client: TestClient, ingestor: MagicMock
    ) -> None:
        ingestor.run.side_effect = RateLimitError("Rate limited during list threads")

        response = client.get("/api/emails/inbox", headers=AUTH)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"

    def test_provider_error(self, client: TestClient, ingestor: MagicMock) -> None:
        ingestor.run.side_effect = ProviderError("Failed to list threads", status_code=500)

        response = client.get("/api/emails/inbox", headers=AUTH)

        assert response.status_code == 502
        assert response.json() == {
            "error": "Upstream provider error",
            "details": "Failed to list threads",
        }

    def test_storage_error(self, client: TestClient, ingestor: MagicMock) -> None:
        ingestor.run.side_effect = StorageError("disk full")

        response = client.get("/api/emails/inbox", headers=AUTH)

        assert response.status_code == 500


class TestRefreshSingle:
    def test_success(self, client: TestClient, ingestor: MagicMock) -> None:
        ingestor.refresh_thread.return_value = _email()

        response = client.post(
            "/api/emails/refresh-single", json={"threadId": "t1"}, headers=AUTH
        )

        assert response.status_code == 200
        assert response.json()["id"] == "m1"
        ingestor.refresh_thread.assert_called_once_with("t1")

    def test_not_found(self, client: TestClient, ingestor: MagicMock) -> None:
        ingestor.refresh_thread.side_effect = LookupError("No messages found in thread t1")

        response = client.post(
            "/api/emails/refresh-single", json={"threadId": "t1"}, headers=AUTH
        )

        assert response.status_code == 404

    def test_missing_thread_id(self, client: TestClient) -> None:
        response = client.post("/api/emails/refresh-single", json={}, headers=AUTH)
        assert response.status_code == 400

    def test_requires_token(self, client: TestClient) -> None:
        response = client.post("/api/emails/refresh-single", json={"threadId": "t1"})
        assert response.status_code == 401

    def test_not_rate_limited(self, client: TestClient) -> None:
        for _ in range(3):
            response = client.post(
                "/api/emails/refresh-single", json={"threadId": "t1"}, headers=AUTH
            )
            assert response.status_code != 429


class TestRefreshBatch:
    def test_success(self, client: TestClient, ingestor: MagicMock) -> None:
        ingestor.refresh_threads.return_value = BatchRefresh(
            emails=(_email(),), errors=(RefreshError("t2", "No messages found in thread"),)
        )

        response = client.post(
            "/api/emails/refresh-batch", json={"threadIds": ["t1", "t2"]}, headers=AUTH
        )

        assert response.status_code == 200
        body = response.json()
        assert body["successCount"] == 1
        assert body["errorCount"] == 1
        assert body["refreshedEmails"][0]["threadId"] == "t1"
        assert body["errors"] == [{"threadId": "t2", "error": "No messages found in thread"}]
        ingestor.refresh_threads.assert_called_once_with(["t1", "t2"])

    def test_empty_array_rejected(self, client: TestClient, ingestor: MagicMock) -> None:
        response = client.post("/api/emails/refresh-batch", json={"threadIds": []}, headers=AUTH)

        assert response.status_code == 400
        ingestor.refresh_threads.assert_not_called()

    def test_not_an_array_rejected(self, client: TestClient) -> None:
        response = client.post(
            "/api/emails/refresh-batch", json={"threadIds": "t1"}, headers=AUTH
        )
        assert response.status_code == 400

    def test_expired_gmail_token(self, client: TestClient, ingestor: MagicMock) -> None:
        ingestor.refresh_threads.side_effect = AuthenticationError("expired")

        response = client.post(
            "/api/emails/refresh-batch", json={"threadIds": ["t1"]}, headers=AUTH
        )

        assert response.status_code == 401


class TestCheckNew:
    def test_success(self, client: TestClient, ingestor: MagicMock) -> None:
        ingestor.check_new.return_value = NewThreadsCheck(
            new_thread_ids=("t3",), total_found=2, has_more=False
        )

        response = client.post(
            "/api/emails/check-new",
            json={"lastEmailTimestamp": 1705314600000, "existingThreadIds": ["t1"]},
            headers=AUTH,
        )

        assert response.status_code == 200
        assert response.json() == {
            "newEmailsCount": 1,
            "totalFound": 2,
            "hasMore": False,
            "newThreadIds": ["t3"],
        }
        ingestor.check_new.assert_called_once_with(1705314600000, ["t1"])

    @pytest.mark.parametrize(
        "body",
        [
            {"existingThreadIds": []},
            {"lastEmailTimestamp": 1705314600000},
            {"lastEmailTimestamp": 0, "existingThreadIds": []},
        ],
    )
    def test_missing_fields_rejected(self, client: TestClient, body: dict) -> None:
        response = client.post("/api/emails/check-new", json=body, headers=AUTH)
        assert response.status_code == 400


class TestAnalyze:
    def test_success(self, client: TestClient, ingestor: MagicMock) -> None:
        ingestor.analyze.return_value = [VERDICT, None]

        response = client.post(
            "/api/emails/analyze",
            json={
                "emails": [
                    {"threadId": "t1", "subject": "Help", "content": "Broken"},
                    {"subject": "Hi", "content": "Thanks"},
                ]
            },
            headers=AUTH,
        )

        assert response.status_code == 200
        results = response.json()["results"]
        assert results[0]["isSupport"] is True
        assert results[1] is None
        ingestor.analyze.assert_called_once_with(
            [
                EmailInput(subject="Help", content="Broken", thread_id="t1"),
                EmailInput(subject="Hi", content="Thanks", thread_id=""),
            ]
        )

    def test_empty_list_rejected(self, client: TestClient) -> None:
        response = client.post("/api/emails/analyze", json={"emails": []}, headers=AUTH)
        assert response.status_code == 400


class TestNotRelevant:
    def test_marks_thread(self, client: TestClient, ingestor: MagicMock) -> None:
        response = client.post(
            "/api/emails/not-relevant",
            json={"threadId": "t1", "reason": "vendor"},
            headers=AUTH,
        )

        assert response.status_code == 200
        assert response.json() == {"ok": True, "threadId": "t1"}
        ingestor.mark_not_relevant.assert_called_once_with("t1", "vendor")
