"""Wiring of concrete components from settings."""

from __future__ import annotations

import logging

from support_triage.config.settings import SupportTriageSettings
from support_triage.core.auth import build_gmail_service, credentials_from_token, http_factory
from support_triage.core.gmail_client import GmailClient
from support_triage.llm.classifier import LLMClassifier, OpenAIProvider
from support_triage.pipeline.ingestor import InboxIngestor
from support_triage.storage.analysis_cache import ClassificationCache
from support_triage.storage.document_store import DocumentStore, SQLiteDocumentStore

logger = logging.getLogger(__name__)


def open_store(settings: SupportTriageSettings) -> DocumentStore:
    """Open the configured document store backend."""
    if settings.store_backend == "firestore":
        # Imported lazily so SQLite deployments don't need GCP credentials
        from support_triage.storage.firestore_store import FirestoreDocumentStore

        logger.info("Using Firestore document store (project=%s)", settings.firestore_project)
        return FirestoreDocumentStore(project=settings.firestore_project)

    settings.ensure_directories()
    store = SQLiteDocumentStore(settings.database_path)
    store.connect()
    logger.info("Using SQLite document store at %s", settings.database_path)
    return store


class IngestorFactory:
    """Builds an InboxIngestor per access token around shared store and LLM client."""

    def __init__(
        self,
        settings: SupportTriageSettings,
        store: DocumentStore,
        classifier: LLMClassifier | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._cache = ClassificationCache(store, ttl_days=settings.cache_days)
        if classifier is None:
            provider = OpenAIProvider(api_key=settings.openai_api_key)
            classifier = LLMClassifier(
                provider,
                model=settings.openai_model,
                temperature=settings.llm_temperature,
                max_content_chars=settings.max_content_chars,
            )
        self._classifier = classifier

    def __call__(self, access_token: str) -> InboxIngestor:
        creds = credentials_from_token(access_token)
        gmail = GmailClient(
            build_gmail_service(creds),
            http_factory=http_factory(creds),
            max_retries=self._settings.fetch_max_retries,
            initial_backoff_seconds=self._settings.fetch_base_delay_seconds,
        )
        return InboxIngestor(
            gmail, self._cache, self._classifier, self._settings, store=self._store
        )
