"""Pipeline orchestrator: list → fetch → extract → prefilter → cache → classify."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace
from typing import Any

from support_triage.config.settings import SupportTriageSettings
from support_triage.core.batch_fetcher import chunked, fetch_all
from support_triage.core.exceptions import ParseError, ProviderError, StorageError
from support_triage.core.extractor import MailContentExtractor
from support_triage.core.gmail_client import GmailClient
from support_triage.core.models import (
    BatchRefresh,
    ClassificationResult,
    EnrichedEmail,
    ExtractedContent,
    FaqReference,
    IngestionPage,
    NewThreadsCheck,
    RefreshError,
    Source,
)
from support_triage.core.prefilter import is_likely_support
from support_triage.llm.classifier import EmailInput, LLMClassifier
from support_triage.storage.analysis_cache import ClassificationCache
from support_triage.storage.document_store import DocumentStore

logger = logging.getLogger(__name__)

FAQ_COLLECTION = "faqs"
NOT_RELEVANT_COLLECTION = "not_relevant_reasons"


@dataclass(frozen=True)
class _Candidate:
    """One thread reduced to its newest message, before classification."""

    email: EnrichedEmail
    prompt_text: str


class InboxIngestor:
    """Orchestrates one ingestion request end to end.

    Stage 1 - List:       one page of inbox threads from Gmail
    Stage 2 - Fetch:      thread details in paced, concurrent chunks
    Stage 3 - Extract:    headers and body of each thread's newest message
    Stage 4 - Filter:     drop threads marked not relevant, then the keyword prefilter
    Stage 5 - Classify:   fresh cache hits are reused, misses go to the LLM and are cached
    Stage 6 - Aggregate:  newest first, sliced to the page size

    Listing and authentication failures abort the request. Failures for a
    single thread only degrade that thread (missing content, no analysis).
    """

    def __init__(
        self,
        gmail: GmailClient,
        cache: ClassificationCache,
        classifier: LLMClassifier,
        settings: SupportTriageSettings | None = None,
        *,
        store: DocumentStore | None = None,
        extractor: MailContentExtractor | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings or SupportTriageSettings()
        self._gmail = gmail
        self._cache = cache
        self._classifier = classifier
        self._store = store
        self._extractor = extractor or MailContentExtractor()
        self._sleep = sleep

    def run(
        self,
        page_token: str | None = None,
        page_size: int | None = None,
        *,
        force_refresh: bool = False,
    ) -> IngestionPage:
        """Ingest one page of inbox threads.

        Args:
            page_token: Gmail page token from a previous response.
            page_size: Threads to list and maximum emails to return.
            force_refresh: Ignore cached verdicts and let already-known threads
                through the prefilter.

        Returns:
            IngestionPage with enriched emails, newest first.

        Raises:
            AuthenticationError: The Gmail token was rejected.
            RateLimitError: Gmail kept rate limiting the listing.
            ProviderError: Gmail listing failed otherwise.
        """
        size = page_size or self._settings.page_size
        page = self._gmail.list_threads(
            query=self._settings.inbox_query, page_token=page_token, max_results=size
        )
        if not page.threads:
            return IngestionPage(emails=(), has_more=False, next_page_token=None)

        threads = self._fetch_threads([stub.thread_id for stub in page.threads])
        snippets = {stub.thread_id: stub.snippet for stub in page.threads}

        candidates: list[_Candidate] = []
        for thread in threads:
            try:
                candidate = self._to_candidate(thread, snippets.get(thread.get("id", ""), ""))
            except Exception as e:
                logger.error("Failed to process thread %s: %s", thread.get("id", "?"), e)
                continue
            if candidate is not None:
                candidates.append(candidate)

        faqs: list[FaqReference] | None = None
        emails: list[EnrichedEmail] = []
        stats = {"filtered": 0, "cached": 0, "classified": 0, "failed": 0}

        for candidate in candidates:
            thread_id = candidate.email.thread_id
            if self._is_not_relevant(thread_id):
                stats["filtered"] += 1
                continue

            entry = self._cache.get(thread_id)
            known = force_refresh and entry is not None
            if not known and not is_likely_support(candidate.email.subject, candidate.prompt_text):
                stats["filtered"] += 1
                continue

            if (
                not force_refresh
                and entry is not None
                and self._cache.is_fresh(entry, self._cache.now_ms())
            ):
                emails.append(_with_analysis(candidate.email, entry.result, Source.CACHE))
                stats["cached"] += 1
                continue

            if faqs is None:
                faqs = self.load_faqs()
            result = self._classify(candidate, faqs)
            if result is None:
                emails.append(candidate.email)
                stats["failed"] += 1
            else:
                emails.append(_with_analysis(candidate.email, result, Source.FRESH))
                stats["classified"] += 1

        emails.sort(key=lambda e: e.received_at, reverse=True)
        logger.info(
            "Ingested %d threads: %d returned (%d cached, %d classified, %d failed), "
            "%d filtered",
            len(page.threads), len(emails[:size]), stats["cached"], stats["classified"],
            stats["failed"], stats["filtered"],
        )
        return IngestionPage(
            emails=tuple(emails[:size]),
            has_more=page.next_page_token is not None,
            next_page_token=page.next_page_token,
        )

    def refresh_thread(self, thread_id: str) -> EnrichedEmail:
        """Re-fetch one thread and reclassify it, overwriting any cached verdict.

        Raises:
            AuthenticationError, RateLimitError, ProviderError: On Gmail failures.
            LookupError: If the thread has no messages.
        """
        thread = self._gmail.get_thread(thread_id)
        candidate = self._to_candidate(thread, "")
        if candidate is None:
            raise LookupError(f"No messages found in thread {thread_id}")

        result = self._classify(candidate, self.load_faqs())
        if result is None:
            return candidate.email
        return _with_analysis(candidate.email, result, Source.FRESH)

    def refresh_threads(self, thread_ids: Sequence[str]) -> BatchRefresh:
        """Re-fetch and reclassify several threads in paced chunks.

        A thread that cannot be fetched or has no messages is reported in
        ``errors`` instead of aborting the batch. A thread whose classification
        fails is returned without analysis, as in ``refresh_thread``.

        Raises:
            AuthenticationError: The Gmail token was rejected.
        """
        ids = list(dict.fromkeys(thread_ids))
        errors: list[RefreshError] = []
        fetched = fetch_all(
            ids,
            self._settings.refresh_batch_size,
            self._settings.refresh_delay_seconds,
            lambda thread_id: (thread_id, self._gmail.get_thread(thread_id)),
            max_retries=self._settings.fetch_max_retries,
            base_delay_seconds=self._settings.fetch_base_delay_seconds,
            sleep=self._sleep,
            on_error=lambda thread_id, e: errors.append(RefreshError(thread_id, str(e))),
        )
        threads = dict(fetched)

        faqs: list[FaqReference] | None = None
        emails: list[EnrichedEmail] = []
        for thread_id in ids:
            if thread_id not in threads:
                continue
            try:
                candidate = self._to_candidate(threads[thread_id], "")
            except Exception as e:
                logger.error("Failed to process thread %s: %s", thread_id, e)
                errors.append(RefreshError(thread_id, str(e)))
                continue
            if candidate is None:
                errors.append(RefreshError(thread_id, "No messages found in thread"))
                continue

            if faqs is None:
                faqs = self.load_faqs()
            result = self._classify(candidate, faqs)
            if result is None:
                emails.append(candidate.email)
            else:
                emails.append(_with_analysis(candidate.email, result, Source.FRESH))

        position = {thread_id: index for index, thread_id in enumerate(ids)}
        errors.sort(key=lambda error: position[error.thread_id])
        logger.info("Refreshed %d/%d threads, %d errors", len(emails), len(ids), len(errors))
        return BatchRefresh(emails=tuple(emails), errors=tuple(errors))

    def check_new(self, since_ms: int, known_thread_ids: Iterable[str]) -> NewThreadsCheck:
        """List inbox threads received after ``since_ms`` that are not already known.

        Raises:
            AuthenticationError, RateLimitError, ProviderError: On Gmail failures.
        """
        query = f"{self._settings.inbox_query} after:{since_ms // 1000}".strip()
        page = self._gmail.list_threads(
            query=query, max_results=self._settings.check_new_max_results
        )
        known = set(known_thread_ids)
        new_ids = tuple(stub.thread_id for stub in page.threads if stub.thread_id not in known)
        logger.info(
            "Found %d new of %d threads since %d", len(new_ids), len(page.threads), since_ms
        )
        return NewThreadsCheck(
            new_thread_ids=new_ids,
            total_found=len(page.threads),
            has_more=page.next_page_token is not None,
        )

    def analyze(self, emails: Sequence[EmailInput]) -> list[ClassificationResult | None]:
        """Classify caller-supplied emails in batched LLM calls.

        A batch whose call fails yields None for each of its emails, as does an
        email the response has no verdict for. Only real verdicts are cached,
        and only for emails that carry a thread id.
        """
        faqs = self.load_faqs()
        results: list[ClassificationResult | None] = []
        batches = chunked(list(emails), self._settings.analysis_batch_size)

        for index, batch in enumerate(batches):
            try:
                verdicts = self._classifier.classify_batch(batch, faqs)
            except (ParseError, ProviderError) as e:
                logger.error("Analysis batch %d/%d failed: %s", index + 1, len(batches), e)
                results.extend(None for _ in batch)
                continue

            for email, verdict in zip(batch, verdicts):
                if verdict is not None and email.thread_id:
                    self._cache.put(email.thread_id, verdict)
            results.extend(verdicts)

        return results

    def mark_not_relevant(self, thread_id: str, reason: str = "") -> None:
        """Exclude a thread from future ingestion results.

        Raises:
            StorageError: If no store is configured or the write fails.
        """
        if self._store is None:
            raise StorageError("No document store configured")
        self._store.set(
            NOT_RELEVANT_COLLECTION,
            thread_id,
            {"emailId": thread_id, "reason": reason, "timestamp": self._cache.now_ms()},
        )

    def load_faqs(self) -> list[FaqReference]:
        """Existing FAQ questions to match emails against; empty when unavailable."""
        if self._store is None:
            return []
        try:
            documents = self._store.list(FAQ_COLLECTION)
        except StorageError as e:
            logger.warning("Could not load FAQs: %s", e)
            return []
        return [
            FaqReference(faq_id=key, question=str(doc.get("question", "")))
            for key, doc in documents
            if doc.get("question")
        ]

    def _fetch_threads(self, thread_ids: list[str]) -> list[dict[str, Any]]:
        return fetch_all(
            thread_ids,
            self._settings.fetch_batch_size,
            self._settings.fetch_delay_seconds,
            self._gmail.get_thread,
            max_retries=self._settings.fetch_max_retries,
            base_delay_seconds=self._settings.fetch_base_delay_seconds,
            sleep=self._sleep,
        )

    def _to_candidate(self, thread: dict[str, Any], snippet: str) -> _Candidate | None:
        """Reduce a thread to its newest message with headers and content."""
        messages = thread.get("messages") or []
        if not messages:
            logger.warning("Thread has no messages: %s", thread.get("id", "?"))
            return None

        message = max(messages, key=lambda m: int(m.get("internalDate") or 0))
        header = self._extractor.parse_headers(message)
        content = self._extractor.extract(message)
        fallback = message.get("snippet") or snippet
        if content.is_empty and fallback:
            content = ExtractedContent(text=fallback, html="")

        email = EnrichedEmail(
            message_id=message.get("id", ""),
            thread_id=thread.get("id") or message.get("threadId", ""),
            subject=header.subject,
            sender=header.sender,
            received_at=header.date,
            snippet=fallback,
            content=content,
        )
        return _Candidate(email=email, prompt_text=self._extractor.plain_text(content))

    def _classify(
        self, candidate: _Candidate, faqs: Sequence[FaqReference]
    ) -> ClassificationResult | None:
        """Classify and cache one email; None when the LLM step fails."""
        thread_id = candidate.email.thread_id
        try:
            result = self._classifier.classify(
                EmailInput(
                    subject=candidate.email.subject,
                    content=candidate.prompt_text,
                    thread_id=thread_id,
                ),
                faqs,
            )
        except (ParseError, ProviderError) as e:
            logger.error("Classification failed for thread %s: %s", thread_id, e)
            return None

        self._cache.put(thread_id, result)
        return result

    def _is_not_relevant(self, thread_id: str) -> bool:
        if self._store is None:
            return False
        try:
            return self._store.get(NOT_RELEVANT_COLLECTION, thread_id) is not None
        except StorageError as e:
            logger.error("Error checking not relevant status for thread %s: %s", thread_id, e)
            return False


def _with_analysis(
    email: EnrichedEmail, result: ClassificationResult, source: Source
) -> EnrichedEmail:
    return replace(email, analysis=result, source=source)
