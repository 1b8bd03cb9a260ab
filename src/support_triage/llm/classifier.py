"""LLM-backed support classification."""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import openai
from openai import OpenAI

from support_triage.core.exceptions import InvalidResponseFormat, ProviderError
from support_triage.core.models import ClassificationResult, FaqReference, TokenUsage
from support_triage.llm.parsing import Err, parse_verdicts, to_result
from support_triage.llm.prompts import build_batch_prompt, build_single_prompt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Completion:
    content: str | None
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(frozen=True)
class EmailInput:
    """What the classifier needs to know about one email."""

    subject: str
    content: str
    thread_id: str = ""


class LLMProvider(Protocol):
    def complete(
        self, messages: list[dict[str, str]], *, model: str, temperature: float
    ) -> Completion: ...


class OpenAIProvider:
    """Chat-completions provider using the OpenAI SDK in JSON mode."""

    def __init__(self, api_key: str | None = None, client: Any | None = None) -> None:
        if client is None and not api_key:
            raise ProviderError("OpenAI API key is not configured")
        self._client = client or OpenAI(api_key=api_key)

    def complete(
        self, messages: list[dict[str, str]], *, model: str, temperature: float
    ) -> Completion:
        """Send one chat completion request.

        Raises:
            ProviderError: On any OpenAI SDK error (auth, quota, network).
        """
        try:
            response = self._client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                response_format={"type": "json_object"},
            )
        except openai.APIStatusError as e:
            raise ProviderError(f"OpenAI request failed: {e}", status_code=e.status_code) from e
        except openai.OpenAIError as e:
            raise ProviderError(f"OpenAI request failed: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        usage = response.usage
        return Completion(
            content=content,
            usage=TokenUsage(
                prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
            ),
        )


class LLMClassifier:
    """Classifies emails as support / not-support with one provider call each."""

    def __init__(
        self,
        provider: LLMProvider,
        *,
        model: str = "gpt-4o-mini",
        temperature: float = 0.1,
        max_content_chars: int = 3000,
    ) -> None:
        self._provider = provider
        self._model = model
        self._temperature = temperature
        self._max_content_chars = max_content_chars
        # Shared by concurrent requests; only the running total is kept
        self._usage = TokenUsage()
        self._usage_lock = threading.Lock()

    @property
    def total_usage(self) -> TokenUsage:
        """Tokens used by every call made through this classifier."""
        with self._usage_lock:
            return self._usage

    def _complete(self, messages: list[dict[str, str]], context: str) -> str | None:
        completion = self._provider.complete(
            messages, model=self._model, temperature=self._temperature
        )
        with self._usage_lock:
            self._usage = TokenUsage(
                prompt_tokens=self._usage.prompt_tokens + completion.usage.prompt_tokens,
                completion_tokens=self._usage.completion_tokens
                + completion.usage.completion_tokens,
            )
        logger.info(
            "LLM %s: model=%s prompt_tokens=%d completion_tokens=%d",
            context, self._model,
            completion.usage.prompt_tokens, completion.usage.completion_tokens,
        )
        return completion.content

    def classify(
        self, email: EmailInput, existing_faqs: Sequence[FaqReference] = ()
    ) -> ClassificationResult:
        """Classify a single email.

        Raises:
            EmptyResponse: The provider returned no content.
            InvalidResponseFormat: The content was not a usable verdict.
            ProviderError: The provider call failed.
        """
        messages = build_single_prompt(
            email.subject, email.content, existing_faqs, self._max_content_chars
        )
        content = self._complete(messages, f"classify {email.thread_id or '-'}")

        parsed = parse_verdicts(content, allow_single=True)
        if isinstance(parsed, Err):
            logger.debug("Unparseable LLM content: %.200s", content)
            raise parsed.error
        if not parsed.verdicts:
            raise InvalidResponseFormat("Response contained no verdicts")
        return to_result(parsed.verdicts[0], existing_faqs)

    def classify_batch(
        self, emails: Sequence[EmailInput], existing_faqs: Sequence[FaqReference] = ()
    ) -> list[ClassificationResult | None]:
        """Classify several emails with a single provider call.

        The result list is aligned to ``emails``: extra verdicts are dropped and
        emails the response has no verdict for get None.

        Raises:
            EmptyResponse, InvalidResponseFormat, ProviderError: As for classify().
        """
        if not emails:
            return []

        messages = build_batch_prompt(
            [(e.subject, e.content) for e in emails], existing_faqs, self._max_content_chars
        )
        content = self._complete(messages, f"classify batch of {len(emails)}")

        parsed = parse_verdicts(content)
        if isinstance(parsed, Err):
            logger.debug("Unparseable LLM content: %.200s", content)
            raise parsed.error

        verdicts = parsed.verdicts[: len(emails)]
        if len(verdicts) < len(emails):
            logger.warning(
                "LLM returned %d verdicts for %d emails", len(verdicts), len(emails)
            )
        results: list[ClassificationResult | None] = [
            to_result(v, existing_faqs) for v in verdicts
        ]
        results.extend(None for _ in range(len(emails) - len(results)))
        return results
