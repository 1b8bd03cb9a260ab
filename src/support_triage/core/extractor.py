"""Gmail message content extraction: MIME tree walking, base64url decoding, headers."""

from __future__ import annotations

import base64
import binascii
import email
import logging
from datetime import UTC, datetime
from email.message import Message
from email.utils import parsedate_to_datetime
from typing import Any

import trafilatura

from support_triage.core.exceptions import ExtractionError
from support_triage.core.models import EmailHeader, ExtractedContent

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

_HEADER_NAMES = ("subject", "from", "to", "date", "cc", "message-id")


def mime_priority(mime_type: str) -> int:
    """Sort key for sibling MIME parts: text/plain, text/html, other text/*, the rest."""
    mime_type = (mime_type or "").lower()
    if mime_type == "text/plain":
        return 0
    if mime_type == "text/html":
        return 1
    if mime_type.startswith("text/"):
        return 2
    return 3


def decode_body(data: str) -> str:
    """Decode base64url-encoded body data.

    Raises:
        ExtractionError: If the data is not valid base64.
    """
    # Gmail uses base64url encoding (RFC 4648 §5) and strips the padding
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError) as e:
        raise ExtractionError(f"Invalid base64 body: {e}") from e


class MailContentExtractor:
    """Turns raw Gmail API message dicts into ExtractedContent and EmailHeader."""

    def extract(self, message: dict[str, Any]) -> ExtractedContent:
        """Extract text and HTML bodies from a message.

        Handles ``format=full`` payloads (nested ``parts`` of any depth),
        ``format=raw`` messages and payload-less ``format=metadata`` messages.
        Never raises: undecodable parts contribute empty strings.

        Args:
            message: Message dict from the Gmail API.

        Returns:
            ExtractedContent, with ``text=""`` and ``html=""`` when nothing decodes.
        """
        texts: list[str] = []
        htmls: list[str] = []

        payload = message.get("payload")
        if payload:
            self._walk_part(payload, texts, htmls)
        elif message.get("raw"):
            self._walk_raw(message["raw"], texts, htmls)

        return ExtractedContent(
            text="\n".join(t for t in texts if t),
            html="".join(htmls),
        )

    def _walk_part(self, part: dict[str, Any], texts: list[str], htmls: list[str]) -> None:
        """Recursively collect decoded text/html from a Gmail MIME part."""
        sub_parts = part.get("parts")
        if sub_parts:
            for sub_part in sorted(sub_parts, key=lambda p: mime_priority(p.get("mimeType", ""))):
                # Skip attachments
                if sub_part.get("filename"):
                    continue
                self._walk_part(sub_part, texts, htmls)
            return

        data = (part.get("body") or {}).get("data")
        if not data:
            return

        mime_type = (part.get("mimeType") or "text/plain").lower()
        if not mime_type.startswith("text/"):
            return

        try:
            decoded = decode_body(data)
        except ExtractionError as e:
            logger.debug("Skipping undecodable %s part: %s", mime_type, e)
            return

        if mime_type == "text/html":
            htmls.append(decoded)
        else:
            texts.append(decoded)

    def _walk_raw(self, raw: str, texts: list[str], htmls: list[str]) -> None:
        """Parse an RFC 822 message from ``format=raw`` and collect its bodies."""
        try:
            padded = raw + "=" * (-len(raw) % 4)
            parsed = email.message_from_bytes(base64.urlsafe_b64decode(padded))
        except (binascii.Error, ValueError) as e:
            logger.debug("Skipping undecodable raw message: %s", e)
            return
        self._walk_mime(parsed, texts, htmls)

    def _walk_mime(self, part: Message, texts: list[str], htmls: list[str]) -> None:
        if part.is_multipart():
            children = sorted(part.get_payload(), key=lambda p: mime_priority(p.get_content_type()))
            for child in children:
                if child.get_filename():
                    continue
                self._walk_mime(child, texts, htmls)
            return

        mime_type = part.get_content_type()
        if not mime_type.startswith("text/"):
            return

        payload = part.get_payload(decode=True)
        if not payload:
            return
        charset = part.get_content_charset() or "utf-8"
        try:
            decoded = payload.decode(charset, errors="replace")
        except LookupError:
            decoded = payload.decode("utf-8", errors="replace")

        if mime_type == "text/html":
            htmls.append(decoded)
        else:
            texts.append(decoded)

    def parse_headers(self, message: dict[str, Any]) -> EmailHeader:
        """Extract standard headers with case-insensitive lookup."""
        headers: dict[str, str] = {}
        for h in (message.get("payload") or {}).get("headers", []):
            name = h.get("name", "").lower()
            if name in _HEADER_NAMES and name not in headers:
                headers[name] = h.get("value", "")

        return EmailHeader(
            subject=headers.get("subject") or "(no subject)",
            sender=headers.get("from") or "Unknown Sender",
            to=headers.get("to", ""),
            date=self._parse_date(headers.get("date", ""), message.get("internalDate")),
            cc=headers.get("cc", ""),
            message_id_header=headers.get("message-id", ""),
        )

    @staticmethod
    def _parse_date(date_str: str, internal_date: str | None = None) -> datetime:
        """Parse an RFC 2822 date, falling back to Gmail's internalDate, then epoch.

        Always returns a timezone-aware datetime so results sort reliably.
        """
        if date_str:
            try:
                parsed = parsedate_to_datetime(date_str)
                return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
            except (TypeError, ValueError):
                logger.warning("Failed to parse date: %s", date_str)

        if internal_date:
            try:
                return datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC)
            except (TypeError, ValueError, OverflowError):
                logger.warning("Failed to parse internalDate: %s", internal_date)

        return EPOCH

    @staticmethod
    def plain_text(content: ExtractedContent) -> str:
        """Best plain-text rendition of the content, for prompting and prefiltering."""
        if content.text and content.text.strip():
            return content.text

        if content.html:
            try:
                result = trafilatura.extract(
                    content.html,
                    output_format="txt",
                    favor_recall=True,
                    include_tables=True,
                )
            except Exception as e:
                logger.warning("Trafilatura extraction failed: %s", e)
                result = None
            if result:
                return result

        return ""
