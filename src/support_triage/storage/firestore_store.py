"""Firestore backend for the document store."""

from __future__ import annotations

import logging
from typing import Any

from google.api_core import exceptions as gcp_exceptions
from google.cloud import firestore

from support_triage.core.exceptions import StorageError

logger = logging.getLogger(__name__)


class FirestoreDocumentStore:
    """Maps collections and keys straight onto Firestore collections and document ids."""

    def __init__(self, client: firestore.Client | None = None, project: str | None = None) -> None:
        self._client = client or firestore.Client(project=project)

    def get(self, collection: str, key: str) -> dict[str, Any] | None:
        try:
            snapshot = self._client.collection(collection).document(key).get()
        except gcp_exceptions.GoogleAPICallError as e:
            raise StorageError(f"Failed to read {collection}/{key}: {e}") from e
        return snapshot.to_dict() if snapshot.exists else None

    def set(
        self, collection: str, key: str, document: dict[str, Any], *, merge: bool = False
    ) -> None:
        try:
            self._client.collection(collection).document(key).set(document, merge=merge)
        except gcp_exceptions.GoogleAPICallError as e:
            raise StorageError(f"Failed to write {collection}/{key}: {e}") from e

    def list(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        try:
            return [
                (snapshot.id, snapshot.to_dict() or {})
                for snapshot in self._client.collection(collection).stream()
            ]
        except gcp_exceptions.GoogleAPICallError as e:
            raise StorageError(f"Failed to list {collection}: {e}") from e

    def close(self) -> None:
        self._client.close()
