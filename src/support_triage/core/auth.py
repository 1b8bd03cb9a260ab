"""Gmail API service construction from a caller-supplied OAuth access token."""

from __future__ import annotations

import logging
from collections.abc import Callable

import google_auth_httplib2
import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import Resource, build

from support_triage.core.exceptions import AuthenticationError

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]


def parse_bearer_token(authorization: str | None) -> str:
    """Extract the token from an ``Authorization: Bearer <token>`` header value.

    Raises:
        AuthenticationError: If the header is missing or not a bearer token.
    """
    if not authorization:
        raise AuthenticationError("No access token provided")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Authorization header must be 'Bearer <token>'")
    return token.strip()


def credentials_from_token(access_token: str) -> Credentials:
    """Wrap a Gmail access token issued to the browser client.

    The token is not refreshed server-side; an expired token surfaces as
    AuthenticationError and the caller must re-authenticate.
    """
    if not access_token:
        raise AuthenticationError("No access token provided")
    return Credentials(token=access_token, scopes=SCOPES)


def build_gmail_service(creds: Credentials) -> Resource:
    """Build a Gmail API service resource."""
    return build("gmail", "v1", credentials=creds, cache_discovery=False)


def http_factory(creds: Credentials) -> Callable[[], google_auth_httplib2.AuthorizedHttp]:
    """Return a factory of per-call authorized transports.

    httplib2.Http is not thread-safe, so each concurrent request gets its own.
    """

    def _new_http() -> google_auth_httplib2.AuthorizedHttp:
        return google_auth_httplib2.AuthorizedHttp(creds, http=httplib2.Http())

    return _new_http
