"""HTTP surface: FastAPI routes over the ingestion pipeline."""

from __future__ import annotations

import hashlib
import logging
import math
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from support_triage.config.settings import SupportTriageSettings
from support_triage.core.auth import parse_bearer_token
from support_triage.core.exceptions import (
    AuthenticationError,
    ProviderError,
    RateLimitError,
    StorageError,
)
from support_triage.llm.classifier import EmailInput
from support_triage.pipeline.factory import IngestorFactory, open_store
from support_triage.pipeline.ingestor import InboxIngestor
from support_triage.pipeline.rate_limiter import RequestRateLimiter

logger = logging.getLogger(__name__)

IngestorBuilder = Callable[[str], InboxIngestor]


class RefreshSingleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    thread_id: str = Field(alias="threadId", min_length=1)


class RefreshBatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    thread_ids: list[str] = Field(alias="threadIds", min_length=1)


class CheckNewRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    last_email_timestamp: int = Field(alias="lastEmailTimestamp", gt=0)
    existing_thread_ids: list[str] = Field(alias="existingThreadIds")


class AnalyzeEmail(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    thread_id: str = Field(default="", alias="threadId")
    subject: str = ""
    content: str = ""


class AnalyzeRequest(BaseModel):
    emails: list[AnalyzeEmail] = Field(min_length=1)


class NotRelevantRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    thread_id: str = Field(alias="threadId", min_length=1)
    reason: str = ""


def _error(
    status_code: int, error: str, details: str | None = None, **extra: object
) -> JSONResponse:
    body: dict[str, object] = {"error": error}
    if details:
        body["details"] = details
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body)


def _caller_key(access_token: str) -> str:
    """Rate-limit key for a caller without keeping the token itself."""
    return hashlib.sha256(access_token.encode("utf-8")).hexdigest()[:16]


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes")


def install_error_handlers(app: FastAPI) -> None:
    """Map the error taxonomy onto HTTP status codes."""

    @app.exception_handler(AuthenticationError)
    async def _auth_error(_request: Request, exc: AuthenticationError) -> JSONResponse:
        return _error(401, str(exc), "Re-authenticate with Google and retry")

    @app.exception_handler(RateLimitError)
    async def _rate_limited(_request: Request, exc: RateLimitError) -> JSONResponse:
        retry_after = exc.retry_after if exc.retry_after is not None else 60.0
        response = _error(429, str(exc), retryAfter=round(retry_after, 3))
        response.headers["Retry-After"] = str(max(1, math.ceil(retry_after)))
        return response

    @app.exception_handler(ProviderError)
    async def _provider_error(_request: Request, exc: ProviderError) -> JSONResponse:
        logger.error("Upstream provider error: %s", exc)
        return _error(502, "Upstream provider error", str(exc))

    @app.exception_handler(StorageError)
    async def _storage_error(_request: Request, exc: StorageError) -> JSONResponse:
        logger.error("Storage error: %s", exc)
        return _error(500, "Storage error", str(exc))

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error(400, "Invalid request", str(exc.errors()))


def build_router(
    ingestor_factory: IngestorBuilder,
    rate_limiter: RequestRateLimiter,
    settings: SupportTriageSettings,
) -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict:
        return {"ok": True}

    @router.get("/api/emails/inbox")
    def inbox(
        authorization: str | None = Header(default=None),
        page_token: str | None = Query(default=None, alias="pageToken"),
        page_size: int | None = Query(default=None, alias="pageSize", ge=1, le=100),
        force_refresh: str | None = Query(default=None, alias="forceRefresh"),
        x_page_token: str | None = Header(default=None),
        x_force_refresh: str | None = Header(default=None),
    ) -> dict:
        access_token = parse_bearer_token(authorization)
        rate_limiter.check(_caller_key(access_token))

        ingestor = ingestor_factory(access_token)
        page = ingestor.run(
            page_token=page_token or x_page_token,
            page_size=page_size or settings.page_size,
            force_refresh=_truthy(force_refresh) or _truthy(x_force_refresh),
        )
        return page.to_dict()

    @router.post("/api/emails/refresh-single", response_model=None)
    def refresh_single(
        body: RefreshSingleRequest,
        authorization: str | None = Header(default=None),
    ) -> dict | JSONResponse:
        access_token = parse_bearer_token(authorization)
        ingestor = ingestor_factory(access_token)
        try:
            email = ingestor.refresh_thread(body.thread_id)
        except LookupError as e:
            return _error(404, str(e))
        return email.to_dict()

    @router.post("/api/emails/refresh-batch")
    def refresh_batch(
        body: RefreshBatchRequest,
        authorization: str | None = Header(default=None),
    ) -> dict:
        access_token = parse_bearer_token(authorization)
        return ingestor_factory(access_token).refresh_threads(body.thread_ids).to_dict()

    @router.post("/api/emails/check-new")
    def check_new(
        body: CheckNewRequest,
        authorization: str | None = Header(default=None),
    ) -> dict:
        access_token = parse_bearer_token(authorization)
        check = ingestor_factory(access_token).check_new(
            body.last_email_timestamp, body.existing_thread_ids
        )
        return check.to_dict()

    @router.post("/api/emails/analyze")
    def analyze(
        body: AnalyzeRequest,
        authorization: str | None = Header(default=None),
    ) -> dict:
        access_token = parse_bearer_token(authorization)
        ingestor = ingestor_factory(access_token)
        results = ingestor.analyze(
            [EmailInput(subject=e.subject, content=e.content, thread_id=e.thread_id)
             for e in body.emails]
        )
        return {"results": [r.to_dict() if r else None for r in results]}

    @router.post("/api/emails/not-relevant")
    def not_relevant(
        body: NotRelevantRequest,
        authorization: str | None = Header(default=None),
    ) -> dict:
        access_token = parse_bearer_token(authorization)
        ingestor_factory(access_token).mark_not_relevant(body.thread_id, body.reason)
        return {"ok": True, "threadId": body.thread_id}

    return router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """On shutdown, close the document store the app opened for itself."""
    yield
    store = getattr(app.state, "store", None)
    if store is not None:
        store.close()
        logger.info("Document store closed")


def create_app(
    settings: SupportTriageSettings | None = None,
    *,
    ingestor_factory: IngestorBuilder | None = None,
    rate_limiter: RequestRateLimiter | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Without an explicit ``ingestor_factory`` the configured document store is
    opened, and closed again on shutdown, and an OpenAI-backed classifier
    is created.
    """
    settings = settings or SupportTriageSettings()
    store = None
    if ingestor_factory is None:
        store = open_store(settings)
        try:
            ingestor_factory = IngestorFactory(settings, store)
        except Exception:
            store.close()
            raise

    if rate_limiter is None:
        rate_limiter = RequestRateLimiter(
            settings.min_request_interval_seconds,
            settings.max_requests_per_window,
            settings.request_window_seconds,
        )

    app = FastAPI(title="support-triage API", lifespan=lifespan)
    app.state.store = store
    install_error_handlers(app)
    app.include_router(build_router(ingestor_factory, rate_limiter, settings))
    app.state.rate_limiter = rate_limiter
    return app
