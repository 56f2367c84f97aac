"""
Ingest router.

HTTP entry points into the ingestion pipeline. All endpoints require the
shared secret from INGEST_WEBHOOK_SECRET in the X-Webhook-Secret header.

Endpoints:
  POST /mailbox   - run a batch over the configured IMAP mailbox
  POST /message   - ingest one raw RFC 822 message (body: message/rfc822)
  POST /inbound   - ingest a provider webhook payload (Postmark / Resend JSON)

Every endpoint returns an IngestionSummary. Content problems (skipped
attachments, malformed XML, rejected writes) are reported in its
diagnostics list with a 200 response; only connectivity failures return 503.
"""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from dmarc_ingest.config import Settings, load_settings
from dmarc_ingest.db import create_document_store
from dmarc_ingest.models.ingestion import IngestionSummary
from dmarc_ingest.services.diagnostics import DiagnosticLog
from dmarc_ingest.services.document_store import StoreError, SupabaseDocumentStore
from dmarc_ingest.services.message_source import (
    ImapMessageSource,
    InlineMessageSource,
    MessageSource,
    SourceConnectionError,
)
from dmarc_ingest.services.partition_router import PartitionRouter
from dmarc_ingest.services.pipeline import IngestionPipeline
from dmarc_ingest.services.webhook_source import (
    WebhookMessageSource,
    WebhookPayloadError,
    parse_webhook,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_settings() -> Settings:
    return load_settings()


def get_document_store(settings: Settings = Depends(get_settings)) -> SupabaseDocumentStore:
    try:
        return create_document_store(settings.store)
    except ValueError as exc:
        logger.error(f"Document store unavailable: {exc}")
        raise HTTPException(status_code=503, detail=str(exc))


def _verify_webhook_secret(
    x_webhook_secret: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Verify that the request carries the configured shared secret.

    Raises 401 if the secret is missing, unconfigured, or does not match.
    """
    expected = settings.webhook_secret
    if not expected:
        logger.warning(
            "No webhook secret configured (INGEST_WEBHOOK_SECRET); "
            "all ingest requests will be rejected"
        )
        raise HTTPException(status_code=401, detail="Webhook secret not configured")

    if not x_webhook_secret or x_webhook_secret != expected:
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _build_pipeline(
    source: MessageSource,
    store: SupabaseDocumentStore,
    settings: Settings,
    diagnostics: Optional[DiagnosticLog] = None,
) -> IngestionPipeline:
    router = PartitionRouter(
        store,
        prefix=settings.partitions.prefix,
        date_format=settings.partitions.date_format,
    )
    return IngestionPipeline(source, store, router=router, diagnostics=diagnostics)


def _check_store(store: SupabaseDocumentStore) -> None:
    try:
        store.check_connectivity()
    except StoreError as exc:
        logger.error(f"Document store check failed: {exc.message}")
        raise HTTPException(status_code=503, detail=exc.message)


def _run_pipeline(pipeline: IngestionPipeline, settings: Settings) -> IngestionSummary:
    try:
        return pipeline.run(settings.mailbox.search_criteria())
    except (SourceConnectionError, StoreError) as exc:
        logger.error(f"Ingest run aborted: {exc.message}")
        raise HTTPException(status_code=503, detail=exc.message)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/mailbox", response_model=IngestionSummary)
def ingest_mailbox(
    _: None = Depends(_verify_webhook_secret),
    settings: Settings = Depends(get_settings),
    store: SupabaseDocumentStore = Depends(get_document_store),
) -> IngestionSummary:
    """Run one batch over the configured IMAP mailbox."""
    if not settings.mailbox.mailbox:
        raise HTTPException(status_code=422, detail="IMAP_MAILBOX is not configured")

    _check_store(store)
    source = ImapMessageSource(settings.mailbox)
    try:
        source.connect()
    except SourceConnectionError as exc:
        logger.error(f"Message source unavailable: {exc.message}")
        raise HTTPException(status_code=503, detail=exc.message)

    with source:
        return _run_pipeline(_build_pipeline(source, store, settings), settings)


@router.post("/message", response_model=IngestionSummary)
async def ingest_message(
    request: Request,
    x_message_id: Optional[str] = Header(None),
    _: None = Depends(_verify_webhook_secret),
    settings: Settings = Depends(get_settings),
    store: SupabaseDocumentStore = Depends(get_document_store),
) -> IngestionSummary:
    """Ingest one raw MIME message posted as the request body."""
    raw = await request.body()
    if not raw:
        raise HTTPException(status_code=422, detail="Request body must be a raw RFC 822 message")

    message_id = x_message_id or f"inline-{uuid4().hex[:12]}"
    source = InlineMessageSource({message_id: raw})
    pipeline = _build_pipeline(source, store, settings)
    return await run_in_threadpool(_run_pipeline, pipeline, settings)


@router.post("/inbound", response_model=IngestionSummary)
def ingest_inbound(
    payload: dict,
    _: None = Depends(_verify_webhook_secret),
    settings: Settings = Depends(get_settings),
    store: SupabaseDocumentStore = Depends(get_document_store),
) -> IngestionSummary:
    """
    Provider-agnostic inbound email webhook receiver.

    The payload is rendered back into a MIME message and run through the
    same pipeline as mailbox mail (EMAIL_PROVIDER selects the payload format).
    """
    try:
        mail = parse_webhook(payload, provider=settings.email_provider)
    except WebhookPayloadError as exc:
        logger.error(f"Webhook payload rejected: {exc.message}")
        raise HTTPException(status_code=422, detail=exc.message)

    diagnostics = DiagnosticLog()
    source = WebhookMessageSource([mail], diagnostics)
    pipeline = _build_pipeline(source, store, settings, diagnostics=diagnostics)
    return _run_pipeline(pipeline, settings)
