"""
Ingestion pipeline.

Orchestrates one batch run:

  1. list candidate messages from the Message Source
  2. per message: locate report attachments, resolve archives, decode XML
  3. establish every partition the accumulated records need (once each)
  4. upsert each record into its own partition

Steps 1-2 never raise for bad content: skipped attachments, unreadable
archives and malformed XML become diagnostics. A message that cannot be
fetched and a write the store rejects are independent failures as well.
Only connectivity failures (SourceConnectionError, StoreConnectionError) and
partition setup failures end a run.
"""

import logging
from typing import Iterable, Optional

from dmarc_ingest.models.attachment import RawAttachment
from dmarc_ingest.models.ingestion import IngestionSummary, SearchCriteria
from dmarc_ingest.models.report import EvaluationRecord
from dmarc_ingest.services.archive_resolver import resolve_payload
from dmarc_ingest.services.attachment_locator import locate_attachments
from dmarc_ingest.services.diagnostics import DiagnosticLog
from dmarc_ingest.services.document_store import (
    DocumentStore,
    StoreConnectionError,
    StoreError,
)
from dmarc_ingest.services.message_source import (
    MessageSource,
    SourceConnectionError,
    SourceError,
)
from dmarc_ingest.services.partition_router import PartitionRouter
from dmarc_ingest.services.report_decoder import decode_payload

logger = logging.getLogger(__name__)


class IngestionPipeline:
    """Single-threaded batch job: Message Source in, Document Store out."""

    def __init__(
        self,
        source: MessageSource,
        store: DocumentStore,
        router: Optional[PartitionRouter] = None,
        diagnostics: Optional[DiagnosticLog] = None,
    ):
        self.source = source
        self.store = store
        self.router = router or PartitionRouter(store)
        self.diagnostics = diagnostics if diagnostics is not None else DiagnosticLog()
        self._attachment_count = 0

    # -- extraction ---------------------------------------------------------

    def process_attachments(
        self,
        attachments: Iterable[RawAttachment],
    ) -> list[EvaluationRecord]:
        """Resolve and decode already-located attachments."""
        records: list[EvaluationRecord] = []
        for attachment in attachments:
            self._attachment_count += 1
            payload = resolve_payload(attachment, self.diagnostics)
            if payload is None:
                continue
            records.extend(decode_payload(payload, self.diagnostics))
        return records

    def process_message(self, message_id: str, raw: bytes) -> list[EvaluationRecord]:
        """Run locate -> resolve -> decode for one raw message."""
        attachments = locate_attachments(raw, message_id, self.diagnostics)
        return self.process_attachments(attachments)

    def collect(self, criteria: SearchCriteria) -> tuple[int, list[EvaluationRecord]]:
        """Extract records from every candidate message. Returns (messages, records)."""
        message_ids = self.source.list_candidates(criteria)
        logger.info("Processing %d candidate message(s)", len(message_ids))

        records: list[EvaluationRecord] = []
        for message_id in message_ids:
            try:
                raw = self.source.fetch_raw(message_id)
            except SourceConnectionError:
                raise
            except SourceError as e:
                self.diagnostics.record(
                    "message_failed",
                    e.message,
                    message_id=message_id,
                    error_code=e.error_code,
                )
                continue
            records.extend(self.process_message(message_id, raw))
        return len(message_ids), records

    # -- loading ------------------------------------------------------------

    def store_records(
        self,
        records: list[EvaluationRecord],
        summary: IngestionSummary,
    ) -> IngestionSummary:
        """Create missing partitions, then upsert each record into its own partition."""
        routed: list[tuple[str, EvaluationRecord]] = []
        for record in records:
            key = self.router.partition_key(record)
            if key is None:
                self.diagnostics.record(
                    "record_skipped",
                    "record has no usable begin or end timestamp to route by",
                    report_id=record.report_id,
                    record=record.to_document(),
                )
                continue
            routed.append((key, record))

        summary.partitions = self.router.partition_keys(record for _, record in routed)
        summary.partitions_created = self.router.ensure_partitions(
            record for _, record in routed
        )

        for key, record in routed:
            document = record.to_document()
            try:
                response = self.store.upsert(key, document)
            except StoreConnectionError:
                raise
            except StoreError as e:
                summary.failed += 1
                self.diagnostics.record(
                    "upsert_failed",
                    "store raised an error",
                    detail=e.message,
                    partition=key,
                    record=document,
                    error_code=e.error_code,
                )
                continue
            if response.created:
                summary.upserted += 1
                continue
            summary.failed += 1
            self.diagnostics.record(
                "upsert_failed",
                f"store returned {response.result!r}",
                detail=response.diagnostics,
                partition=key,
                record=document,
                response=response.model_dump(),
            )
        return summary

    def ingest_records(self, records: list[EvaluationRecord], messages: int = 0) -> IngestionSummary:
        summary = IngestionSummary(
            messages=messages,
            attachments=self._attachment_count,
            records=len(records),
        )
        self.store_records(records, summary)
        summary.diagnostics = self.diagnostics.entries
        logger.info(
            "Run finished: %d message(s), %d attachment(s), %d record(s), "
            "%d upserted, %d failed, %d diagnostic(s)",
            summary.messages,
            summary.attachments,
            summary.records,
            summary.upserted,
            summary.failed,
            len(summary.diagnostics),
        )
        return summary

    def run(self, criteria: Optional[SearchCriteria] = None) -> IngestionSummary:
        """Process every candidate message and write all records."""
        # totals and diagnostics are per run
        self._attachment_count = 0
        self.diagnostics.clear()
        messages, records = self.collect(criteria or SearchCriteria())
        return self.ingest_records(records, messages=messages)
