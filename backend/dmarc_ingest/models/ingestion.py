"""
Pydantic models for pipeline bookkeeping (diagnostics, store results, run summary).

Models:
  Diagnostic        - one skipped attachment / failed decode / failed write
  UpsertResult      - Document Store response to a single write
  SearchCriteria    - Message Source filter for a mailbox run
  IngestionSummary  - totals and diagnostics returned by a run
"""

from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field


DiagnosticKind = Literal[
    "attachment_skipped",
    "decode_failed",
    "message_failed",
    "record_skipped",
    "upsert_failed",
]


class Diagnostic(BaseModel):
    """
    Side-channel report of a unit the pipeline excluded.

    Carries enough context (attachment name, message id, reason, and the raw
    store response or record body where relevant) to reconstruct the cause
    without re-running.
    """

    kind: DiagnosticKind
    reason: str
    message_id: Optional[str] = None
    attachment_name: Optional[str] = None
    detail: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class UpsertResult(BaseModel):
    """Outcome of DocumentStore.upsert(). Anything but 'created' is a failure."""

    result: str
    diagnostics: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.result == "created"


class SearchCriteria(BaseModel):
    """Which messages a Message Source should list."""

    unseen_only: bool = True
    recipient: Optional[str] = None


class IngestionSummary(BaseModel):
    """Result of IngestionPipeline.run(), returned by the API and the CLI."""

    messages: int = 0
    attachments: int = 0
    records: int = 0
    partitions: List[str] = Field(default_factory=list)
    partitions_created: List[str] = Field(default_factory=list)
    upserted: int = 0
    failed: int = 0
    diagnostics: List[Diagnostic] = Field(default_factory=list)
