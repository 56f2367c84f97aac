"""
Diagnostics collector shared by the pipeline stages.

Parsing and decoding failures never propagate as exceptions between stages;
the stage that detects the problem records a Diagnostic here and returns
"no result". Every recorded diagnostic is also logged at WARNING.
"""

import logging
from typing import Any, Iterator, Optional

from dmarc_ingest.models.ingestion import Diagnostic, DiagnosticKind

logger = logging.getLogger(__name__)


class DiagnosticLog:
    """Ordered, append-only list of Diagnostics for one run."""

    def __init__(self) -> None:
        self._entries: list[Diagnostic] = []

    def record(
        self,
        kind: DiagnosticKind,
        reason: str,
        *,
        message_id: Optional[str] = None,
        attachment_name: Optional[str] = None,
        detail: Optional[str] = None,
        **context: Any,
    ) -> Diagnostic:
        entry = Diagnostic(
            kind=kind,
            reason=reason,
            message_id=message_id,
            attachment_name=attachment_name,
            detail=detail,
            context=context,
        )
        self._entries.append(entry)
        logger.warning(
            "%s: %s (message_id=%r, attachment=%r)%s",
            kind,
            reason,
            message_id,
            attachment_name,
            f" detail={detail}" if detail else "",
        )
        return entry

    def clear(self) -> None:
        self._entries.clear()

    def of_kind(self, kind: DiagnosticKind) -> list[Diagnostic]:
        return [d for d in self._entries if d.kind == kind]

    @property
    def entries(self) -> list[Diagnostic]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(self._entries)
