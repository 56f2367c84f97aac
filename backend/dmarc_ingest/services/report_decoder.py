"""
DMARC aggregate report decoder (RFC 7489 Appendix C).

Parses the XML payload of an aggregate report and flattens it into one
EvaluationRecord per <record> element, each carrying the report metadata.

Extraction is defensive throughout: every sub-tree (report_metadata,
date_range, policy_published, row, policy_evaluated, identifiers,
auth_results) is wrapped in a Section, and reading a field from a missing
Section yields None instead of raising. Empty strings and zero integers are
normalized to None as well, so "not reported" and "reported as zero/empty"
are deliberately the same value in the output.

Public API:
  decode_report(xml_bytes, diagnostics, ...) -> list[EvaluationRecord]
  decode_payload(payload, diagnostics)       -> list[EvaluationRecord]
  build_metadata(feedback)                   -> ReportMetadata
  build_record(element, metadata)            -> EvaluationRecord
"""

import copy
import logging
from typing import Any, Optional
from xml.etree.ElementTree import Element, ParseError, tostring
from xml.parsers.expat import ExpatError

import xmltodict
from defusedxml import DefusedXmlException
from defusedxml.ElementTree import fromstring

from dmarc_ingest.models.attachment import ResolvedPayload
from dmarc_ingest.models.report import EvaluationRecord, ReportMetadata
from dmarc_ingest.services.diagnostics import DiagnosticLog

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ReportDecodeError(Exception):
    """Raised when a payload is not a readable XML document."""
    def __init__(self, message: str, error_code: str):
        super().__init__(message)
        self.error_code = error_code
        self.message = message


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------

def coerce_text(value: Optional[str]) -> Optional[str]:
    """
    Strip a text value; empty or missing becomes None.

    Examples:
        " example.com " -> "example.com"
        ""              -> None
        None            -> None
    """
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def coerce_int(value: Optional[str]) -> Optional[int]:
    """
    Parse an integer leniently; zero, missing or unparsable becomes None.

    Examples:
        "5"     -> 5
        " 100 " -> 100
        "5.0"   -> 5
        "0"     -> None
        "abc"   -> None
        None    -> None
    """
    text = coerce_text(value)
    if text is None:
        return None
    try:
        number = int(text)
    except ValueError:
        try:
            number = int(float(text))
        except (ValueError, OverflowError):
            logger.debug("coerce_int: could not convert %r", value)
            return None
    return number or None


def seconds_to_millis(value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    return value * 1000


# ---------------------------------------------------------------------------
# Optional sub-tree wrapper
# ---------------------------------------------------------------------------

class Section:
    """
    An XML sub-tree that may be absent.

    Section(None) behaves like an empty element: children are absent
    Sections and every field reads as None.
    """

    def __init__(self, element: Optional[Element]):
        self.element = element

    @property
    def present(self) -> bool:
        return self.element is not None

    def child(self, path: str) -> "Section":
        if self.element is None:
            return Section(None)
        return Section(self.element.find(path))

    def text(self, path: str) -> Optional[str]:
        if self.element is None:
            return None
        return coerce_text(self.element.findtext(path))

    def integer(self, path: str) -> Optional[int]:
        if self.element is None:
            return None
        return coerce_int(self.element.findtext(path))

    def own_text(self) -> Optional[str]:
        if self.element is None:
            return None
        return coerce_text(self.element.text)


# ---------------------------------------------------------------------------
# Tree handling
# ---------------------------------------------------------------------------

def _strip_namespaces(root: Element) -> None:
    # DMARCbis reports declare xmlns="urn:ietf:params:xml:ns:dmarc-2.0"
    for element in root.iter():
        if isinstance(element.tag, str) and element.tag.startswith("{"):
            element.tag = element.tag.split("}", 1)[1]


def _parse_xml(xml_bytes: bytes) -> Element:
    try:
        root = fromstring(xml_bytes)
    except (ParseError, DefusedXmlException, ValueError) as e:
        raise ReportDecodeError(f"XML parse error: {e}", "xml_invalid")
    _strip_namespaces(root)
    if root.tag != "feedback":
        wrapped = root.find("feedback")
        if wrapped is not None:
            return wrapped
    return root


def _auth_results_to_dict(section: Section) -> Optional[dict[str, Any]]:
    """Convert <auth_results> to nested dicts; repeated children become lists."""
    if not section.present:
        return None
    # tostring() also serializes the tail text after the closing tag
    element = copy.copy(section.element)
    element.tail = None
    parsed = xmltodict.parse(tostring(element))
    value = parsed.get(section.element.tag)
    if not value:
        return None
    if not isinstance(value, dict):
        return {"#text": value}
    return dict(value)


def _override_reason(policy_evaluated: Section) -> Optional[str]:
    reason = policy_evaluated.child("reason")
    return reason.text("type") or reason.own_text()


# ---------------------------------------------------------------------------
# Record assembly
# ---------------------------------------------------------------------------

def build_metadata(feedback: Optional[Element]) -> ReportMetadata:
    """Extract the report-level fields shared by every record in a payload."""
    root = Section(feedback)
    metadata = root.child("report_metadata")
    date_range = metadata.child("date_range")
    policy = root.child("policy_published")

    return ReportMetadata(
        org_name=metadata.text("org_name"),
        email=metadata.text("email"),
        extra_contact_info=metadata.text("extra_contact_info"),
        report_id=metadata.text("report_id"),
        begin_timestamp=seconds_to_millis(date_range.integer("begin")),
        end_timestamp=seconds_to_millis(date_range.integer("end")),
        domain=policy.text("domain"),
        adkim=policy.text("adkim"),
        aspf=policy.text("aspf"),
        p=policy.text("p"),
        sp=policy.text("sp"),
        pct=policy.integer("pct"),
    )


def build_record(element: Element, metadata: ReportMetadata) -> EvaluationRecord:
    """Merge one <record> element with its report's metadata."""
    record = Section(element)
    row = record.child("row")
    policy_evaluated = row.child("policy_evaluated")
    identifiers = record.child("identifiers")

    return EvaluationRecord(
        **metadata.model_dump(),
        source_ip=row.text("source_ip"),
        count=row.integer("count"),
        disposition=policy_evaluated.text("disposition"),
        dkim=policy_evaluated.text("dkim"),
        spf=policy_evaluated.text("spf"),
        reason=_override_reason(policy_evaluated),
        envelope_to=identifiers.text("envelope_to"),
        envelope_from=identifiers.text("envelope_from"),
        header_from=identifiers.text("header_from"),
        auth_results=_auth_results_to_dict(record.child("auth_results")),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def decode_report(
    xml_bytes: bytes,
    diagnostics: DiagnosticLog,
    *,
    attachment_name: Optional[str] = None,
    message_id: Optional[str] = None,
) -> list[EvaluationRecord]:
    """
    Decode an aggregate report into a flat list of EvaluationRecords.

    A parse failure is recoverable: one decode_failed diagnostic is recorded
    and an empty list returned. A well-formed report without <record>
    elements also returns an empty list, without a diagnostic. A single
    <record> that cannot be assembled is dropped with a record_skipped
    diagnostic; its siblings are still returned.
    """
    try:
        feedback = _parse_xml(xml_bytes)
    except ReportDecodeError as e:
        diagnostics.record(
            "decode_failed",
            e.message,
            message_id=message_id,
            attachment_name=attachment_name,
            error_code=e.error_code,
            size=len(xml_bytes or b""),
        )
        return []

    metadata = build_metadata(feedback)
    records: list[EvaluationRecord] = []
    for index, element in enumerate(feedback.findall("record")):
        try:
            records.append(build_record(element, metadata))
        except (ExpatError, ValueError) as e:
            diagnostics.record(
                "record_skipped",
                "record could not be assembled",
                message_id=message_id,
                attachment_name=attachment_name,
                detail=str(e),
                report_id=metadata.report_id,
                index=index,
            )

    logger.info(
        "Decoded report %r from %r (%s): %d record(s)",
        metadata.report_id,
        metadata.org_name,
        attachment_name,
        len(records),
    )
    return records


def decode_payload(
    payload: ResolvedPayload,
    diagnostics: DiagnosticLog,
) -> list[EvaluationRecord]:
    """decode_report() for a ResolvedPayload, keeping its identifying context."""
    return decode_report(
        payload.xml_bytes,
        diagnostics,
        attachment_name=payload.source_name,
        message_id=payload.message_id,
    )
