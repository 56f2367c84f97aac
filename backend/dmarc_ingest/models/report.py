"""
Pydantic models for decoded DMARC aggregate reports (RFC 7489 Appendix C).

Every field is Optional: None means the receiver did not report the value
(or reported it empty), which is kept distinct from a literal empty string.
"""

from typing import Any, Dict, Optional
from pydantic import BaseModel


class ReportMetadata(BaseModel):
    """
    Report-level fields shared by every record decoded from one payload.

    Sources:
      report_metadata/{org_name,email,extra_contact_info,report_id}
      report_metadata/date_range/{begin,end}   (seconds -> epoch millis)
      policy_published/{domain,adkim,aspf,p,sp,pct}
    """

    org_name: Optional[str] = None
    email: Optional[str] = None
    extra_contact_info: Optional[str] = None
    report_id: Optional[str] = None
    begin_timestamp: Optional[int] = None
    end_timestamp: Optional[int] = None
    domain: Optional[str] = None
    adkim: Optional[str] = None
    aspf: Optional[str] = None
    p: Optional[str] = None
    sp: Optional[str] = None
    pct: Optional[int] = None


class EvaluationRecord(ReportMetadata):
    """
    One <record> element merged with its parent report's metadata.

    Records are self-contained documents: nothing links back to a separately
    stored report entity.
    """

    source_ip: Optional[str] = None
    count: Optional[int] = None
    disposition: Optional[str] = None
    dkim: Optional[str] = None
    spf: Optional[str] = None
    reason: Optional[str] = None
    envelope_to: Optional[str] = None
    envelope_from: Optional[str] = None
    header_from: Optional[str] = None
    # Raw <auth_results> subtree, kept as nested dicts/lists
    auth_results: Optional[Dict[str, Any]] = None

    def to_document(self) -> dict:
        """Flat JSON-ready dict used as the stored document body."""
        return self.model_dump(mode="json")
