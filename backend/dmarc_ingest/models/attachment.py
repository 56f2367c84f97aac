"""
Attachment models for the extraction stages of the pipeline.

RawAttachment    - an attachment whose filename matched the report pattern
ResolvedPayload  - the XML bytes recovered from a RawAttachment

Both are transient: they live for the duration of one message and are
discarded once the payload has been decoded into EvaluationRecords.
"""

from typing import Optional
from pydantic import BaseModel


class RawAttachment(BaseModel):
    """A candidate report attachment, already transfer-decoded to raw bytes."""

    name: str
    content: bytes
    # Lower-cased extension group from the filename, e.g. "xml", "zip", "tar.gz"
    declared_format: Optional[str] = None
    message_id: Optional[str] = None
    content_type: Optional[str] = None

    @property
    def is_compressed(self) -> bool:
        return self.declared_format is not None and self.declared_format != "xml"


class ResolvedPayload(BaseModel):
    """
    The XML document extracted from an attachment.

    member_name is the archive member the bytes were read from; it is None
    when the attachment was a plain .xml file.
    """

    xml_bytes: bytes
    source_name: str
    member_name: Optional[str] = None
    message_id: Optional[str] = None
