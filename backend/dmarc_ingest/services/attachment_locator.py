"""
Attachment locator.

Parses a raw MIME message and yields the attachments that look like DMARC
aggregate reports, judged by filename alone:

  report.xml              -> "xml"
  report.zip              -> "zip"
  report.xml.gz           -> "xml.gz"
  report.tar.bz2          -> "tar.bz2"
  report.pdf              -> skipped ("extension not recognized")

Public API:
  detect_format(name)                                       -> Optional[str]
  classify_attachment(name, content, message_id, diagnostics) -> Optional[RawAttachment]
  locate_attachments(raw, message_id, diagnostics)          -> list[RawAttachment]
"""

import logging
import re
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from typing import Optional

from dmarc_ingest.models.attachment import RawAttachment
from dmarc_ingest.services.diagnostics import DiagnosticLog

logger = logging.getLogger(__name__)

# XML optionally wrapped in zip/tar/gzip/bzip2, including the compound
# single-stream case (.tar.gz, .xml.gz, .zip.bz2, ...).
FILENAME_PATTERN = re.compile(
    r"^(?P<stem>.+?)\.(?P<extension>(?:xml|zip|tar|gz|bz2)(?:\.(?:gz|bz2))?)$",
    re.IGNORECASE,
)

SKIP_REASON_EXTENSION = "extension not recognized"

# Body parts of these types without a filename are message text, not attachments
_BODY_MAINTYPES = {"text", "multipart", "message"}


def detect_format(name: Optional[str]) -> Optional[str]:
    """
    Return the lower-cased extension token for a recognized filename.

    Examples:
        "google.com!example.com!1700000000!1700086399.zip" -> "zip"
        "Report.XML.GZ"                                     -> "xml.gz"
        "notes.txt"                                         -> None
        None / ""                                           -> None
    """
    if not name:
        return None
    match = FILENAME_PATTERN.match(name.strip())
    if not match:
        return None
    return match.group("extension").lower()


def classify_attachment(
    name: Optional[str],
    content: bytes,
    message_id: Optional[str],
    diagnostics: DiagnosticLog,
    content_type: Optional[str] = None,
) -> Optional[RawAttachment]:
    """
    Attach format metadata to one attachment, or drop it with a diagnostic.

    A non-matching name is a skip, not an error: exactly one
    attachment_skipped diagnostic is recorded and None is returned.
    """
    declared_format = detect_format(name)
    if declared_format is None:
        diagnostics.record(
            "attachment_skipped",
            SKIP_REASON_EXTENSION,
            message_id=message_id,
            attachment_name=name or "",
            content_type=content_type,
            size=len(content or b""),
        )
        return None

    return RawAttachment(
        name=name.strip(),
        content=content or b"",
        declared_format=declared_format,
        message_id=message_id,
        content_type=content_type,
    )


def _is_attachment_part(part: EmailMessage) -> bool:
    if part.is_multipart():
        return False
    if part.get_filename():
        return True
    if part.is_attachment():
        return True
    return part.get_content_maintype() not in _BODY_MAINTYPES


def locate_attachments(
    raw: bytes,
    message_id: Optional[str],
    diagnostics: DiagnosticLog,
) -> list[RawAttachment]:
    """
    Return every recognized report attachment in a raw MIME message.

    Walks the whole MIME tree, so reports nested in forwarded messages and
    messages whose single body part is the report file are both found.
    Unrecognized attachments are dropped (one diagnostic each) without
    affecting the others.
    """
    try:
        message = BytesParser(policy=policy.default).parsebytes(raw)
    except Exception as e:
        diagnostics.record(
            "message_failed",
            "message could not be parsed as MIME",
            message_id=message_id,
            detail=str(e),
        )
        return []

    attachments: list[RawAttachment] = []
    for part in message.walk():
        if not _is_attachment_part(part):
            continue

        name = part.get_filename()
        content_type = part.get_content_type()
        try:
            content = part.get_payload(decode=True) or b""
        except Exception as e:
            diagnostics.record(
                "attachment_skipped",
                "attachment body could not be decoded",
                message_id=message_id,
                attachment_name=name or "",
                detail=str(e),
            )
            continue

        attachment = classify_attachment(
            name, content, message_id, diagnostics, content_type=content_type
        )
        if attachment is not None:
            attachments.append(attachment)

    logger.debug(
        "Message %r: %d candidate report attachment(s)", message_id, len(attachments)
    )
    return attachments
