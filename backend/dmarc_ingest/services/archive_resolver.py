"""
Archive resolver.

Turns a compressed report attachment into the single XML document it wraps.

Supported declared formats (see attachment_locator.FILENAME_PATTERN):
  xml                      -> returned as-is
  zip                      -> first *.xml member
  tar / tar.gz / tar.bz2   -> first *.xml regular-file member
  gz / bz2 / *.gz / *.bz2  -> single-stream decompression; the inner file is
                              named after the attachment minus the suffix and
                              resolved by its own format (xml.gz -> report.xml,
                              zip.gz -> inner zip archive)

Every attachment is written into its own temporary directory which is removed
on every exit path, including decode failures.

Public API:
  resolve_payload(attachment, diagnostics) -> Optional[ResolvedPayload]
"""

import bz2
import gzip
import logging
import re
import tarfile
import tempfile
import zipfile
import zlib
from pathlib import Path
from typing import Optional
from uuid import uuid4

from dmarc_ingest.models.attachment import RawAttachment, ResolvedPayload
from dmarc_ingest.services.diagnostics import DiagnosticLog

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ArchiveError(Exception):
    """Raised when an attachment cannot be resolved to an XML payload."""
    def __init__(self, message: str, error_code: str):
        super().__init__(message)
        self.error_code = error_code
        self.message = message


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Refuse members that decompress beyond this size (zip bomb guard)
MAX_MEMBER_BYTES = 50 * 1024 * 1024

_TAR_MODES = {
    "tar": "r:",
    "tar.gz": "r:gz",
    "tar.bz2": "r:bz2",
}

_STREAM_OPENERS = {
    "gz": gzip.open,
    "bz2": bz2.open,
}

_COMPRESSION_SUFFIX_RE = re.compile(r"\.(gz|bz2)$", re.IGNORECASE)

_UNREADABLE_ERRORS = (
    zipfile.BadZipFile,
    tarfile.TarError,
    zlib.error,
    EOFError,
    OSError,
)


def _is_xml_name(name: str) -> bool:
    return name.lower().endswith(".xml")


def _check_size(name: str, size: int) -> None:
    if size > MAX_MEMBER_BYTES:
        raise ArchiveError(
            f"Archive member {name!r} exceeds {MAX_MEMBER_BYTES} bytes",
            "member_too_large",
        )


# ---------------------------------------------------------------------------
# Container readers
# ---------------------------------------------------------------------------

def _read_zip(path: Path) -> tuple[str, bytes]:
    with zipfile.ZipFile(path) as archive:
        for info in archive.infolist():
            if info.is_dir() or not _is_xml_name(info.filename):
                continue
            _check_size(info.filename, info.file_size)
            try:
                return info.filename, archive.read(info)
            except NotImplementedError as e:
                # e.g. deflate64; subclass of RuntimeError, so checked first
                raise ArchiveError(
                    f"Archive member {info.filename!r} uses an unsupported compression method: {e}",
                    "member_unsupported_compression",
                )
            except RuntimeError as e:
                # zipfile raises RuntimeError for encrypted members
                raise ArchiveError(
                    f"Archive member {info.filename!r} is encrypted: {e}",
                    "member_encrypted",
                )
    raise ArchiveError("Archive contains no .xml member", "no_xml_member")


def _read_tar(path: Path, mode: str) -> tuple[str, bytes]:
    with tarfile.open(path, mode) as archive:
        for member in archive.getmembers():
            if not member.isfile() or not _is_xml_name(member.name):
                continue
            _check_size(member.name, member.size)
            handle = archive.extractfile(member)
            if handle is None:
                continue
            with handle:
                return member.name, handle.read()
    raise ArchiveError("Archive contains no .xml member", "no_xml_member")


def _read_stream(path: Path, opener) -> bytes:
    with opener(path, "rb") as handle:
        data = handle.read(MAX_MEMBER_BYTES + 1)
    _check_size(path.name, len(data))
    return data


def _extract_xml(
    path: Path, declared_format: str, name: str, workdir: Path
) -> tuple[str, bytes]:
    """Return (member_name, xml_bytes) for the archive stored at path."""
    if declared_format == "zip":
        return _read_zip(path)

    if declared_format in _TAR_MODES:
        return _read_tar(path, _TAR_MODES[declared_format])

    # "xml.gz" -> ("xml", "gz"); "gz" -> ("", "gz")
    inner_format, _, outer = declared_format.rpartition(".")
    opener = _STREAM_OPENERS.get(outer)
    if opener is None:
        raise ArchiveError(
            f"Unsupported archive format {declared_format!r}", "unsupported_format"
        )

    data = _read_stream(path, opener)
    inner_name = _COMPRESSION_SUFFIX_RE.sub("", name)

    if inner_format in ("", "xml"):
        if not _is_xml_name(inner_name):
            raise ArchiveError(
                f"Compressed stream {inner_name!r} is not an .xml file", "no_xml_member"
            )
        return inner_name, data

    inner_path = workdir / f"{uuid4().hex}.{inner_format}"
    inner_path.write_bytes(data)
    return _extract_xml(inner_path, inner_format, inner_name, workdir)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def resolve_payload(
    attachment: RawAttachment,
    diagnostics: DiagnosticLog,
) -> Optional[ResolvedPayload]:
    """
    Return the XML payload carried by an attachment, or None.

    Plain .xml attachments pass straight through. Anything else is written
    to a scoped temporary directory, opened as its declared container type
    and searched for the first member ending in .xml (case-insensitive).

    Failures (no XML member, unreadable archive, oversized member) record an
    attachment_skipped diagnostic and return None; they never raise.
    """
    declared_format = attachment.declared_format or "xml"
    if declared_format == "xml":
        return ResolvedPayload(
            xml_bytes=attachment.content,
            source_name=attachment.name,
            message_id=attachment.message_id,
        )

    try:
        with tempfile.TemporaryDirectory(prefix="dmarc-") as tmp:
            workdir = Path(tmp)
            path = workdir / f"{uuid4().hex}.{declared_format}"
            path.write_bytes(attachment.content)
            try:
                member_name, xml_bytes = _extract_xml(
                    path, declared_format, attachment.name, workdir
                )
            except _UNREADABLE_ERRORS as e:
                raise ArchiveError(
                    f"Could not open {declared_format} archive: {e}", "archive_unreadable"
                )
    except ArchiveError as e:
        diagnostics.record(
            "attachment_skipped",
            e.message,
            message_id=attachment.message_id,
            attachment_name=attachment.name,
            error_code=e.error_code,
            declared_format=declared_format,
        )
        return None

    logger.debug(
        "Resolved %r (%s) to member %r, %d bytes",
        attachment.name,
        declared_format,
        member_name,
        len(xml_bytes),
    )
    return ResolvedPayload(
        xml_bytes=xml_bytes,
        source_name=attachment.name,
        member_name=member_name,
        message_id=attachment.message_id,
    )
