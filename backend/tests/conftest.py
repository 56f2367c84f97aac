"""
Shared builders for DMARC report payloads, archives and MIME messages.

Exposed as factory fixtures so each test can describe exactly the report it
needs without repeating XML boilerplate.
"""

import bz2
import gzip
import io
import tarfile
import zipfile
from email.message import EmailMessage
from typing import Optional

import pytest

# 2024-01-01T00:00:00Z .. 2024-01-01T23:59:59Z
DEFAULT_BEGIN = 1704067200
DEFAULT_END = 1704153599

DEFAULT_RECORD = {
    "source_ip": "203.0.113.10",
    "count": "5",
    "disposition": "none",
    "dkim": "pass",
    "spf": "pass",
    "header_from": "example.com",
}


def _element(tag: str, value) -> str:
    if value is None:
        return ""
    return f"<{tag}>{value}</{tag}>"


def build_report_xml(
    org_name: Optional[str] = "google.com",
    email: Optional[str] = "noreply-dmarc-support@google.com",
    extra_contact_info: Optional[str] = "https://support.google.com/a/answer/2466580",
    report_id: Optional[str] = "12345678901234567890",
    begin=DEFAULT_BEGIN,
    end=DEFAULT_END,
    domain: Optional[str] = "example.com",
    adkim: Optional[str] = "r",
    aspf: Optional[str] = "r",
    p: Optional[str] = "none",
    sp: Optional[str] = "none",
    pct="100",
    records: Optional[list[dict]] = None,
    include_auth_results: bool = True,
) -> bytes:
    """Render an RFC 7489 aggregate report; None omits the element."""
    if records is None:
        records = [DEFAULT_RECORD]

    record_xml = []
    for record in records:
        auth_results = ""
        if include_auth_results:
            auth_results = (
                "<auth_results>"
                "<dkim><domain>example.com</domain><result>pass</result>"
                "<selector>google</selector></dkim>"
                "<spf><domain>example.com</domain><result>pass</result></spf>"
                "</auth_results>"
            )
        reason = ""
        if record.get("reason"):
            reason = f"<reason><type>{record['reason']}</type></reason>"
        record_xml.append(
            "<record>"
            "<row>"
            + _element("source_ip", record.get("source_ip"))
            + _element("count", record.get("count"))
            + "<policy_evaluated>"
            + _element("disposition", record.get("disposition"))
            + _element("dkim", record.get("dkim"))
            + _element("spf", record.get("spf"))
            + reason
            + "</policy_evaluated>"
            "</row>"
            "<identifiers>"
            + _element("envelope_to", record.get("envelope_to"))
            + _element("envelope_from", record.get("envelope_from"))
            + _element("header_from", record.get("header_from"))
            + "</identifiers>"
            + auth_results
            + "</record>"
        )

    xml = (
        '<?xml version="1.0" encoding="UTF-8" ?>'
        "<feedback>"
        "<report_metadata>"
        + _element("org_name", org_name)
        + _element("email", email)
        + _element("extra_contact_info", extra_contact_info)
        + _element("report_id", report_id)
        + "<date_range>"
        + _element("begin", begin)
        + _element("end", end)
        + "</date_range>"
        "</report_metadata>"
        "<policy_published>"
        + _element("domain", domain)
        + _element("adkim", adkim)
        + _element("aspf", aspf)
        + _element("p", p)
        + _element("sp", sp)
        + _element("pct", pct)
        + "</policy_published>"
        + "".join(record_xml)
        + "</feedback>"
    )
    return xml.encode("utf-8")


def build_zip(members: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def build_tar(members: dict[str, bytes], mode: str = "w:gz") -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode=mode) as archive:
        for name, data in members.items():
            info = tarfile.TarInfo(name=name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def build_message(
    attachments: list[tuple[str, bytes, str]],
    subject: str = "Report domain: example.com Submitter: google.com",
    to: str = "dmarc+rua@example.com",
) -> bytes:
    """Build a raw MIME message; attachments are (filename, content, mime type)."""
    message = EmailMessage()
    message["From"] = "noreply-dmarc-support@google.com"
    message["To"] = to
    message["Subject"] = subject
    message["Message-ID"] = "<report-1@google.com>"
    message.set_content("This is an aggregate report from google.com.")
    for filename, content, mime_type in attachments:
        maintype, _, subtype = mime_type.partition("/")
        message.add_attachment(content, maintype=maintype, subtype=subtype, filename=filename)
    return message.as_bytes()


@pytest.fixture()
def make_report():
    return build_report_xml


@pytest.fixture()
def make_zip():
    return build_zip


@pytest.fixture()
def make_tar():
    return build_tar


@pytest.fixture()
def make_message():
    return build_message


@pytest.fixture()
def gzip_bytes():
    return gzip.compress


@pytest.fixture()
def bz2_bytes():
    return bz2.compress
