"""
Webhook Message Source.

Turns inbound-email webhook payloads into a Message Source, so mail that a
provider posts over HTTP runs through exactly the same locate, resolve,
decode and load stages as mail pulled over IMAP.

  parse_webhook(payload, provider)         -> WebhookMail
  WebhookMessageSource(mails, diagnostics) -> MessageSource

Supported providers (EMAIL_PROVIDER):
  resend    snake_case keys   (default)
  postmark  PascalCase keys

Adding a provider means adding its key names to PROVIDER_FIELDS.
"""

import base64
import binascii
import logging
from email import policy
from email.message import EmailMessage
from email.utils import getaddresses
from typing import Any, Optional
from uuid import uuid4

from dmarc_ingest.models.ingestion import SearchCriteria
from dmarc_ingest.models.webhook_mail import WebhookAttachment, WebhookMail
from dmarc_ingest.services.diagnostics import DiagnosticLog
from dmarc_ingest.services.message_source import SourceError

logger = logging.getLogger(__name__)

# Provider -> {WebhookMail field: candidate payload keys, first non-empty wins}
PROVIDER_FIELDS: dict[str, dict[str, list[str]]] = {
    "resend": {
        "message_id": ["message_id", "id"],
        "sender": ["from"],
        "recipient": ["to"],
        "subject": ["subject"],
        "attachments": ["attachments"],
        "filename": ["filename"],
        "content": ["content"],
        "content_type": ["content_type"],
    },
    "postmark": {
        "message_id": ["MessageID"],
        "sender": ["From"],
        "recipient": ["To"],
        "subject": ["Subject"],
        "attachments": ["Attachments"],
        "filename": ["Name"],
        "content": ["Content"],
        "content_type": ["ContentType"],
    },
}

DEFAULT_PROVIDER = "resend"

# Attachment types that cannot carry raw bytes in a rebuilt message
_CONTAINER_MAINTYPES = {"multipart", "message"}


class WebhookPayloadError(Exception):
    """Raised when a webhook payload cannot be mapped to a WebhookMail."""
    def __init__(self, message: str, error_code: str):
        super().__init__(message)
        self.error_code = error_code
        self.message = message


# ---------------------------------------------------------------------------
# Payload mapping
# ---------------------------------------------------------------------------

def _pick(payload: dict, keys: list[str]) -> Any:
    for key in keys:
        value = payload.get(key)
        if value:
            return value
    return None


def _as_address_text(value: Any) -> str:
    # Resend may send a list of recipients
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value if v)
    return str(value or "")


def parse_webhook(payload: Any, provider: Optional[str] = None) -> WebhookMail:
    """
    Map a provider's inbound-email JSON onto a WebhookMail.

    Attachment content is kept as the provider's base64 text; decoding
    happens when the message is fetched, where a failure can be reported
    against the attachment it belongs to.

    Raises WebhookPayloadError for an unknown provider or a payload that is
    not a JSON object.
    """
    resolved = (provider or DEFAULT_PROVIDER).lower().strip()
    fields = PROVIDER_FIELDS.get(resolved)
    if fields is None:
        raise WebhookPayloadError(
            f"Unknown email provider {resolved!r}. Supported providers: {sorted(PROVIDER_FIELDS)}",
            "unknown_provider",
        )
    if not isinstance(payload, dict):
        raise WebhookPayloadError("Webhook payload must be a JSON object", "invalid_payload")

    attachments = []
    for item in _pick(payload, fields["attachments"]) or []:
        if not isinstance(item, dict):
            continue
        attachments.append(
            WebhookAttachment(
                filename=_pick(item, fields["filename"]),
                content_base64=_pick(item, fields["content"]) or "",
                content_type=_pick(item, fields["content_type"]) or "application/octet-stream",
            )
        )

    message_id = _pick(payload, fields["message_id"])
    return WebhookMail(
        message_id=str(message_id) if message_id else None,
        sender=_as_address_text(_pick(payload, fields["sender"])),
        recipient=_as_address_text(_pick(payload, fields["recipient"])),
        subject=_pick(payload, fields["subject"]),
        attachments=attachments,
    )


# ---------------------------------------------------------------------------
# Message Source
# ---------------------------------------------------------------------------

def _addressed_to(mail: WebhookMail, recipient: str) -> bool:
    wanted = recipient.strip().lower()
    return any(address.lower() == wanted for _, address in getaddresses([mail.recipient]))


def _decode_base64(text: str) -> bytes:
    return base64.b64decode("".join(text.split()), validate=True)


class WebhookMessageSource:
    """
    Serves webhook mail as raw RFC 822 messages.

    The search criteria's recipient filter applies to the mail's To address;
    unseen_only has no meaning here and is ignored. Attachments whose content
    is not valid base64 are left out of the rendered message and recorded as
    attachment_skipped in the shared DiagnosticLog.
    """

    def __init__(self, mails: list[WebhookMail], diagnostics: DiagnosticLog):
        self.diagnostics = diagnostics
        self.mails: dict[str, WebhookMail] = {}
        for mail in mails:
            message_id = mail.message_id or f"webhook-{uuid4().hex[:12]}"
            self.mails[message_id] = mail

    def list_candidates(self, criteria: SearchCriteria) -> list[str]:
        if not criteria.recipient:
            return list(self.mails)
        return [
            message_id
            for message_id, mail in self.mails.items()
            if _addressed_to(mail, criteria.recipient)
        ]

    def _add_attachment(self, message: EmailMessage, message_id: str, attachment: WebhookAttachment) -> None:
        try:
            content = _decode_base64(attachment.content_base64)
        except (binascii.Error, ValueError) as e:
            self.diagnostics.record(
                "attachment_skipped",
                "attachment content is not valid base64",
                message_id=message_id,
                attachment_name=attachment.filename or "",
                detail=str(e),
                content_type=attachment.content_type,
            )
            return

        maintype, _, subtype = attachment.content_type.partition("/")
        if not subtype or maintype.lower() in _CONTAINER_MAINTYPES:
            maintype, subtype = "application", "octet-stream"
        message.add_attachment(content, maintype=maintype, subtype=subtype, filename=attachment.filename)

    def fetch_raw(self, message_id: str) -> bytes:
        mail = self.mails.get(message_id)
        if mail is None:
            raise SourceError(f"Unknown message id {message_id!r}", "message_not_found")

        message = EmailMessage(policy=policy.default)
        try:
            if mail.sender:
                message["From"] = mail.sender
            if mail.recipient:
                message["To"] = mail.recipient
            if mail.subject:
                message["Subject"] = mail.subject
            message["Message-ID"] = f"<{message_id.strip('<>')}>"
            message.set_content("Delivered by inbound webhook.")
            for attachment in mail.attachments:
                self._add_attachment(message, message_id, attachment)
            raw = message.as_bytes()
        except (ValueError, TypeError) as e:
            raise SourceError(f"Webhook mail {message_id} could not be rendered: {e}", "message_unrenderable")

        logger.debug("Rendered webhook mail %s with %d attachment(s)", message_id, len(mail.attachments))
        return raw
