"""
Report mail delivered by an inbound-email webhook provider.

Some receivers route their rua address to Postmark or Resend instead of an
IMAP mailbox. The provider posts the mail as JSON; parse_webhook() maps that
onto these models and WebhookMessageSource renders each one back into a MIME
message for the regular pipeline.
"""

from typing import List, Optional
from pydantic import BaseModel, Field


class WebhookAttachment(BaseModel):
    """One attachment exactly as the provider sent it (content still base64)."""

    filename: Optional[str] = None
    content_base64: str = ""
    content_type: str = "application/octet-stream"


class WebhookMail(BaseModel):
    message_id: Optional[str] = None
    sender: str = ""
    recipient: str = ""
    subject: Optional[str] = None
    attachments: List[WebhookAttachment] = Field(default_factory=list)
