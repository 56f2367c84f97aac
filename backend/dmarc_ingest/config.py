"""
Runtime configuration.

Values are read from the environment (and a .env file when present) once at
startup and passed explicitly to the Message Source, Document Store and
Partition Router. Pipeline code never reads os.environ itself.

Environment variables
---------------------
IMAP_HOST                   IMAP server host name.
IMAP_PORT                   IMAP server port (default: 993).
IMAP_USE_SSL                "true"/"false" (default: true).
IMAP_USERNAME               Login user.
IMAP_PASSWORD               Login password.
IMAP_MAILBOX                Mailbox holding DMARC reports. When empty, the
                            CLI lists the available mailboxes and exits.
IMAP_FILTER_RECIPIENT       Only process messages sent to this exact address
                            (e.g. a "+rua" delimiter address). Empty disables.
IMAP_UNSEEN_ONLY            Only process unread messages (default: true).
SUPABASE_URL                Supabase project URL.
SUPABASE_SERVICE_KEY        Service-role key (needed to create partitions).
DMARC_PARTITION_REGISTRY    Registry table name (default: dmarc_partitions).
DMARC_PARTITION_PREFIX      Partition name prefix (default: dmarc_).
DMARC_PARTITION_DATE_FORMAT strftime format of the partition date
                            (default: %Y_%m_%d).
INGEST_WEBHOOK_SECRET       Shared secret for the /api/ingest endpoints.
EMAIL_PROVIDER              Payload format accepted by /api/ingest/inbound
                            ("resend" or "postmark", default: resend).
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from dmarc_ingest.models.ingestion import SearchCriteria

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in _TRUE_VALUES


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


class MailboxConfig(BaseModel):
    """Connection and filter settings for the IMAP Message Source."""

    host: str = ""
    port: int = 993
    use_ssl: bool = True
    username: str = ""
    password: str = ""
    mailbox: str = ""
    filter_recipient: Optional[str] = None
    unseen_only: bool = True

    def search_criteria(self) -> SearchCriteria:
        return SearchCriteria(
            unseen_only=self.unseen_only,
            recipient=self.filter_recipient or None,
        )


class StoreConfig(BaseModel):
    """Supabase connection settings for the Document Store."""

    url: str = ""
    service_key: str = ""
    registry_table: str = "dmarc_partitions"


class PartitionConfig(BaseModel):
    prefix: str = "dmarc_"
    date_format: str = "%Y_%m_%d"


class Settings(BaseModel):
    mailbox: MailboxConfig = MailboxConfig()
    store: StoreConfig = StoreConfig()
    partitions: PartitionConfig = PartitionConfig()
    webhook_secret: str = ""
    email_provider: str = "resend"


def load_settings() -> Settings:
    """Build Settings from the environment, loading .env first if present."""
    load_dotenv()

    return Settings(
        mailbox=MailboxConfig(
            host=_env_str("IMAP_HOST"),
            port=int(_env_str("IMAP_PORT", "993") or 993),
            use_ssl=_env_flag("IMAP_USE_SSL", True),
            username=_env_str("IMAP_USERNAME"),
            password=os.getenv("IMAP_PASSWORD", ""),
            mailbox=_env_str("IMAP_MAILBOX"),
            filter_recipient=_env_str("IMAP_FILTER_RECIPIENT") or None,
            unseen_only=_env_flag("IMAP_UNSEEN_ONLY", True),
        ),
        store=StoreConfig(
            url=_env_str("SUPABASE_URL"),
            service_key=_env_str("SUPABASE_SERVICE_KEY"),
            registry_table=_env_str("DMARC_PARTITION_REGISTRY", "dmarc_partitions")
            or "dmarc_partitions",
        ),
        partitions=PartitionConfig(
            prefix=_env_str("DMARC_PARTITION_PREFIX", "dmarc_"),
            date_format=_env_str("DMARC_PARTITION_DATE_FORMAT", "%Y_%m_%d") or "%Y_%m_%d",
        ),
        webhook_secret=_env_str("INGEST_WEBHOOK_SECRET"),
        email_provider=_env_str("EMAIL_PROVIDER", "resend") or "resend",
    )
