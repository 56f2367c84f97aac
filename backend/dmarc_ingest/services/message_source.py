"""
Message Source interface and implementations.

A Message Source lists candidate message ids and returns raw RFC 822 bytes
for each one. Which messages count as candidates (unread only, addressed to
a given recipient) is the source's concern, not the pipeline's.

Implementations:
  ImapMessageSource    - pulls from an IMAP mailbox (imap_tools, UIDs)
  InlineMessageSource  - serves messages already in memory (HTTP pushes, tests)
"""

import imaplib
import logging
from typing import Optional, Protocol, runtime_checkable

from imap_tools import AND, MailBox, MailBoxUnencrypted
from imap_tools.errors import ImapToolsError

from dmarc_ingest.config import MailboxConfig
from dmarc_ingest.models.ingestion import SearchCriteria

logger = logging.getLogger(__name__)

# imap_tools raises ImapToolsError for bad command statuses; the transport
# layer underneath still raises imaplib and socket errors
_IMAP_ERRORS = (ImapToolsError, imaplib.IMAP4.error, OSError)

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SourceError(Exception):
    """Raised when a single message cannot be fetched."""
    def __init__(self, message: str, error_code: str):
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class SourceConnectionError(SourceError):
    """Raised when the source cannot be reached or searched. Fatal for a run."""


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

@runtime_checkable
class MessageSource(Protocol):
    def list_candidates(self, criteria: SearchCriteria) -> list[str]: ...

    def fetch_raw(self, message_id: str) -> bytes: ...


# ---------------------------------------------------------------------------
# Inline source
# ---------------------------------------------------------------------------

class InlineMessageSource:
    """Serves a fixed set of raw messages; the search criteria are ignored."""

    def __init__(self, messages: dict[str, bytes]):
        self.messages = dict(messages)

    def list_candidates(self, criteria: SearchCriteria) -> list[str]:
        return list(self.messages)

    def fetch_raw(self, message_id: str) -> bytes:
        try:
            return self.messages[message_id]
        except KeyError:
            raise SourceError(f"Unknown message id {message_id!r}", "message_not_found")


# ---------------------------------------------------------------------------
# IMAP source
# ---------------------------------------------------------------------------

def build_search_criteria(criteria: SearchCriteria) -> AND:
    """
    Translate SearchCriteria to an imap_tools query.

    Examples:
        unseen_only=True, recipient=None           -> (ALL UNSEEN)
        unseen_only=False, recipient='a+rua@x.org' -> (ALL TO "a+rua@x.org")
    """
    params = {}
    if criteria.unseen_only:
        params["seen"] = False
    if criteria.recipient:
        params["to"] = criteria.recipient.replace('"', "")
    return AND(all=True, **params)


class ImapMessageSource:
    """
    Message Source backed by an IMAP mailbox.

    Messages are addressed by UID. Fetching a message marks it \\Seen on the
    server, which is what lets unseen-only runs make progress between
    invocations.
    """

    def __init__(self, config: MailboxConfig, mailbox_factory=None):
        self.config = config
        self._mailbox_factory = mailbox_factory
        self._mailbox: Optional[MailBox] = None

    # -- connection ---------------------------------------------------------

    def _open(self) -> MailBox:
        if self._mailbox_factory is not None:
            return self._mailbox_factory(self.config.host, self.config.port)
        if self.config.use_ssl:
            return MailBox(self.config.host, self.config.port)
        return MailBoxUnencrypted(self.config.host, self.config.port)

    def connect(self, select_mailbox: bool = True) -> "ImapMessageSource":
        """
        Log in and (optionally) select the configured mailbox.

        Raises SourceConnectionError on any connection, login or select
        failure; these abort the run.
        """
        if not self.config.host:
            raise SourceConnectionError("IMAP_HOST is not configured", "source_unconfigured")

        try:
            mailbox = self._open()
            mailbox.login(self.config.username, self.config.password, initial_folder=None)
        except _IMAP_ERRORS as e:
            raise SourceConnectionError(
                f"Could not connect to IMAP server {self.config.host}:{self.config.port}. "
                f"Are the configured credentials correct? ({e})",
                "source_unreachable",
            )
        self._mailbox = mailbox
        logger.info("Connected to IMAP server %s as %s", self.config.host, self.config.username)

        if select_mailbox and self.config.mailbox:
            try:
                mailbox.folder.set(self.config.mailbox)
            except _IMAP_ERRORS as e:
                self.close()
                raise SourceConnectionError(
                    f"Could not switch to mailbox {self.config.mailbox!r}. "
                    f"Does the configured mailbox exist? ({e})",
                    "mailbox_not_found",
                )
        return self

    def close(self) -> None:
        if self._mailbox is None:
            return
        try:
            self._mailbox.logout()
        except _IMAP_ERRORS as e:
            logger.debug("IMAP logout failed: %s", e)
        finally:
            self._mailbox = None

    def __enter__(self) -> "ImapMessageSource":
        if self._mailbox is None:
            self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_connection(self) -> MailBox:
        if self._mailbox is None:
            raise SourceConnectionError("IMAP source is not connected", "source_not_connected")
        return self._mailbox

    # -- operations ---------------------------------------------------------

    def list_mailboxes(self) -> list[str]:
        mailbox = self._require_connection()
        try:
            folders = mailbox.folder.list()
        except _IMAP_ERRORS as e:
            raise SourceConnectionError(f"Could not fetch a list of mailboxes: {e}", "list_failed")
        return [folder.name for folder in folders]

    def list_candidates(self, criteria: SearchCriteria) -> list[str]:
        mailbox = self._require_connection()
        query = build_search_criteria(criteria)
        try:
            uids = mailbox.uids(query)
        except _IMAP_ERRORS as e:
            raise SourceConnectionError(f"IMAP search failed: {e}", "search_failed")

        logger.info("IMAP search %s matched %d message(s)", query, len(uids))
        return list(uids)

    def fetch_raw(self, message_id: str) -> bytes:
        mailbox = self._require_connection()
        try:
            messages = list(mailbox.fetch(AND(uid=message_id), mark_seen=True, bulk=True))
        except (imaplib.IMAP4.abort, OSError) as e:
            raise SourceConnectionError(f"IMAP connection lost: {e}", "source_unreachable")
        except _IMAP_ERRORS as e:
            raise SourceError(f"Failed to fetch message {message_id}: {e}", "fetch_failed")

        if not messages:
            raise SourceError(f"Message {message_id} has no body", "empty_message")
        return messages[0].obj.as_bytes()
