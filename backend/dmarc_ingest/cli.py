"""
Command-line batch runner.

Usage
-----
# Process unread messages in the configured mailbox
dmarc-ingest

# Re-process every message, read or not
dmarc-ingest --all

# Only messages addressed to a specific report address
dmarc-ingest --recipient dmarc+rua@example.com

# Show the mailboxes on the server (also the default when IMAP_MAILBOX is empty)
dmarc-ingest --list-mailboxes

Configuration is read from the environment / .env (see dmarc_ingest.config).
Exit status is 1 when the run could not start or was aborted by a
connectivity failure, 0 otherwise; skipped attachments and rejected writes
are listed in the summary but do not change the exit status.
"""

import argparse
import logging
import sys
from typing import Optional

from dmarc_ingest.config import Settings, load_settings
from dmarc_ingest.db import create_document_store
from dmarc_ingest.models.ingestion import IngestionSummary
from dmarc_ingest.services.document_store import StoreError
from dmarc_ingest.services.message_source import ImapMessageSource, SourceError
from dmarc_ingest.services.partition_router import PartitionRouter
from dmarc_ingest.services.pipeline import IngestionPipeline

logger = logging.getLogger("dmarc_ingest.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dmarc-ingest",
        description="Fetch DMARC aggregate reports over IMAP and store each record.",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="Process every message, not only unseen ones",
    )
    parser.add_argument(
        "--recipient",
        default=None,
        help="Only process messages addressed to this exact recipient",
    )
    parser.add_argument(
        "--list-mailboxes",
        action="store_true",
        help="Print the mailboxes available on the server and exit",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def print_mailboxes(source: ImapMessageSource) -> None:
    print("Available mailboxes:")
    for name in source.list_mailboxes():
        print(f"  - {name!r}")


def print_summary(summary: IngestionSummary) -> None:
    print(
        f"Processed {summary.messages} message(s), {summary.attachments} attachment(s), "
        f"{summary.records} record(s)"
    )
    print(f"Partitions: {', '.join(summary.partitions) or '(none)'}")
    if summary.partitions_created:
        print(f"Created partitions: {', '.join(summary.partitions_created)}")
    print(f"Upserted: {summary.upserted}  Failed: {summary.failed}")
    for diagnostic in summary.diagnostics:
        where = diagnostic.attachment_name or diagnostic.context.get("partition") or ""
        print(f"  [{diagnostic.kind}] message={diagnostic.message_id} {where} {diagnostic.reason}")


def run(settings: Settings, args: argparse.Namespace) -> int:
    mailbox = settings.mailbox.model_copy()
    if args.all:
        mailbox.unseen_only = False
    if args.recipient:
        mailbox.filter_recipient = args.recipient

    if args.list_mailboxes or not mailbox.mailbox:
        with ImapMessageSource(mailbox).connect(select_mailbox=False) as source:
            print_mailboxes(source)
        return 0

    store = create_document_store(settings.store)
    store.check_connectivity()

    with ImapMessageSource(mailbox) as source:
        router = PartitionRouter(
            store,
            prefix=settings.partitions.prefix,
            date_format=settings.partitions.date_format,
        )
        summary = IngestionPipeline(source, store, router=router).run(mailbox.search_criteria())

    print_summary(summary)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        return run(load_settings(), args)
    except (SourceError, StoreError) as exc:
        logger.error(f"Run aborted: {exc.message}")
        return 1
    except ValueError as exc:
        logger.error(f"Configuration error: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
