"""
Tests for the dmarc-ingest command-line runner.

IMAP and Supabase are patched at the cli module boundary.
"""

from unittest.mock import MagicMock, patch

from dmarc_ingest import cli
from dmarc_ingest.config import MailboxConfig, Settings
from dmarc_ingest.models.ingestion import UpsertResult
from dmarc_ingest.services.document_store import StoreConnectionError
from dmarc_ingest.services.message_source import SourceConnectionError


def _settings(mailbox="INBOX") -> Settings:
    return Settings(mailbox=MailboxConfig(host="imap.example.com", mailbox=mailbox))


def _store():
    store = MagicMock()
    store.mapping_exists.return_value = True
    store.upsert.return_value = UpsertResult(result="created")
    return store


class TestRun:

    def test_batch_run_prints_summary(self, capsys, make_message, make_report):
        raw = make_message([("report.xml", make_report(), "text/xml")])
        args = cli.build_parser().parse_args([])

        with patch("dmarc_ingest.cli.ImapMessageSource") as mock_cls, \
                patch("dmarc_ingest.cli.create_document_store", return_value=_store()):
            source = mock_cls.return_value.__enter__.return_value
            source.list_candidates.return_value = ["1"]
            source.fetch_raw.return_value = raw

            assert cli.run(_settings(), args) == 0

        out = capsys.readouterr().out
        assert "Processed 1 message(s), 1 attachment(s), 1 record(s)" in out
        assert "Partitions: dmarc_2024_01_01" in out
        assert "Upserted: 1  Failed: 0" in out

    def test_flags_override_search_criteria(self):
        args = cli.build_parser().parse_args(["--all", "--recipient", "dmarc+rua@example.com"])

        with patch("dmarc_ingest.cli.ImapMessageSource") as mock_cls, \
                patch("dmarc_ingest.cli.create_document_store", return_value=_store()):
            source = mock_cls.return_value.__enter__.return_value
            source.list_candidates.return_value = []

            cli.run(_settings(), args)

        mailbox = mock_cls.call_args[0][0]
        assert mailbox.unseen_only is False
        assert mailbox.filter_recipient == "dmarc+rua@example.com"
        criteria = source.list_candidates.call_args[0][0]
        assert criteria.unseen_only is False
        assert criteria.recipient == "dmarc+rua@example.com"

    def test_settings_are_not_mutated_by_flags(self):
        settings = _settings()
        args = cli.build_parser().parse_args(["--all"])

        with patch("dmarc_ingest.cli.ImapMessageSource") as mock_cls, \
                patch("dmarc_ingest.cli.create_document_store", return_value=_store()):
            mock_cls.return_value.__enter__.return_value.list_candidates.return_value = []
            cli.run(settings, args)

        assert settings.mailbox.unseen_only is True

    def test_lists_mailboxes_when_none_configured(self, capsys):
        args = cli.build_parser().parse_args([])

        with patch("dmarc_ingest.cli.ImapMessageSource") as mock_cls, \
                patch("dmarc_ingest.cli.create_document_store") as mock_store:
            connected = mock_cls.return_value.connect.return_value
            connected.__enter__.return_value.list_mailboxes.return_value = ["INBOX", "DMARC"]

            assert cli.run(_settings(mailbox=""), args) == 0

        mock_cls.return_value.connect.assert_called_once_with(select_mailbox=False)
        mock_store.assert_not_called()
        out = capsys.readouterr().out
        assert "Available mailboxes:" in out
        assert "  - 'DMARC'" in out


class TestMain:

    def test_connection_failure_exits_1(self):
        with patch("dmarc_ingest.cli.load_settings", return_value=_settings()), \
                patch("dmarc_ingest.cli.create_document_store", return_value=_store()), \
                patch("dmarc_ingest.cli.ImapMessageSource") as mock_cls:
            mock_cls.return_value.__enter__.side_effect = SourceConnectionError(
                "Could not connect", "source_unreachable"
            )

            assert cli.main([]) == 1

    def test_store_unreachable_exits_1(self):
        store = _store()
        store.check_connectivity.side_effect = StoreConnectionError("down", "store_unreachable")

        with patch("dmarc_ingest.cli.load_settings", return_value=_settings()), \
                patch("dmarc_ingest.cli.create_document_store", return_value=store):
            assert cli.main([]) == 1

    def test_missing_store_credentials_exit_1(self):
        with patch("dmarc_ingest.cli.load_settings", return_value=_settings()):
            # Settings() carries no Supabase URL/key
            assert cli.main([]) == 1
