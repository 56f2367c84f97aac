"""
HTTP tests for the /api/ingest endpoints and the health checks.

Settings and the Document Store are replaced through FastAPI
dependency_overrides; IMAP access is patched out. No network calls happen.
"""

import base64
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from dmarc_ingest.config import MailboxConfig, Settings
from dmarc_ingest.main import app
from dmarc_ingest.models.ingestion import UpsertResult
from dmarc_ingest.routers.ingest import get_document_store, get_settings
from dmarc_ingest.services.document_store import StoreConnectionError
from dmarc_ingest.services.message_source import SourceConnectionError

SECRET = "test-webhook-secret"
HEADERS = {"X-Webhook-Secret": SECRET}


def _settings(**overrides) -> Settings:
    values = dict(
        mailbox=MailboxConfig(host="imap.example.com", mailbox="INBOX"),
        webhook_secret=SECRET,
    )
    values.update(overrides)
    return Settings(**values)


def _store():
    store = MagicMock()
    store.registry_table = "dmarc_partitions"
    store.mapping_exists.return_value = False
    store.upsert.return_value = UpsertResult(result="created")
    return store


@pytest.fixture()
def store():
    return _store()


@pytest.fixture()
def client(store):
    settings = _settings()
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_document_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class TestHealth:

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["message"] == "DMARC Ingest API"

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_store_health_ok(self, client, store):
        response = client.get("/health/store")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "store": "reachable", "registry": "dmarc_partitions"}
        store.check_connectivity.assert_called_once()

    def test_store_health_unreachable(self, client, store):
        store.check_connectivity.side_effect = StoreConnectionError("down", "store_unreachable")

        response = client.get("/health/store")

        assert response.status_code == 503
        assert response.json()["detail"] == "down"


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

class TestWebhookSecret:

    def test_missing_secret_is_rejected(self, client):
        response = client.post("/api/ingest/message", content=b"raw")
        assert response.status_code == 401

    def test_wrong_secret_is_rejected(self, client):
        response = client.post(
            "/api/ingest/message", content=b"raw", headers={"X-Webhook-Secret": "nope"}
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid webhook secret"

    def test_unconfigured_secret_rejects_everything(self, client):
        """With no INGEST_WEBHOOK_SECRET set, even an empty header does not match."""
        settings = _settings(webhook_secret="")
        app.dependency_overrides[get_settings] = lambda: settings

        response = client.post("/api/ingest/message", content=b"raw", headers=HEADERS)

        assert response.status_code == 401
        assert response.json()["detail"] == "Webhook secret not configured"


# ---------------------------------------------------------------------------
# POST /message
# ---------------------------------------------------------------------------

class TestIngestMessage:

    def test_raw_message_is_ingested(self, client, store, make_message, make_report, gzip_bytes):
        raw = make_message([("report.xml.gz", gzip_bytes(make_report()), "application/gzip")])

        response = client.post(
            "/api/ingest/message",
            content=raw,
            headers={**HEADERS, "Content-Type": "message/rfc822", "X-Message-Id": "abc"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["messages"] == 1
        assert body["records"] == 1
        assert body["upserted"] == 1
        assert body["partitions_created"] == ["dmarc_2024_01_01"]
        store.create_mapping.assert_called_once()
        partition, document = store.upsert.call_args[0]
        assert partition == "dmarc_2024_01_01"
        assert document["domain"] == "example.com"

    def test_diagnostics_are_returned_with_200(self, client, make_message):
        raw = make_message([("invoice.pdf", b"%PDF", "application/pdf")])

        response = client.post(
            "/api/ingest/message", content=raw, headers={**HEADERS, "X-Message-Id": "m-9"}
        )

        assert response.status_code == 200
        diagnostics = response.json()["diagnostics"]
        assert len(diagnostics) == 1
        assert diagnostics[0]["kind"] == "attachment_skipped"
        assert diagnostics[0]["message_id"] == "m-9"

    def test_empty_body_is_rejected(self, client):
        response = client.post("/api/ingest/message", content=b"", headers=HEADERS)
        assert response.status_code == 422


# ---------------------------------------------------------------------------
# POST /inbound
# ---------------------------------------------------------------------------

class TestIngestInbound:

    def _payload(self, attachments):
        return {
            "message_id": "resend-1",
            "from": "noreply-dmarc-support@google.com",
            "to": "dmarc+rua@example.com",
            "subject": "Report domain: example.com",
            "attachments": [
                {
                    "filename": name,
                    "content": base64.b64encode(content).decode(),
                    "content_type": content_type,
                }
                for name, content, content_type in attachments
            ],
        }

    def test_resend_payload_is_ingested(self, client, store, make_report, make_zip):
        payload = self._payload(
            [
                ("report.zip", make_zip({"report.xml": make_report()}), "application/zip"),
                ("logo.png", b"\x89PNG", "image/png"),
            ]
        )

        response = client.post("/api/ingest/inbound", json=payload, headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["messages"] == 1
        assert body["attachments"] == 1
        assert body["upserted"] == 1
        assert [d["attachment_name"] for d in body["diagnostics"]] == ["logo.png"]
        assert body["diagnostics"][0]["message_id"] == "resend-1"

    def test_undecodable_attachment_is_reported(self, client, store, make_report):
        payload = self._payload([("report.xml", make_report(), "text/xml")])
        payload["attachments"].append(
            {"filename": "second.xml", "content": "@@not-base64@@", "content_type": "text/xml"}
        )

        response = client.post("/api/ingest/inbound", json=payload, headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["upserted"] == 1
        assert len(body["diagnostics"]) == 1
        assert body["diagnostics"][0]["kind"] == "attachment_skipped"
        assert body["diagnostics"][0]["attachment_name"] == "second.xml"

    def test_unknown_provider_is_422(self, client):
        settings = _settings(email_provider="sendgrid")
        app.dependency_overrides[get_settings] = lambda: settings

        response = client.post("/api/ingest/inbound", json=self._payload([]), headers=HEADERS)

        assert response.status_code == 422


# ---------------------------------------------------------------------------
# POST /mailbox
# ---------------------------------------------------------------------------

class TestIngestMailbox:

    def test_runs_over_configured_mailbox(self, client, store):
        with patch("dmarc_ingest.routers.ingest.ImapMessageSource") as mock_source_cls:
            source = mock_source_cls.return_value
            source.list_candidates.return_value = []

            response = client.post("/api/ingest/mailbox", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["messages"] == 0
        source.connect.assert_called_once()
        store.check_connectivity.assert_called_once()

    def test_unreachable_imap_is_503(self, client):
        with patch("dmarc_ingest.routers.ingest.ImapMessageSource") as mock_source_cls:
            mock_source_cls.return_value.connect.side_effect = SourceConnectionError(
                "Could not connect", "source_unreachable"
            )

            response = client.post("/api/ingest/mailbox", headers=HEADERS)

        assert response.status_code == 503
        assert response.json()["detail"] == "Could not connect"

    def test_unreachable_store_is_503(self, client, store):
        store.check_connectivity.side_effect = StoreConnectionError("down", "store_unreachable")

        response = client.post("/api/ingest/mailbox", headers=HEADERS)

        assert response.status_code == 503

    def test_no_mailbox_configured_is_422(self, client):
        settings = _settings(mailbox=MailboxConfig(host="imap.example.com"))
        app.dependency_overrides[get_settings] = lambda: settings

        response = client.post("/api/ingest/mailbox", headers=HEADERS)

        assert response.status_code == 422
