"""
Tests for the attachment endpoints.

Tests cover:
- GET /api/attachments/{identifier}: exact name, UUID, wrong extension,
  fragment fallback and not found
- GET /api/attachments/{identifier}/resolve
- GET /api/media/{token} and URL revocation on reindex
- Attachment lookup metrics
- Transfers aborted by a client disconnect
"""

import logging
from urllib.parse import quote

import anyio
import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from tests.conftest import AUDIO_UUID, IMAGE_FILE, IMAGE_UUID
from wa_viewer.config import Settings
from wa_viewer.main import AttachmentFileResponse, create_app


def aborted_count() -> float:
    return REGISTRY.get_sample_value("attachment_lookups_total", {"result": "aborted"}) or 0.0


def http_scope() -> dict:
    return {"type": "http", "method": "GET", "path": "/", "http_version": "1.1", "headers": []}


class TestGetAttachment:
    def test_exact_file_name(self, client):
        response = client.get(f"/api/attachments/{quote(IMAGE_FILE)}")

        assert response.status_code == 200
        assert response.content == b"\xff\xd8\xff\xe0fake-jpeg"
        assert response.headers["content-type"].startswith("image/jpeg")

    def test_bare_uuid(self, client):
        response = client.get(f"/api/attachments/{IMAGE_UUID}")

        assert response.status_code == 200
        assert response.content == b"\xff\xd8\xff\xe0fake-jpeg"

    def test_uuid_with_wrong_extension(self, client):
        """The stored reference says .opus, the folder holds an .mp3."""
        response = client.get(f"/api/attachments/{AUDIO_UUID}.opus")

        assert response.status_code == 200
        assert response.content == b"ID3fake-mp3"
        assert response.headers["content-type"].startswith("audio/")

    def test_base_name_with_other_extension(self, client):
        response = client.get("/api/attachments/relatorio.docx")

        assert response.status_code == 200
        assert response.content == b"%PDF-1.4 fake"

    def test_fragment_fallback(self, client):
        response = client.get("/api/attachments/Foto")

        assert response.status_code == 200
        assert response.content == b"\xff\xd8\xff\xe0fake-jpeg"

    def test_not_found(self, client):
        response = client.get("/api/attachments/00000000-0000-0000-0000-000000000000.jpg")

        assert response.status_code == 404
        assert response.json()["detail"] == "attachment not found"
        assert "x-request-id" in response.headers

    @pytest.mark.parametrize("identifier", ["abc%00def", "a" * 300])
    def test_unusable_file_name_is_not_found(self, client, identifier):
        response = client.get(f"/api/attachments/{identifier}")

        assert response.status_code == 404
        assert response.json()["detail"] == "attachment not found"

    def test_long_identifier_falls_back_to_index(self, client):
        """Too long for a direct lookup, but the embedded UUID still matches."""
        response = client.get(f"/api/attachments/{IMAGE_UUID}{'x' * 300}")

        assert response.status_code == 200
        assert response.content == b"\xff\xd8\xff\xe0fake-jpeg"

    def test_no_media_folder(self, export_path):
        settings = Settings(DATABASE_PATH=export_path, LOG_LEVEL="WARNING")
        with TestClient(create_app(settings)) as bare_client:
            response = bare_client.get(f"/api/attachments/{IMAGE_UUID}")

        assert response.status_code == 404


class TestResolveAttachment:
    def test_resolved(self, client):
        response = client.get(f"/api/attachments/{AUDIO_UUID}.opus/resolve")

        assert response.status_code == 200
        data = response.json()
        assert data["inferred_kind"] == "audio"
        assert data["url"].startswith("/api/media/")

    def test_unavailable_is_null(self, client):
        response = client.get("/api/attachments/missing-file.jpg/resolve")

        assert response.status_code == 200
        assert response.json() is None

    def test_url_is_stable(self, client):
        first = client.get(f"/api/attachments/{IMAGE_UUID}/resolve").json()
        second = client.get(f"/api/attachments/{IMAGE_UUID}.opus/resolve").json()

        assert first["url"] == second["url"]


class TestMedia:
    def test_stream_by_token(self, client):
        url = client.get("/api/attachments/relatorio/resolve").json()["url"]

        response = client.get(url)

        assert response.status_code == 200
        assert response.content == b"%PDF-1.4 fake"
        assert response.headers["content-type"].startswith("application/pdf")

    def test_unknown_token(self, client):
        response = client.get("/api/media/not-a-token")

        assert response.status_code == 404

    def test_reindex_revokes_urls(self, client):
        url = client.get(f"/api/attachments/{IMAGE_UUID}/resolve").json()["url"]
        assert client.get(url).status_code == 200

        response = client.post("/api/attachments/reindex")

        assert response.status_code == 200
        assert response.json() == {"files_indexed": 3, "urls_revoked": 1}
        assert client.get(url).status_code == 404

        fresh = client.get(f"/api/attachments/{IMAGE_UUID}/resolve").json()["url"]
        assert client.get(fresh).status_code == 200

    def test_reindex_picks_up_new_files(self, client, media_dir):
        (media_dir / "novo.png").write_bytes(b"png")

        response = client.post("/api/attachments/reindex")

        assert response.json()["files_indexed"] == 4
        assert client.get("/api/attachments/novo/resolve").json()["inferred_kind"] == "image"

    def test_reindex_counts_files_sharing_a_base_name(self, client, media_dir):
        (media_dir / "relatorio.png").write_bytes(b"png")

        response = client.post("/api/attachments/reindex")

        assert response.json()["files_indexed"] == 4

    def test_reindex_without_media_folder(self, export_path):
        settings = Settings(DATABASE_PATH=export_path, LOG_LEVEL="WARNING")
        with TestClient(create_app(settings)) as bare_client:
            response = bare_client.post("/api/attachments/reindex")

        assert response.status_code == 409


class TestAttachmentMetrics:
    @pytest.mark.parametrize("identifier, result", [
        (quote(IMAGE_FILE), "direct"),
        (IMAGE_UUID, "indexed"),
        ("definitely-not-there", "not_found"),
    ])
    def test_lookup_outcome_recorded(self, client, identifier, result):
        client.get(f"/api/attachments/{identifier}")

        metrics = client.get("/metrics").text
        assert f'attachment_lookups_total{{result="{result}"}}' in metrics

    def test_served_attachment_is_not_aborted(self, client):
        before = aborted_count()

        response = client.get("/api/attachments/relatorio.pdf")

        assert response.status_code == 200
        assert aborted_count() == before


@pytest.mark.anyio
class TestTransferAborted:
    async def test_disconnect_before_body_completes(self, media_dir, caplog):
        response = AttachmentFileResponse(media_dir / "relatorio.pdf", media_type="application/pdf")
        sent = []

        async def receive():
            return {"type": "http.disconnect"}

        async def send(message):
            sent.append(message)

        before = aborted_count()
        with caplog.at_level(logging.WARNING, logger="wa_viewer.main"):
            await response(http_scope(), receive, send)

        assert aborted_count() == before + 1
        assert any("aborted by client" in r.getMessage() for r in caplog.records)
        assert not any(
            m["type"] == "http.response.body" and not m.get("more_body", False) for m in sent
        )

    async def test_complete_transfer_is_not_aborted(self, media_dir):
        response = AttachmentFileResponse(media_dir / "relatorio.pdf", media_type="application/pdf")
        sent = []
        done = anyio.Event()

        async def receive():
            await done.wait()
            return {"type": "http.disconnect"}

        async def send(message):
            sent.append(message)
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                done.set()

        before = aborted_count()
        await response(http_scope(), receive, send)

        assert aborted_count() == before
        assert b"".join(m.get("body", b"") for m in sent if m["type"] == "http.response.body") == b"%PDF-1.4 fake"
