"""
Market Intel - Documents and Preferences Endpoint Tests
"""
import os
import sys
import pytest
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tests.conftest import assert_valid_response  # noqa: E402

pytestmark = pytest.mark.timeout(20)


def upload(client, headers, content=b"quarterly notes", filename="notes.txt", **form):
    return client.post(
        "/api/documents",
        headers=headers,
        files={"file": (filename, content, "text/plain")},
        data=form,
    )


class TestUpload:

    def test_upload_stores_file_and_metadata(self, test_client, users, user_headers):
        response = upload(test_client, user_headers, title="Acme pricing", category="pricing",
                          tags="acme, pricing ,")
        data = assert_valid_response(response, 201)
        assert data["name"] == "Acme pricing"
        assert data["file_size"] == len(b"quarterly notes")
        assert data["tags"] == ["acme", "pricing"]
        assert data["metadata"] == {"original_filename": "notes.txt"}

        download = test_client.get(f"/api/documents/{data['id']}/download", headers=user_headers)
        assert download.status_code == 200
        assert download.content == b"quarterly notes"

    def test_empty_file_rejected(self, test_client, users, user_headers):
        assert upload(test_client, user_headers, content=b"").status_code == 400

    def test_too_large_rejected(self, test_client, users, user_headers, monkeypatch):
        monkeypatch.setenv("MAX_UPLOAD_MB", "0.0001")  # about 100 bytes
        response = upload(test_client, user_headers, content=b"x" * 500)
        assert response.status_code == 413

    def test_oversized_upload_stops_reading_early(self, test_client, users, user_headers, monkeypatch):
        from starlette.datastructures import UploadFile
        monkeypatch.setenv("MAX_UPLOAD_MB", "0.0001")  # 104 bytes
        monkeypatch.setattr("routers.documents.UPLOAD_CHUNK_BYTES", 16)

        original_read = UploadFile.read
        consumed = []

        async def counting_read(self, size=-1):
            chunk = await original_read(self, size)
            consumed.append(len(chunk))
            return chunk

        with patch.object(UploadFile, "read", counting_read):
            response = upload(test_client, user_headers, content=b"x" * 10_000)

        assert response.status_code == 413
        assert response.json()["detail"] == "File too large (max 104 bytes)"
        assert 0 < sum(consumed) <= 112
        assert test_client.get("/api/documents", headers=user_headers).json()["total"] == 0

    def test_unknown_analysis_link_rejected(self, test_client, users, user_headers):
        assert upload(test_client, user_headers, analysis_id="999999").status_code == 404


class TestListAndSearch:

    def test_filters(self, test_client, users, user_headers):
        upload(test_client, user_headers, title="Acme pricing", category="pricing", tags="acme")
        upload(test_client, user_headers, title="Globex roadmap", category="product", tags="globex",
               description="Leaked roadmap summary")

        everything = assert_valid_response(test_client.get("/api/documents", headers=user_headers))
        assert everything["total"] == 2

        by_query = test_client.get("/api/documents?query=roadmap", headers=user_headers).json()
        assert [d["name"] for d in by_query["documents"]] == ["Globex roadmap"]

        by_category = test_client.get("/api/documents?category=pricing", headers=user_headers).json()
        assert by_category["total"] == 1

        by_tag = test_client.get("/api/documents?tag=globex", headers=user_headers).json()
        assert [d["name"] for d in by_tag["documents"]] == ["Globex roadmap"]

    def test_documents_are_private(self, test_client, users, user_headers, analyst_headers):
        doc = upload(test_client, user_headers).json()
        assert test_client.get("/api/documents", headers=analyst_headers).json()["total"] == 0
        assert test_client.get(f"/api/documents/{doc['id']}", headers=analyst_headers).status_code == 404
        assert test_client.get(
            f"/api/documents/{doc['id']}/download", headers=analyst_headers
        ).status_code == 404


class TestUpdateAndDelete:

    def test_partial_update_merges_metadata(self, test_client, users, user_headers):
        doc = upload(test_client, user_headers, title="Draft").json()
        data = assert_valid_response(test_client.put(
            f"/api/documents/{doc['id']}", headers=user_headers,
            json={"name": "Final", "tags": ["final"], "metadata": {"reviewed": True}},
        ))
        assert data["name"] == "Final"
        assert data["tags"] == ["final"]
        assert data["metadata"] == {"original_filename": "notes.txt", "reviewed": True}

    def test_delete_removes_file(self, test_client, users, user_headers, db_session):
        from database import Document
        doc = upload(test_client, user_headers).json()
        path = db_session.query(Document).filter(Document.id == doc["id"]).one().file_path
        assert os.path.exists(path)

        assert_valid_response(test_client.delete(f"/api/documents/{doc['id']}", headers=user_headers))
        assert not os.path.exists(path)
        assert test_client.get(f"/api/documents/{doc['id']}", headers=user_headers).status_code == 404


class TestPreferences:

    def test_defaults_created_on_first_read(self, test_client, users, user_headers):
        data = assert_valid_response(test_client.get("/api/preferences", headers=user_headers))
        assert data["ui_preferences"]["theme"] == "system"
        assert data["notification_settings"]["analysis_complete"] is True

    def test_update_merges_sections(self, test_client, users, user_headers):
        data = assert_valid_response(test_client.put(
            "/api/preferences", headers=user_headers, json={"ui_preferences": {"theme": "dark"}},
        ))
        assert data["ui_preferences"] == {"theme": "dark", "language": "en", "dashboard_layout": "default"}
        assert data["privacy_settings"]["profile_visibility"] == "private"

    def test_requires_auth(self, test_client, users):
        assert test_client.get("/api/preferences").status_code == 401
