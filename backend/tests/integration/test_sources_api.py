"""
Integration Tests — /api/v1 knowledge source endpoints
═══════════════════════════════════════════════════════
Full FastAPI app over httpx.AsyncClient. Every external boundary is
overridden in conftest.py:
  • JWT verification → instructor_payload (or student / other tenant here)
  • KnowledgeSourceService → FakeSourceStore + ManualScheduler
  • S3 → mock_storage

Coverage targets:
  ✅ POST text / url / youtube → 202 PENDING with X-Source-ID + Location
  ✅ body validation → 422 VALIDATION_ERROR envelope
  ✅ upload: stored under the tenant prefix, unsupported type, empty, oversize
  ✅ upload: storage failure → 502, create failure → object removed, 500
  ✅ upload: invalid form → 422 before anything is stored
  ✅ GET after the background run shows READY with full text
  ✅ 404 SOURCE_NOT_FOUND envelope, tenant isolation
  ✅ students read, only instructors write (403 FORBIDDEN)
  ✅ list newest first with previews; DELETE → 204 then 404
  ✅ missing credentials rejected, X-Request-ID echoed, /health
"""

from __future__ import annotations

import uuid
from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient

from knowledge_sources.core.config import settings
from knowledge_sources.core.errors import ExtractionError
from knowledge_sources.schemas.sources import PREVIEW_CHARS
from tests.conftest import StubExtractor

TEXT_URL    = "/api/v1/sources/text"
URL_URL     = "/api/v1/sources/url"
YOUTUBE_URL = "/api/v1/sources/youtube"
UPLOAD_URL  = "/api/v1/sources/upload"


def _text_body(course_id, **overrides) -> dict:
    body = {"course_id": str(course_id), "title": "Lecture notes", "text": "Hello world"}
    body.update(overrides)
    return body


def _as(app, payload):
    from knowledge_sources.auth.token import get_current_user
    app.dependency_overrides[get_current_user] = lambda: payload


# ─────────────────────────────────────────────────────────────────────────────
# Create endpoints
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestCreateSources:

    async def test_text_source_accepted(self, async_client, scheduler, test_course_id):
        response = await async_client.post(TEXT_URL, json=_text_body(test_course_id))

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "PENDING"
        assert body["source_type"] == "TEXT"
        assert body["raw_content"] is None
        assert body["chunk_count"] is None
        assert body["origin"] is None
        assert response.headers["X-Source-ID"] == body["id"]
        assert response.headers["Location"] == f"/api/v1/sources/{body['id']}"
        assert [str(s.id) for s in scheduler.scheduled] == [body["id"]]

    async def test_url_source_accepted(self, async_client, test_course_id):
        response = await async_client.post(URL_URL, json={
            "course_id": str(test_course_id),
            "title":     "Graph theory",
            "url":       "https://example.com/graphs",
        })

        assert response.status_code == 202
        assert response.json()["origin"] == "https://example.com/graphs"

    async def test_youtube_source_accepted(self, async_client, test_course_id):
        response = await async_client.post(YOUTUBE_URL, json={
            "course_id": str(test_course_id),
            "title":     "Recursion video",
            "url":       "https://youtu.be/dQw4w9WgXcQ",
        })

        assert response.status_code == 202
        assert response.json()["source_type"] == "YOUTUBE"

    async def test_non_youtube_url_rejected(self, async_client, test_course_id):
        response = await async_client.post(YOUTUBE_URL, json={
            "course_id": str(test_course_id),
            "title":     "Not a video",
            "url":       "https://example.com/video",
        })

        assert response.status_code == 422
        body = response.json()
        assert body["error_code"] == "VALIDATION_ERROR"
        assert body["details"]

    async def test_invalid_url_rejected(self, async_client, test_course_id):
        response = await async_client.post(URL_URL, json={
            "course_id": str(test_course_id), "title": "x", "url": "ftp://example.com/file",
        })
        assert response.status_code == 422

    async def test_blank_text_rejected(self, async_client, scheduler, test_course_id):
        response = await async_client.post(TEXT_URL, json=_text_body(test_course_id, text="   "))

        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"
        assert scheduler.scheduled == []

    async def test_missing_title_rejected(self, async_client, test_course_id):
        body = _text_body(test_course_id)
        del body["title"]

        response = await async_client.post(TEXT_URL, json=body)

        assert response.status_code == 422
        assert any("title" in d["field"] for d in response.json()["details"])

    async def test_tenant_comes_from_token(self, async_client, store, test_course_id, test_tenant_id):
        response = await async_client.post(
            TEXT_URL, json=_text_body(test_course_id, tenant_id=str(uuid.uuid4())),
        )

        source_id = uuid.UUID(response.json()["id"])
        assert store.rows[source_id].tenant_id == test_tenant_id

    async def test_student_cannot_create(self, app_with_overrides, async_client, student_payload, test_course_id):
        _as(app_with_overrides, student_payload)

        response = await async_client.post(TEXT_URL, json=_text_body(test_course_id))

        assert response.status_code == 403
        body = response.json()
        assert body["error_code"] == "FORBIDDEN"
        assert "instructor" in body["message"]

    async def test_insert_failure_is_internal_error(self, async_client, store, test_course_id):
        store.insert_error = RuntimeError("connection reset")

        response = await async_client.post(TEXT_URL, json=_text_body(test_course_id))

        assert response.status_code == 500
        body = response.json()
        assert body["error_code"] == "INTERNAL_ERROR"
        assert "connection reset" not in body["message"]


# ─────────────────────────────────────────────────────────────────────────────
# Upload
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.storage
class TestUpload:

    def _form(self, course_id) -> dict:
        return {"course_id": str(course_id), "title": "Week 1 handout"}

    async def test_upload_stored_under_tenant_prefix(
        self, async_client, store, mock_storage, test_course_id, test_tenant_id
    ):
        response = await async_client.post(
            UPLOAD_URL,
            data=self._form(test_course_id),
            files={"file": ("handout.txt", b"Sorting algorithms", "text/plain")},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["source_type"] == "FILE_TXT"
        assert body["origin"] == "handout.txt"
        assert body["metadata"]["size_bytes"] == len(b"Sorting algorithms")

        mock_storage.put_object.assert_awaited_once()
        record = store.rows[uuid.UUID(body["id"])]
        assert record.origin.startswith(f"tenants/{test_tenant_id}/sources/")
        assert record.origin.endswith(".txt")

    @pytest.mark.parametrize(
        "filename, expected_type",
        [("paper.pdf", "FILE_PDF"), ("essay.docx", "FILE_DOCX"), ("README.md", "FILE_TXT")],
    )
    async def test_extension_picks_kind(self, async_client, test_course_id, filename, expected_type):
        response = await async_client.post(
            UPLOAD_URL,
            data=self._form(test_course_id),
            files={"file": (filename, b"%content%", "application/octet-stream")},
        )

        assert response.status_code == 202
        assert response.json()["source_type"] == expected_type

    async def test_unsupported_extension(self, async_client, mock_storage, test_course_id):
        response = await async_client.post(
            UPLOAD_URL,
            data=self._form(test_course_id),
            files={"file": ("malware.exe", b"MZ", "application/octet-stream")},
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "UNSUPPORTED_FILE_TYPE"
        mock_storage.put_object.assert_not_awaited()

    async def test_empty_file(self, async_client, mock_storage, test_course_id):
        response = await async_client.post(
            UPLOAD_URL,
            data=self._form(test_course_id),
            files={"file": ("empty.txt", b"", "text/plain")},
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "EMPTY_FILE"
        mock_storage.put_object.assert_not_awaited()

    async def test_oversize_file(self, async_client, mock_storage, test_course_id):
        with patch.object(settings, "max_upload_bytes", 16):
            response = await async_client.post(
                UPLOAD_URL,
                data=self._form(test_course_id),
                files={"file": ("big.txt", b"x" * 64, "text/plain")},
            )

        assert response.status_code == 413
        assert response.json()["error_code"] == "FILE_TOO_LARGE"
        mock_storage.put_object.assert_not_awaited()

    async def test_storage_failure(self, async_client, store, mock_storage, test_course_id):
        mock_storage.put_object.side_effect = ConnectionError("S3 unreachable")

        response = await async_client.post(
            UPLOAD_URL,
            data=self._form(test_course_id),
            files={"file": ("notes.txt", b"content", "text/plain")},
        )

        assert response.status_code == 502
        assert response.json()["error_code"] == "STORAGE_ERROR"
        assert store.rows == {}

    async def test_create_failure_removes_object(self, async_client, store, mock_storage, test_course_id):
        store.insert_error = RuntimeError("db down")

        response = await async_client.post(
            UPLOAD_URL,
            data=self._form(test_course_id),
            files={"file": ("notes.txt", b"content", "text/plain")},
        )

        assert response.status_code == 500
        mock_storage.delete_object.assert_awaited_once()
        stored_name = mock_storage.put_object.await_args.args[1]
        assert mock_storage.delete_object.await_args.args[1] == stored_name

    async def test_invalid_title_leaves_no_object(self, async_client, store, mock_storage, test_course_id):
        response = await async_client.post(
            UPLOAD_URL,
            data={"course_id": str(test_course_id), "title": "   "},
            files={"file": ("notes.txt", b"content", "text/plain")},
        )

        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"
        mock_storage.put_object.assert_not_awaited()
        mock_storage.delete_object.assert_not_awaited()
        assert store.rows == {}

    async def test_origin_is_the_stored_key(
        self, async_client, store, mock_storage, test_course_id, test_tenant_id
    ):
        response = await async_client.post(
            UPLOAD_URL,
            data=self._form(test_course_id),
            files={"file": ("slides.pdf", b"%PDF-1.4", "application/pdf")},
        )

        assert response.status_code == 202
        stored_name = mock_storage.put_object.await_args.args[1]
        record = store.rows[uuid.UUID(response.json()["id"])]
        assert record.origin == f"tenants/{test_tenant_id}/sources/{stored_name}"
        assert record.metadata["content_type"] == "application/pdf"


# ─────────────────────────────────────────────────────────────────────────────
# Read endpoints
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestReadSources:

    async def test_get_after_background_run(self, async_client, scheduler, make_pipeline, test_course_id):
        created = (await async_client.post(TEXT_URL, json=_text_body(test_course_id))).json()
        await scheduler.run_all(make_pipeline(segments=1))

        response = await async_client.get(f"/api/v1/sources/{created['id']}")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "READY"
        assert body["raw_content"] == "alpha beta gamma"
        assert body["chunk_count"] == 1
        assert body["search_available"] is True
        assert body["notice"] is None

    async def test_get_failed_source_shows_reason(self, async_client, scheduler, make_pipeline, test_course_id):
        created = (await async_client.post(TEXT_URL, json=_text_body(test_course_id))).json()
        await scheduler.run_all(make_pipeline(extractor=StubExtractor(error=ExtractionError("HTTP 404"))))

        body = (await async_client.get(f"/api/v1/sources/{created['id']}")).json()

        assert body["status"] == "FAILED"
        assert body["error_message"] == "HTTP 404"
        assert body["raw_content"] is None

    async def test_get_missing_source(self, async_client):
        missing = uuid.uuid4()

        response = await async_client.get(f"/api/v1/sources/{missing}")

        assert response.status_code == 404
        body = response.json()
        assert body["error_code"] == "SOURCE_NOT_FOUND"
        assert str(missing) in body["message"]

    async def test_invalid_source_id(self, async_client):
        response = await async_client.get("/api/v1/sources/not-a-uuid")
        assert response.status_code == 422

    async def test_student_can_read(self, app_with_overrides, async_client, student_payload, test_course_id):
        created = (await async_client.post(TEXT_URL, json=_text_body(test_course_id))).json()
        _as(app_with_overrides, student_payload)

        response = await async_client.get(f"/api/v1/sources/{created['id']}")

        assert response.status_code == 200

    async def test_other_tenant_gets_404(
        self, app_with_overrides, async_client, instructor_payload, other_tenant_id, test_course_id
    ):
        created = (await async_client.post(TEXT_URL, json=_text_body(test_course_id))).json()
        _as(app_with_overrides, instructor_payload.model_copy(update={"tenant_id": other_tenant_id}))

        response = await async_client.get(f"/api/v1/sources/{created['id']}")

        assert response.status_code == 404

    async def test_list_newest_first_with_preview(
        self, async_client, scheduler, make_pipeline, test_course_id
    ):
        long_text = "word " * 400
        first = (await async_client.post(TEXT_URL, json=_text_body(test_course_id, title="First"))).json()
        second = (await async_client.post(TEXT_URL, json=_text_body(test_course_id, title="Second"))).json()
        await scheduler.run_all(make_pipeline(extractor=StubExtractor(text=long_text.strip())))

        response = await async_client.get(f"/api/v1/courses/{test_course_id}/sources")

        assert response.status_code == 200
        body = response.json()
        assert body["course_id"] == str(test_course_id)
        assert body["total"] == 2
        assert [s["id"] for s in body["sources"]] == [second["id"], first["id"]]
        assert len(body["sources"][0]["preview"]) == PREVIEW_CHARS
        assert "raw_content" not in body["sources"][0]

    async def test_list_empty_course(self, async_client):
        course_id = uuid.uuid4()
        body = (await async_client.get(f"/api/v1/courses/{course_id}/sources")).json()
        assert body == {"course_id": str(course_id), "total": 0, "sources": []}


# ─────────────────────────────────────────────────────────────────────────────
# Delete
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestDeleteSource:

    async def test_delete_then_not_found(self, async_client, test_course_id):
        created = (await async_client.post(TEXT_URL, json=_text_body(test_course_id))).json()

        response = await async_client.delete(f"/api/v1/sources/{created['id']}")
        assert response.status_code == 204
        assert response.content == b""

        again = await async_client.delete(f"/api/v1/sources/{created['id']}")
        assert again.status_code == 404
        assert again.json()["error_code"] == "SOURCE_NOT_FOUND"

    async def test_delete_before_processing_is_never_resurrected(
        self, async_client, scheduler, make_pipeline, test_course_id
    ):
        created = (await async_client.post(TEXT_URL, json=_text_body(test_course_id))).json()
        await async_client.delete(f"/api/v1/sources/{created['id']}")

        await scheduler.run_all(make_pipeline())

        response = await async_client.get(f"/api/v1/sources/{created['id']}")
        assert response.status_code == 404

    async def test_student_cannot_delete(self, app_with_overrides, async_client, student_payload, test_course_id):
        created = (await async_client.post(TEXT_URL, json=_text_body(test_course_id))).json()
        _as(app_with_overrides, student_payload)

        response = await async_client.delete(f"/api/v1/sources/{created['id']}")

        assert response.status_code == 403


# ─────────────────────────────────────────────────────────────────────────────
# Cross-cutting
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestCrossCutting:

    async def test_missing_credentials_rejected(self, app_with_overrides, test_course_id):
        from knowledge_sources.auth.token import get_current_user
        app_with_overrides.dependency_overrides.pop(get_current_user)

        transport = ASGITransport(app=app_with_overrides, raise_app_exceptions=False)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post(TEXT_URL, json=_text_body(test_course_id))

        # 403 on older FastAPI releases, 401 on newer ones
        assert response.status_code in (401, 403)
        assert response.json()["error_code"] in ("UNAUTHORIZED", "FORBIDDEN")

    async def test_request_id_echoed(self, async_client):
        response = await async_client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    async def test_request_id_generated(self, async_client):
        response = await async_client.get("/health")
        uuid.UUID(response.headers["X-Request-ID"])

    async def test_health(self, async_client):
        response = await async_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "knowledge-sources-api"}

    async def test_ready_reports_database_down(self, async_client):
        with patch(
            "knowledge_sources.main.check_db_health",
            return_value={"status": "error", "detail": "connection refused"},
        ):
            response = await async_client.get("/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"
