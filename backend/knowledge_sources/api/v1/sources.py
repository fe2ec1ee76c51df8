"""
Knowledge Sources API Router

  POST   /sources/text                 paste text               (instructor+)
  POST   /sources/url                  fetch a web page         (instructor+)
  POST   /sources/youtube              fetch a video transcript (instructor+)
  POST   /sources/upload               PDF / DOCX / TXT / MD    (instructor+)
  GET    /sources/{source_id}          full record              (any role)
  GET    /courses/{course_id}/sources  summaries, newest first  (any role)
  DELETE /sources/{source_id}                                   (instructor+)

Every POST returns 202 with the PENDING record; extraction and embedding
run in the background. Clients poll GET /sources/{id} until status is
READY or FAILED.

tenant_id always comes from the verified JWT, never from the body.
"""

from __future__ import annotations

import logging
import mimetypes
import os
from typing import Any
from uuid import UUID, uuid4

from fastapi import (
    APIRouter,
    File,
    Form,
    HTTPException,
    Request,
    UploadFile,
    status,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from knowledge_sources.auth.dependencies import SourceServiceDep, TenantStorage
from knowledge_sources.auth.rbac import RequireInstructor, RequireStudent
from knowledge_sources.auth.token import TokenPayload
from knowledge_sources.core.config import settings
from knowledge_sources.core.errors import SourceNotFoundError
from knowledge_sources.schemas.sources import (
    FILE_EXTENSION_TYPES,
    AddTextSourceBody,
    AddUrlSourceBody,
    AddYoutubeSourceBody,
    CreateSourceRequest,
    ErrorResponse,
    SourceErrors,
    SourceListResponse,
    SourceRecord,
    SourceResponse,
    SourceSummary,
    SourceType,
)
from knowledge_sources.services.ingestion import KnowledgeSourceService
from knowledge_sources.storage.s3 import ResourceType

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Knowledge Sources"])

_WRITE_RESPONSES: dict[int | str, dict[str, Any]] = {
    202: {"model": SourceResponse, "description": "Source accepted for processing"},
    401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
    403: {"model": ErrorResponse, "description": "Insufficient role (requires instructor+)"},
    422: {"model": ErrorResponse, "description": "Request body failed validation"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _create_request(user: TokenPayload, **fields: Any) -> CreateSourceRequest:
    """Build the orchestrator request; invalid input is reported like any 422."""
    try:
        return CreateSourceRequest(tenant_id=user.tenant_id, **fields)
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc


def _accepted(record: SourceRecord) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=SourceResponse.from_record(record).model_dump(mode="json"),
        headers={
            "X-Source-ID": str(record.id),
            "Location":    f"/api/v1/sources/{record.id}",
        },
    )


def _not_found(exc: SourceNotFoundError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=SourceErrors.source_not_found(exc.source_id).model_dump(mode="json"),
    )


async def _submit(service: KnowledgeSourceService, request: CreateSourceRequest) -> JSONResponse:
    record = await service.create_and_process(request)
    return _accepted(record)


# ---------------------------------------------------------------------------
# POST /sources/text
# ---------------------------------------------------------------------------

@router.post(
    "/sources/text",
    response_model=SourceResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Add pasted text as a knowledge source",
    responses=_WRITE_RESPONSES,
)
async def add_text_source(
    body:    AddTextSourceBody,
    service: SourceServiceDep,
    user:    TokenPayload = RequireInstructor,
) -> JSONResponse:
    request = _create_request(
        user,
        course_id=body.course_id,
        title=body.title,
        source_type=SourceType.TEXT,
        origin=body.text,
    )
    return await _submit(service, request)


# ---------------------------------------------------------------------------
# POST /sources/url
# ---------------------------------------------------------------------------

@router.post(
    "/sources/url",
    response_model=SourceResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Add a web page as a knowledge source",
    responses=_WRITE_RESPONSES,
)
async def add_url_source(
    body:    AddUrlSourceBody,
    service: SourceServiceDep,
    user:    TokenPayload = RequireInstructor,
) -> JSONResponse:
    request = _create_request(
        user,
        course_id=body.course_id,
        title=body.title,
        source_type=SourceType.URL,
        origin=body.url,
    )
    return await _submit(service, request)


# ---------------------------------------------------------------------------
# POST /sources/youtube
# ---------------------------------------------------------------------------

@router.post(
    "/sources/youtube",
    response_model=SourceResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Add a YouTube video transcript as a knowledge source",
    responses=_WRITE_RESPONSES,
)
async def add_youtube_source(
    body:    AddYoutubeSourceBody,
    service: SourceServiceDep,
    user:    TokenPayload = RequireInstructor,
) -> JSONResponse:
    request = _create_request(
        user,
        course_id=body.course_id,
        title=body.title,
        source_type=SourceType.YOUTUBE,
        origin=body.url,
    )
    return await _submit(service, request)


# ---------------------------------------------------------------------------
# POST /sources/upload
# ---------------------------------------------------------------------------

@router.post(
    "/sources/upload",
    response_model=SourceResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a PDF, DOCX, TXT or Markdown file as a knowledge source",
    responses={
        **_WRITE_RESPONSES,
        400: {"model": ErrorResponse, "description": "Unsupported file type or empty file"},
        413: {"model": ErrorResponse, "description": "File exceeds the upload limit"},
        502: {"model": ErrorResponse, "description": "Object storage unavailable"},
    },
)
async def upload_source(
    request:   Request,
    service:   SourceServiceDep,
    storage:   TenantStorage,
    file:      UploadFile = File(..., description="PDF, DOCX, TXT or MD, max 50 MB"),
    course_id: UUID       = Form(...),
    title:     str        = Form(..., min_length=1, max_length=255),
    user:      TokenPayload = RequireInstructor,
) -> JSONResponse:
    filename = file.filename or ""
    ext = os.path.splitext(filename)[1].lower()
    source_type = FILE_EXTENSION_TYPES.get(ext)
    if source_type is None:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=SourceErrors.unsupported_file_type(filename).model_dump(mode="json"),
        )

    # Reject oversized requests before reading the body
    limit = settings.max_upload_bytes
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > limit + 64 * 1024:
        return JSONResponse(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            content=SourceErrors.file_too_large(int(content_length), limit).model_dump(mode="json"),
        )

    body = await file.read()
    if len(body) > limit:
        return JSONResponse(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            content=SourceErrors.file_too_large(len(body), limit).model_dump(mode="json"),
        )
    if not body:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=SourceErrors.empty_file().model_dump(mode="json"),
        )

    object_name  = f"{uuid4()}{ext}"
    content_type = (
        file.content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
    )
    # Built before the put: a rejected request must not leave an object in S3
    create = _create_request(
        user,
        course_id=course_id,
        title=title,
        source_type=source_type,
        origin=storage.key_for(ResourceType.SOURCE, object_name),
        metadata={
            "filename":     filename,
            "size_bytes":   len(body),
            "content_type": content_type,
        },
    )

    try:
        await storage.put_object(
            ResourceType.SOURCE, object_name, body, content_type=content_type,
        )
    except Exception as exc:
        logger.exception("Source upload to S3 failed | tenant=%s file=%s", user.tenant_id, filename)
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content=SourceErrors.storage_error(type(exc).__name__).model_dump(mode="json"),
        )

    try:
        return await _submit(service, create)
    except Exception:
        # No row references the object, so remove it before surfacing the error
        await storage.delete_object(ResourceType.SOURCE, object_name)
        raise


# ---------------------------------------------------------------------------
# GET /sources/{source_id}
# ---------------------------------------------------------------------------

@router.get(
    "/sources/{source_id}",
    response_model=SourceResponse,
    summary="Get a knowledge source, including its full extracted text",
    responses={404: {"model": ErrorResponse}},
)
async def get_source(
    source_id: UUID,
    service:   SourceServiceDep,
    user:      TokenPayload = RequireStudent,
) -> SourceResponse:
    try:
        record = await service.find_by_id(source_id, user.tenant_id)
    except SourceNotFoundError as exc:
        raise _not_found(exc)
    return SourceResponse.from_record(record)


# ---------------------------------------------------------------------------
# GET /courses/{course_id}/sources
# ---------------------------------------------------------------------------

@router.get(
    "/courses/{course_id}/sources",
    response_model=SourceListResponse,
    summary="List the knowledge sources of a course, newest first",
)
async def list_course_sources(
    course_id: UUID,
    service:   SourceServiceDep,
    user:      TokenPayload = RequireStudent,
) -> SourceListResponse:
    records = await service.list_by_course_sources(user.tenant_id, course_id)
    return SourceListResponse(
        course_id=course_id,
        total=len(records),
        sources=[SourceSummary.from_record(r) for r in records],
    )


# ---------------------------------------------------------------------------
# DELETE /sources/{source_id}
# ---------------------------------------------------------------------------

@router.delete(
    "/sources/{source_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a knowledge source",
    responses={404: {"model": ErrorResponse}},
)
async def delete_source(
    source_id: UUID,
    service:   SourceServiceDep,
    user:      TokenPayload = RequireInstructor,
) -> None:
    try:
        await service.delete_source(source_id, user.tenant_id)
    except SourceNotFoundError as exc:
        raise _not_found(exc)
