"""
Knowledge Sources — Pydantic Request/Response Schemas

Three layers live here:
  - Lifecycle enums shared by the ORM model, the pipeline and the API
  - CreateSourceRequest / SourceRecord: the orchestrator's own boundary
  - HTTP bodies and the structured error envelope for /api/v1/sources

Design decisions:
  - source ids are always server-generated (UUID4); never client-supplied.
  - tenant_id on CreateSourceRequest comes from the verified JWT, the
    HTTP bodies do not carry it.
  - preview / search_available / notice are derived on read and never
    persisted.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from urllib.parse import urlparse
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Lifecycle enums
# ---------------------------------------------------------------------------

class SourceType(str, Enum):
    TEXT      = "TEXT"
    URL       = "URL"
    YOUTUBE   = "YOUTUBE"
    FILE_PDF  = "FILE_PDF"
    FILE_DOCX = "FILE_DOCX"
    FILE_TXT  = "FILE_TXT"

    @property
    def is_file(self) -> bool:
        return self.value.startswith("FILE_")


class SourceStatus(str, Enum):
    """
    Maps to saas.knowledge_sources.status.
    Transitions: PENDING → PROCESSING → READY | FAILED
    """
    PENDING    = "PENDING"      # row inserted, pipeline not yet started
    PROCESSING = "PROCESSING"   # pipeline claimed the row
    READY      = "READY"        # text extracted; chunk_count may be 0
    FAILED     = "FAILED"       # extraction failed, see error_message


PREVIEW_CHARS = 500

SEARCH_UNAVAILABLE_NOTICE = (
    "Semantic search is not available for this source yet, "
    "but its full text is ready to read."
)

_YOUTUBE_HOSTS = frozenset(
    {"youtube.com", "www.youtube.com", "m.youtube.com", "youtu.be", "music.youtube.com"}
)


# ---------------------------------------------------------------------------
# Upload constraints
# ---------------------------------------------------------------------------

FILE_EXTENSION_TYPES: dict[str, SourceType] = {
    ".pdf":  SourceType.FILE_PDF,
    ".docx": SourceType.FILE_DOCX,
    ".txt":  SourceType.FILE_TXT,
    ".md":   SourceType.FILE_TXT,
}


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def is_youtube_url(value: str) -> bool:
    return _is_http_url(value) and (urlparse(value).hostname or "").lower() in _YOUTUBE_HOSTS


# ---------------------------------------------------------------------------
# Orchestrator boundary
# ---------------------------------------------------------------------------

class CreateSourceRequest(BaseModel):
    """
    Everything needed to insert a PENDING source.

    origin holds the literal text for TEXT, the URL for URL/YOUTUBE and
    the tenant-scoped object key for FILE_* kinds.
    """
    tenant_id:   UUID
    course_id:   UUID
    title:       str = Field(..., min_length=1, max_length=255)
    source_type: SourceType
    origin:      str
    metadata:    dict[str, Any] = Field(default_factory=dict)

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @model_validator(mode="after")
    def _check_origin(self) -> "CreateSourceRequest":
        kind = self.source_type
        if kind is SourceType.TEXT:
            if not self.origin.strip():
                raise ValueError("Text sources require non-empty text")
        elif kind is SourceType.URL:
            if not _is_http_url(self.origin):
                raise ValueError("URL sources require an http(s) URL")
        elif kind is SourceType.YOUTUBE:
            if not is_youtube_url(self.origin):
                raise ValueError("YouTube sources require a youtube.com or youtu.be URL")
        elif not self.origin.startswith(f"tenants/{self.tenant_id}/"):
            raise ValueError("File sources require an object key under the tenant prefix")
        return self


class SourceRecord(BaseModel):
    """Immutable snapshot of one saas.knowledge_sources row."""
    model_config = ConfigDict(frozen=True)

    id:            UUID
    tenant_id:     UUID
    course_id:     UUID
    title:         str
    source_type:   SourceType
    origin:        str
    status:        SourceStatus
    raw_content:   str | None = None
    chunk_count:   int | None = None
    error_message: str | None = None
    metadata:      dict[str, Any] = Field(default_factory=dict)
    created_at:    datetime
    updated_at:    datetime

    @property
    def search_available(self) -> bool:
        return self.status is SourceStatus.READY and (self.chunk_count or 0) > 0

    @property
    def notice(self) -> str | None:
        if self.status is SourceStatus.FAILED:
            return self.error_message
        if self.status is SourceStatus.READY and not self.search_available:
            return SEARCH_UNAVAILABLE_NOTICE
        return None

    @property
    def preview(self) -> str | None:
        if self.raw_content is None:
            return None
        return self.raw_content[:PREVIEW_CHARS]


# ---------------------------------------------------------------------------
# HTTP request bodies
# ---------------------------------------------------------------------------

class AddTextSourceBody(BaseModel):
    course_id: UUID
    title:     str = Field(..., min_length=1, max_length=255)
    text:      str = Field(..., min_length=1, description="Pasted text content")


class AddUrlSourceBody(BaseModel):
    course_id: UUID
    title:     str = Field(..., min_length=1, max_length=255)
    url:       str = Field(..., description="http(s) page to fetch")

    @field_validator("url")
    @classmethod
    def _check_url(cls, v: str) -> str:
        v = v.strip()
        if not _is_http_url(v):
            raise ValueError("must be an http(s) URL")
        return v


class AddYoutubeSourceBody(AddUrlSourceBody):
    @field_validator("url")
    @classmethod
    def _check_youtube(cls, v: str) -> str:
        if not is_youtube_url(v):
            raise ValueError("must be a youtube.com or youtu.be URL")
        return v


# ---------------------------------------------------------------------------
# HTTP responses
# ---------------------------------------------------------------------------

class SourceSummary(BaseModel):
    """List item: carries a preview instead of the full text."""
    id:               UUID
    course_id:        UUID
    title:            str
    source_type:      SourceType
    origin:           str | None = Field(None, description="URL or filename; omitted for pasted text")
    status:           SourceStatus
    chunk_count:      int | None = None
    error_message:    str | None = None
    preview:          str | None = Field(None, description=f"First {PREVIEW_CHARS} characters of the extracted text")
    search_available: bool = False
    notice:           str | None = None
    created_at:       datetime
    updated_at:       datetime

    @classmethod
    def from_record(cls, record: SourceRecord) -> "SourceSummary":
        if record.source_type is SourceType.TEXT:
            origin = None
        elif record.source_type.is_file:
            origin = record.metadata.get("filename") or record.origin.rsplit("/", 1)[-1]
        else:
            origin = record.origin
        return cls(
            id=record.id,
            course_id=record.course_id,
            title=record.title,
            source_type=record.source_type,
            origin=origin,
            status=record.status,
            chunk_count=record.chunk_count,
            error_message=record.error_message,
            preview=record.preview,
            search_available=record.search_available,
            notice=record.notice,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class SourceResponse(SourceSummary):
    """Single-source read: includes the full extracted text."""
    raw_content: str | None = None
    metadata:    dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_record(cls, record: SourceRecord) -> "SourceResponse":
        summary = SourceSummary.from_record(record)
        return cls(
            **summary.model_dump(),
            raw_content=record.raw_content,
            metadata=record.metadata,
        )


class SourceListResponse(BaseModel):
    course_id: UUID
    total:     int
    sources:   list[SourceSummary]


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error: may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


class SourceErrors:
    """Factories for every documented error case."""

    @staticmethod
    def source_not_found(source_id: UUID | str) -> ErrorResponse:
        return ErrorResponse(
            error_code="SOURCE_NOT_FOUND",
            message=f"KnowledgeSource {source_id} not found",
            details=[],
        )

    @staticmethod
    def unsupported_file_type(filename: str) -> ErrorResponse:
        allowed = ", ".join(sorted(FILE_EXTENSION_TYPES))
        return ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message="This file type is not supported.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"'{filename}' has an unsupported extension. Allowed: {allowed}.",
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit_bytes: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {limit_bytes // (1024 * 1024)} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit_bytes:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def empty_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="EMPTY_FILE",
            message="The uploaded file is empty.",
            details=[ErrorDetail(field="file", message="File has zero bytes.", code="EMPTY_FILE")],
        )

    @staticmethod
    def storage_error(detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="STORAGE_ERROR",
            message="Failed to store the uploaded file. Please retry.",
            details=(
                [ErrorDetail(field=None, message=detail, code="STORAGE_ERROR")]
                if detail
                else []
            ),
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred. Our team has been notified.",
            details=[],
            request_id=request_id,
        )
