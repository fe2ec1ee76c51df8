"""
S3 Storage Service — Tenant-Isolated

Uploaded source files live under:
    s3://<BUCKET>/tenants/<tenant_id>/sources/<object_name>

Isolation model (two reinforcing layers):
  1. Prefix partitioning: the prefix is built server-side from the
     authenticated tenant_id, never accepted from the client.
  2. SSE-KMS: every PutObject names the tenant's KMS key.

The API stores the bytes and passes only the object key to the pipeline;
the worker loads the bytes back through load_source_file().
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass, field
from enum import Enum
from uuid import UUID

import aioboto3
from botocore.exceptions import ClientError

from knowledge_sources.core.config import settings

logger = logging.getLogger(__name__)


class ResourceType(str, Enum):
    SOURCE = "sources"   # uploaded course material (PDF, DOCX, TXT, MD)


@dataclass(frozen=True)
class S3Object:
    """Represents a stored object: returned by put_object."""
    tenant_id:    UUID
    resource:     ResourceType
    key:          str          # full S3 key including prefix
    bucket:       str
    size_bytes:   int
    content_type: str
    etag:         str


@dataclass
class TenantStorageConfig:
    tenant_id:   UUID
    kms_key_arn: str
    bucket:      str = field(default_factory=lambda: settings.s3_bucket)

    def prefix(self, resource: ResourceType, filename: str) -> str:
        """
        Build a tenant-scoped S3 key.
        Pattern:  tenants/<tenant_id>/<resource>/<filename>
        """
        safe_name = filename.replace("/", "_").replace("..", "_")
        return f"tenants/{self.tenant_id}/{resource.value}/{safe_name}"


class S3StorageService:
    """
    Async S3 operations scoped to a single tenant. One instance per request
    or per pipeline run, so the tenant binding cannot change underneath.
    """

    def __init__(self, tenant_config: TenantStorageConfig) -> None:
        self._cfg = tenant_config
        # Static keys only for local dev; otherwise the default credential chain
        self._session = aioboto3.Session(
            aws_access_key_id=settings.aws_access_key_id or None,
            aws_secret_access_key=settings.aws_secret_access_key or None,
        )

    @property
    def tenant_id(self) -> UUID:
        return self._cfg.tenant_id

    def key_for(self, resource: ResourceType, filename: str) -> str:
        return self._cfg.prefix(resource, filename)

    def _client(self):
        return self._session.client("s3", region_name=settings.aws_region)

    def _sse_params(self) -> dict:
        if not self._cfg.kms_key_arn:
            return {"ServerSideEncryption": "aws:kms"}
        return {"ServerSideEncryption": "aws:kms", "SSEKMSKeyId": self._cfg.kms_key_arn}

    async def put_object(
        self,
        resource: ResourceType,
        filename: str,
        body: bytes,
        content_type: str | None = None,
    ) -> S3Object:
        key = self._cfg.prefix(resource, filename)
        ct  = content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"

        async with self._client() as s3:
            resp = await s3.put_object(
                Bucket=self._cfg.bucket,
                Key=key,
                Body=body,
                ContentType=ct,
                Metadata={"tenant_id": str(self._cfg.tenant_id), "resource": resource.value},
                **self._sse_params(),
            )

        logger.info(
            "S3 upload ok | tenant=%s key=%s size=%d",
            self._cfg.tenant_id, key, len(body),
        )
        return S3Object(
            tenant_id=self._cfg.tenant_id,
            resource=resource,
            key=key,
            bucket=self._cfg.bucket,
            size_bytes=len(body),
            content_type=ct,
            etag=resp.get("ETag", "").strip('"'),
        )

    async def get_object(self, resource: ResourceType, filename: str) -> bytes:
        """Download an object; key is rebuilt server-side from the tenant prefix."""
        key = self._cfg.prefix(resource, filename)
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._cfg.bucket, Key=key)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {key}") from exc
                raise

    async def delete_object(self, resource: ResourceType, filename: str) -> None:
        key = self._cfg.prefix(resource, filename)
        async with self._client() as s3:
            await s3.delete_object(Bucket=self._cfg.bucket, Key=key)
        logger.info("S3 delete | tenant=%s key=%s", self._cfg.tenant_id, key)


def storage_for_tenant(tenant_id: UUID) -> S3StorageService:
    return S3StorageService(
        tenant_config=TenantStorageConfig(
            tenant_id=tenant_id,
            kms_key_arn=settings.s3_default_kms_key_arn,
        )
    )


async def load_source_file(tenant_id: UUID, key: str) -> bytes:
    """
    File loader used by the extractor: object key → bytes.

    Only keys directly under the tenant's sources prefix are readable;
    anything else raises PermissionError.
    """
    storage = storage_for_tenant(tenant_id)
    prefix = storage.key_for(ResourceType.SOURCE, "")
    filename = key[len(prefix):] if key.startswith(prefix) else ""
    if not filename or "/" in filename or ".." in filename:
        raise PermissionError(f"Key is outside the tenant source prefix: {key}")
    return await storage.get_object(ResourceType.SOURCE, filename)
