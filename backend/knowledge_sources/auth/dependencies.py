"""
Composed FastAPI Dependencies

Route handlers import their request context from here: the verified user,
the knowledge-source service and the tenant-scoped file storage.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends

from knowledge_sources.auth.token import TokenPayload, get_current_user
from knowledge_sources.services.ingestion import KnowledgeSourceService
from knowledge_sources.storage.s3 import S3StorageService, storage_for_tenant


def get_source_service() -> KnowledgeSourceService:
    from knowledge_sources.services.factory import get_source_service as _build

    return _build()


CurrentUser = Annotated[TokenPayload, Depends(get_current_user)]


# Prefix and KMS key are derived from the token's tenant_id only
async def get_tenant_storage(user: CurrentUser) -> S3StorageService:
    return storage_for_tenant(user.tenant_id)


SourceServiceDep = Annotated[KnowledgeSourceService, Depends(get_source_service)]
TenantStorage    = Annotated[S3StorageService,       Depends(get_tenant_storage)]
