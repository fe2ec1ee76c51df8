"""
Pinecone Vector Store — Tenant Namespace Isolation

One shared index, one namespace per tenant: "tenant_<tenant_id>".
Namespaces are created implicitly on first upsert.
"""

from __future__ import annotations

import asyncio
import logging
from uuid import UUID

from pinecone import Pinecone

from knowledge_sources.core.config import settings
from knowledge_sources.vectorstore.base import VectorRecord, VectorStoreBase

logger = logging.getLogger(__name__)


class PineconeVectorStore(VectorStoreBase):

    def __init__(self, tenant_id: UUID, index=None) -> None:
        super().__init__(tenant_id)
        if index is None:
            index = Pinecone(api_key=settings.pinecone_api_key).Index(settings.pinecone_index_name)
        self._index = index

    def _namespace(self) -> str:
        return f"tenant_{self._tenant_id}"

    async def upsert(self, records: list[VectorRecord]) -> int:
        vectors = []
        for rec in records:
            self._validate_record(rec)
            vectors.append({"id": rec.id, "values": rec.vector, "metadata": rec.metadata})

        await asyncio.to_thread(self._index.upsert, vectors=vectors, namespace=self._namespace())
        logger.debug(
            "Pinecone upsert | tenant=%s namespace=%s count=%d",
            self._tenant_id, self._namespace(), len(vectors),
        )
        return len(vectors)
