"""
Weaviate Vector Store — Tenant Collection Isolation

Each tenant gets its own collection: "Sources_<uuid_without_hyphens>".
Collection-per-tenant keeps HNSW graphs separate, so a similarity query
can never surface another tenant's segments.

The v4 client is synchronous; calls are pushed to a worker thread so the
pipeline's event loop keeps serving other segments.
"""

from __future__ import annotations

import asyncio
import logging
from uuid import UUID

import weaviate
import weaviate.classes as wvc
from weaviate.classes.config import Configure, DataType, Property

from knowledge_sources.core.config import settings
from knowledge_sources.core.errors import VectorizationError
from knowledge_sources.vectorstore.base import VectorRecord, VectorStoreBase

logger = logging.getLogger(__name__)

# Weaviate collection names must start with an upper-case letter
_COLLECTION_PREFIX = "Sources"


class WeaviateVectorStore(VectorStoreBase):

    def __init__(self, tenant_id: UUID, client: weaviate.WeaviateClient) -> None:
        super().__init__(tenant_id)
        self._client = client
        self._ensured = False

    def _namespace(self) -> str:
        return f"{_COLLECTION_PREFIX}_{self._tenant_id.hex}"

    def _ensure_collection(self) -> None:
        """Create the tenant's collection on first use (idempotent)."""
        if self._ensured:
            return
        name = self._namespace()
        if not self._client.collections.exists(name):
            self._client.collections.create(
                name=name,
                description=f"Knowledge source segments for tenant {self._tenant_id}",
                vectorizer_config=Configure.Vectorizer.none(),   # we supply our own vectors
                vector_index_config=Configure.VectorIndex.hnsw(
                    distance_metric=wvc.config.VectorDistances.COSINE,
                ),
                properties=[
                    Property(name="tenant_id",   data_type=DataType.TEXT, index_filterable=True),
                    Property(name="source_id",   data_type=DataType.TEXT, index_filterable=True),
                    Property(name="chunk_index", data_type=DataType.INT,  index_filterable=True),
                    Property(name="segment_key", data_type=DataType.TEXT, index_filterable=True),
                    Property(name="text",        data_type=DataType.TEXT, index_searchable=True),
                ],
            )
            logger.info("Weaviate collection created: %s", name)
        self._ensured = True

    def _insert_many(self, records: list[VectorRecord]) -> int:
        self._ensure_collection()
        collection = self._client.collections.get(self._namespace())
        objects = []
        for rec in records:
            self._validate_record(rec)
            objects.append(
                wvc.data.DataObject(
                    uuid=rec.id,
                    properties={
                        "tenant_id":   str(self._tenant_id),
                        "source_id":   rec.metadata.get("source_id", ""),
                        "chunk_index": rec.metadata.get("chunk_index", 0),
                        "segment_key": rec.metadata.get("segment_key", ""),
                        "text":        rec.metadata.get("text", ""),
                    },
                    vector=rec.vector,
                )
            )

        result = collection.data.insert_many(objects)
        if result.has_errors:
            messages = [str(err.message) for err in result.errors.values()]
            raise VectorizationError(f"Weaviate rejected {len(messages)} object(s): {messages[0]}")
        return len(objects)

    async def upsert(self, records: list[VectorRecord]) -> int:
        written = await asyncio.to_thread(self._insert_many, records)
        logger.debug("Weaviate upsert | tenant=%s count=%d", self._tenant_id, written)
        return written


# ---------------------------------------------------------------------------
# Client factory: one client per process, shared by every tenant store
# ---------------------------------------------------------------------------

def create_weaviate_client() -> weaviate.WeaviateClient:
    """Connected client for Weaviate Cloud (API key set) or a local/Docker instance."""
    if settings.weaviate_api_key:
        return weaviate.connect_to_weaviate_cloud(
            cluster_url=settings.weaviate_url,
            auth_credentials=weaviate.auth.AuthApiKey(settings.weaviate_api_key),
        )
    return weaviate.connect_to_local(
        host=settings.weaviate_host,
        port=settings.weaviate_port,
    )
