"""
Segment Vectorizer  —  one segment → one embedding → one vector upsert
═══════════════════════════════════════════════════════════════════════

Called once per segment by the ingestion pipeline, which owns the
fan-out, the per-call timeout and the success count. This class only
has to embed, upsert, and raise on any failure.

Idempotency:
  The vector id is uuid5(tenant_id:segment_key). Re-processing the same
  source overwrites its previous vectors rather than duplicating them.

OpenAI embedding model selection:
  text-embedding-3-small  → 1536 dims (default)
  text-embedding-3-large  → 3072 dims
"""

from __future__ import annotations

import logging
import uuid
from typing import Callable
from uuid import UUID

from langchain_core.embeddings import Embeddings
from langchain_openai import OpenAIEmbeddings

from knowledge_sources.processing.chunking import parse_segment_key
from knowledge_sources.vectorstore.base import VectorRecord, VectorStoreBase

logger = logging.getLogger(__name__)

VectorStoreFactory = Callable[[UUID], VectorStoreBase]


def get_embedding_model() -> OpenAIEmbeddings:
    from knowledge_sources.core.config import settings
    return OpenAIEmbeddings(
        model=settings.embedding_model,
        api_key=settings.openai_api_key,
        dimensions=settings.embedding_dimensions,
    )


def vector_id_for(tenant_id: UUID, key: str) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{tenant_id}:{key}"))


class SegmentVectorizer:

    def __init__(
        self,
        embeddings: Embeddings | None = None,
        store_factory: VectorStoreFactory | None = None,
    ) -> None:
        if store_factory is None:
            from knowledge_sources.vectorstore.factory import get_vector_store
            store_factory = get_vector_store
        self._embeddings = embeddings or get_embedding_model()
        self._store_factory = store_factory
        self._stores: dict[UUID, VectorStoreBase] = {}

    def _store_for(self, tenant_id: UUID) -> VectorStoreBase:
        store = self._stores.get(tenant_id)
        if store is None:
            store = self._stores[tenant_id] = self._store_factory(tenant_id)
        return store

    async def vectorize(self, key: str, text: str, tenant_id: UUID) -> str:
        """Embed ``text`` and upsert it under ``key``; returns the vector id."""
        source_id, index = parse_segment_key(key)
        vector = await self._embeddings.aembed_query(text)

        record = VectorRecord(
            id=vector_id_for(tenant_id, key),
            vector=vector,
            metadata={
                "tenant_id":   str(tenant_id),
                "source_id":   source_id,
                "chunk_index": index,
                "segment_key": key,
                "text":        text,
            },
        )
        await self._store_for(tenant_id).upsert([record])
        logger.debug("Vectorized | key=%s vector_id=%s dims=%d", key, record.id, len(vector))
        return record.id
