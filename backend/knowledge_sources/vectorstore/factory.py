"""
Vector Store Factory

Selects the backend (Pinecone | Weaviate) from config. The Weaviate client
is opened once per process and shared by every tenant-bound store.
"""

from __future__ import annotations

from functools import lru_cache
from uuid import UUID

from knowledge_sources.core.config import settings
from knowledge_sources.vectorstore.base import VectorStoreBase


@lru_cache(maxsize=1)
def _shared_weaviate_client():
    from knowledge_sources.vectorstore.weaviate_store import create_weaviate_client
    return create_weaviate_client()


def get_vector_store(tenant_id: UUID) -> VectorStoreBase:
    """Return a tenant-scoped vector store for the configured backend."""
    backend = settings.vector_store_backend.lower()

    if backend == "pinecone":
        from knowledge_sources.vectorstore.pinecone_store import PineconeVectorStore
        return PineconeVectorStore(tenant_id=tenant_id)

    if backend == "weaviate":
        from knowledge_sources.vectorstore.weaviate_store import WeaviateVectorStore
        return WeaviateVectorStore(tenant_id=tenant_id, client=_shared_weaviate_client())

    raise ValueError(
        f"Unknown vector store backend: '{backend}'. "
        f"Valid options: 'pinecone', 'weaviate'"
    )
