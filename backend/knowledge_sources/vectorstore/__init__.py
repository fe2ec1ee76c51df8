from knowledge_sources.vectorstore.base import VectorRecord, VectorStoreBase
from knowledge_sources.vectorstore.factory import get_vector_store

__all__ = ["VectorRecord", "VectorStoreBase", "get_vector_store"]
