"""
Vector Store — Abstract Base

Every concrete backend (Weaviate, Pinecone) implements this interface.
The segment vectorizer only speaks this protocol, so backends are
swappable without touching the pipeline.

Tenant isolation contract (enforced by ALL implementations):
  - Every upsert scopes to the tenant namespace/collection.
  - The namespace is derived ONLY from the tenant_id bound at
    construction, never from record contents.
  - A record whose metadata names another tenant is rejected.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from uuid import UUID


@dataclass
class VectorRecord:
    """A single embedding record to upsert into the vector store."""
    id:        str              # deterministic uuid5(tenant_id:segment_key)
    vector:    list[float]
    metadata:  dict
    # Required fields inside metadata:
    # - tenant_id: str
    # - source_id: str
    # - chunk_index: int
    # - segment_key: str
    # - text: str


class VectorStoreBase(ABC):
    """Tenant-scoped vector store; one instance per tenant."""

    def __init__(self, tenant_id: UUID) -> None:
        self._tenant_id = tenant_id

    @property
    def tenant_id(self) -> UUID:
        return self._tenant_id

    @abstractmethod
    def _namespace(self) -> str:
        """
        Backend-specific isolation key for this tenant.
        Pinecone  → namespace string
        Weaviate  → collection name
        """

    def _validate_record(self, record: VectorRecord) -> None:
        if record.metadata.get("tenant_id") != str(self._tenant_id):
            raise ValueError(
                f"Record tenant_id mismatch: expected {self._tenant_id}, "
                f"got {record.metadata.get('tenant_id')}"
            )

    @abstractmethod
    async def upsert(self, records: list[VectorRecord]) -> int:
        """
        Insert or overwrite records. Returns the number written.
        Raises if the backend reports any per-object error.
        """
