"""
Exception hierarchy for the knowledge-source service.

    KnowledgeSourceError        (base, carries a human-readable message)
    +-- SourceNotFoundError     (lookup/delete found no row for id + tenant)
    +-- SourceCreationError     (the insert returned no row)
    +-- ExtractionError         (an extractor could not produce text)
    +-- VectorizationError      (one segment could not be embedded/indexed)

Only ``SourceNotFoundError`` and creation failures ever reach a caller.
Extraction failures end up in the record's ``error_message`` and
vectorization failures are absorbed into ``chunk_count``.
"""

from __future__ import annotations

from uuid import UUID


class KnowledgeSourceError(Exception):
    """Base exception for all knowledge-source errors."""

    def __init__(self, message: str = "An unexpected error occurred") -> None:
        self._message = message
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message


class SourceNotFoundError(KnowledgeSourceError):
    """No source with this id exists in the caller's tenant."""

    def __init__(self, source_id: UUID | str) -> None:
        self.source_id = source_id
        super().__init__(f"KnowledgeSource {source_id} not found")


class SourceCreationError(KnowledgeSourceError):
    pass


class ExtractionError(KnowledgeSourceError):
    """
    Raised by extractors. ``reason`` is stored verbatim as the
    source's ``error_message`` so it must be readable by end users.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class VectorizationError(KnowledgeSourceError):
    pass
