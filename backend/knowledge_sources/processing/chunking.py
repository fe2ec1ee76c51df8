"""
Text Segmenter — bounded, overlapping character windows.

Extracted text is split with LangChain's RecursiveCharacterTextSplitter,
which prefers paragraph, then line, then sentence, then word boundaries
and only cuts mid-word as a last resort.

Segment identity:
  Each segment is addressed by ks:<source_id>:<index>. The key is a pure
  function of the source and the position, so re-processing a source
  overwrites its vectors instead of duplicating them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

from langchain_text_splitters import RecursiveCharacterTextSplitter

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE    = 1000
DEFAULT_CHUNK_OVERLAP = 200
SEPARATORS = ["\n\n", "\n", ". ", " ", ""]

_KEY_PREFIX = "ks"


@dataclass(frozen=True)
class Segment:
    index: int
    text:  str


def segment_key(source_id: UUID | str, index: int) -> str:
    return f"{_KEY_PREFIX}:{source_id}:{index}"


def parse_segment_key(key: str) -> tuple[str, int]:
    """Inverse of segment_key(); returns (source_id, index)."""
    prefix, source_id, index = key.split(":")
    if prefix != _KEY_PREFIX:
        raise ValueError(f"Not a segment key: {key!r}")
    return source_id, int(index)


class TextSegmenter:
    """
    Total over any string input: empty or whitespace-only text gives [].
    Indexes start at 0 and are contiguous.
    """

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    ) -> None:
        if chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        self.chunk_size = chunk_size
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            separators=SEPARATORS,
        )

    def segment(self, text: str) -> list[Segment]:
        if not text or not text.strip():
            return []
        chunks = [c for c in self._splitter.split_text(text) if c.strip()]
        logger.debug("Segmented | chars=%d segments=%d", len(text), len(chunks))
        return [Segment(index=i, text=chunk) for i, chunk in enumerate(chunks)]
