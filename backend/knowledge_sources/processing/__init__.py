"""
Source Processing Package
══════════════════════════

The three capabilities the ingestion pipeline drives, in order:

  Extraction → Segmentation → Vectorization

Modules
───────
  extractor.py   One handler per source kind (text, URL, YouTube, PDF, DOCX, TXT)
  chunking.py    Recursive character splitter + deterministic segment keys
  embeddings.py  Per-segment OpenAI embedding and tenant-scoped vector upsert

Every component is stateless per call and dependency-injected, so the
pipeline can be tested with stubs for any of them.
"""

from knowledge_sources.processing.chunking import Segment, TextSegmenter, segment_key
from knowledge_sources.processing.embeddings import SegmentVectorizer
from knowledge_sources.processing.extractor import ExtractionResult, SourceExtractor

__all__ = [
    "ExtractionResult",
    "SourceExtractor",
    "Segment",
    "TextSegmenter",
    "segment_key",
    "SegmentVectorizer",
]
