"""
Document Processing Package
════════════════════════════

Adapters for the two per-document processing steps of the training pipeline:

  Text Extraction → Chunking + Embedding

Modules
───────
  extractor.py   pypdf / python-docx / legacy .doc text extraction + language detection
  embeddings.py  LangChain text splitting + OpenAI embeddings with token accounting

Both are stateless; the orchestrator owns retries and concurrency.
"""

from legal_kb.processing.embeddings import EmbeddedChunk, EmbeddingGenerator, EmbeddingOutput
from legal_kb.processing.extractor import ExtractedText, TextExtractor

__all__ = [
    "EmbeddedChunk",
    "EmbeddingGenerator",
    "EmbeddingOutput",
    "ExtractedText",
    "TextExtractor",
]
