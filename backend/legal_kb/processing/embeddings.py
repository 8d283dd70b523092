"""
Embedding Generator  —  text → ordered embedding chunks + token usage
══════════════════════════════════════════════════════════════════════

Flow:
  1. Split extracted text with LangChain's RecursiveCharacterTextSplitter
     (chunk_size / chunk_overlap from settings)
  2. Embed chunks with OpenAI, EMBEDDING_BATCH_SIZE inputs per API call,
     batches issued sequentially to keep one document's load bounded
  3. Return EmbeddingOutput: chunks indexed 0..n-1 in text order, plus the
     token count reported by the API

Retry policy lives in the orchestrator (one retry loop per document step),
so every failure here is raised immediately as EmbeddingError.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from langchain_text_splitters import RecursiveCharacterTextSplitter

from legal_kb.core.exceptions import EmbeddingError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

EMBEDDING_BATCH_SIZE = 100    # texts per OpenAI API call

# Approximate tokens per character for per-chunk accounting
# (the API only reports usage per request, not per input)
CHARS_PER_TOKEN_EST = 4


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class EmbeddedChunk:
    index:       int
    text:        str
    vector:      list[float]
    token_count: int


@dataclass
class EmbeddingOutput:
    """
    chunks       : ordered chunks, index 0..n-1 with no gaps
    total_tokens : tokens billed for the whole document
    elapsed_ms   : wall time spent in the embedding API
    """
    chunks:       list[EmbeddedChunk] = field(default_factory=list)
    total_tokens: int   = 0
    elapsed_ms:   float = 0.0


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------

class EmbeddingGenerator:
    """
    Stateless embedding generator.

    Usage:
        generator = EmbeddingGenerator.from_settings()
        output    = await generator.generate(text)
    """

    def __init__(
        self,
        model:         str = "text-embedding-3-small",
        dimensions:    int = 1536,
        api_key:       str = "",
        chunk_size:    int = 1000,
        chunk_overlap: int = 200,
        client=None,   # openai.AsyncOpenAI: injectable for tests
    ) -> None:
        self._model      = model
        self._dimensions = dimensions
        self._api_key    = api_key
        self._client     = client
        self._splitter   = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            separators=["\n\n", "\n", ". ", " ", ""],
        )

    @classmethod
    def from_settings(cls) -> "EmbeddingGenerator":
        from legal_kb.core.config import settings

        return cls(
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            api_key=settings.openai_api_key,
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
        )

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def split(self, text: str) -> list[str]:
        return [piece for piece in self._splitter.split_text(text) if piece.strip()]

    async def generate(self, text: str) -> EmbeddingOutput:
        """
        Chunk and embed one document's text.

        Raises:
            EmbeddingError if the text yields no chunks or the API fails.
        """
        pieces = self.split(text)
        if not pieces:
            raise EmbeddingError("Text produced no chunks to embed")

        t0 = time.monotonic()
        chunks: list[EmbeddedChunk] = []
        total_tokens = 0

        for start in range(0, len(pieces), EMBEDDING_BATCH_SIZE):
            batch = pieces[start : start + EMBEDDING_BATCH_SIZE]
            vectors, tokens = await self._embed_batch(batch)
            total_tokens += tokens
            for offset, (piece, vector) in enumerate(zip(batch, vectors)):
                chunks.append(EmbeddedChunk(
                    index=start + offset,
                    text=piece,
                    vector=vector,
                    token_count=max(1, len(piece) // CHARS_PER_TOKEN_EST),
                ))

        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.debug(
            "Embedded | chunks=%d tokens=%d model=%s elapsed_ms=%.0f",
            len(chunks), total_tokens, self._model, elapsed_ms,
        )
        return EmbeddingOutput(chunks=chunks, total_tokens=total_tokens, elapsed_ms=elapsed_ms)

    # ------------------------------------------------------------------
    # Single API call
    # ------------------------------------------------------------------

    async def _embed_batch(self, batch: list[str]) -> tuple[list[list[float]], int]:
        kwargs: dict = {"model": self._model, "input": batch}
        # dimensions param only works for text-embedding-3-* models
        if self._model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dimensions

        try:
            response = await self._get_client().embeddings.create(**kwargs)
        except Exception as exc:
            raise EmbeddingError(f"{type(exc).__name__}: {exc}") from exc

        if len(response.data) != len(batch):
            raise EmbeddingError(
                f"Embedding API returned {len(response.data)} vectors for {len(batch)} inputs"
            )

        tokens_used = response.usage.total_tokens if response.usage else sum(
            len(t) // CHARS_PER_TOKEN_EST for t in batch
        )
        ordered = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in ordered], tokens_used
