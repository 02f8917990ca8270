"""In-memory semantic index and its process-wide lazy singleton."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import Future
from dataclasses import dataclass
from math import sqrt

from gated_agent.ingest.chunker import SentenceChunker
from gated_agent.ingest.embedder import Embedder
from gated_agent.types import Chunk, Document, ScoredChunk

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class _StoredVector:
    chunk: Chunk
    embedding: tuple[float, ...]


class RetrievalIndex:
    """Immutable cosine-similarity index over sentence chunks.

    Safe for concurrent reads: nothing is mutated after `build` returns.
    """

    def __init__(self, entries: Sequence[_StoredVector], embedder: Embedder) -> None:
        self._entries = tuple(entries)
        self._embedder = embedder
        self.dimension = len(self._entries[0].embedding) if self._entries else 0

    @classmethod
    def build(
        cls,
        documents: Sequence[Document],
        embedder: Embedder,
        chunker: SentenceChunker | None = None,
    ) -> "RetrievalIndex":
        chunker = chunker or SentenceChunker()
        entries: list[_StoredVector] = []
        dimension: int | None = None

        for document in documents:
            chunks = chunker.chunk_document(document)
            if not chunks:
                continue
            embeddings = embedder.embed_documents([chunk.text for chunk in chunks])
            if len(embeddings) != len(chunks):
                raise ValueError("embedder returned a different number of vectors than chunks")
            for chunk, embedding in zip(chunks, embeddings, strict=True):
                if dimension is None:
                    dimension = len(embedding)
                elif len(embedding) != dimension:
                    raise ValueError(
                        f"embedding dimension changed from {dimension} to {len(embedding)}"
                    )
                entries.append(_StoredVector(chunk=chunk, embedding=tuple(embedding)))

        return cls(entries, embedder)

    def __len__(self) -> int:
        return len(self._entries)

    def search(self, query: str, k: int) -> list[ScoredChunk]:
        if not self._entries or k < 1:
            return []

        query_embedding = self._embedder.embed_query(query)
        # sorted() is stable, so equal scores keep insertion order.
        ranked = sorted(
            (
                (_cosine_similarity(query_embedding, entry.embedding), entry.chunk)
                for entry in self._entries
            ),
            key=lambda item: item[0],
            reverse=True,
        )
        return [
            ScoredChunk(chunk=chunk, score=score, rank=i + 1)
            for i, (score, chunk) in enumerate(ranked[:k])
        ]


class SharedIndex:
    """Builds the index at most once per process and shares it.

    The first caller of `get` creates a future under the lock and performs
    the build outside it; callers arriving while the build is in flight wait
    on that same future. A failed build is re-raised to every waiter and the
    memo is cleared so the next call retries.
    """

    def __init__(
        self,
        loader: Callable[[], Sequence[Document]],
        embedder: Embedder,
        chunker: SentenceChunker | None = None,
    ) -> None:
        self._loader = loader
        self._embedder = embedder
        self._chunker = chunker or SentenceChunker()
        self._lock = threading.Lock()
        self._future: Future[RetrievalIndex] | None = None

    def get(self, timeout: float | None = None) -> RetrievalIndex:
        with self._lock:
            future = self._future
            owner = future is None
            if owner:
                future = Future()
                self._future = future

        assert future is not None
        if owner:
            self._run_build(future)
        return future.result(timeout=timeout)

    def reset(self) -> None:
        """Forget the built index; the next `get` rebuilds from the loader."""
        with self._lock:
            self._future = None

    def _run_build(self, future: Future[RetrievalIndex]) -> None:
        try:
            documents = list(self._loader())
            logger.info("Building retrieval index from %d documents", len(documents))
            index = RetrievalIndex.build(documents, self._embedder, self._chunker)
        except BaseException as exc:
            with self._lock:
                if self._future is future:
                    self._future = None
            logger.exception("Retrieval index build failed")
            future.set_exception(exc)
            return
        logger.info("Retrieval index ready with %d chunks", len(index))
        future.set_result(index)


def _cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)
