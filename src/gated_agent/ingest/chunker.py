"""Sentence chunking for the retrieval index."""

from __future__ import annotations

import re

from gated_agent.config import ChunkingConfig
from gated_agent.types import Chunk, Document

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?。！？])")


class SentenceChunker:
    """Splits documents on sentence-ending punctuation.

    Fragments are trimmed and empty or whitespace-only fragments are dropped,
    so a document never yields an empty chunk and the order of sentences
    within a document is preserved. A sentence longer than
    `max_chunk_chars` is cut into consecutive windows of that size.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self.config = config or ChunkingConfig()

    def chunk_document(self, document: Document) -> list[Chunk]:
        chunks: list[Chunk] = []
        for text in self._fragments(document.text):
            index = len(chunks)
            chunks.append(
                Chunk(
                    chunk_id=f"{document.doc_id}-chunk-{index:04d}",
                    doc_id=document.doc_id,
                    text=text,
                    metadata={**document.metadata, "chunk_index": index},
                )
            )
        return chunks

    def _fragments(self, text: str) -> list[str]:
        limit = self.config.max_chunk_chars
        fragments: list[str] = []
        for part in _SENTENCE_SPLIT.split(text):
            part = part.strip()
            if not part:
                continue
            # Punctuation-only leftovers such as "..." carry no content.
            if not re.search(r"\w", part):
                continue
            while len(part) > limit:
                head = part[:limit].strip()
                if head:
                    fragments.append(head)
                part = part[limit:].strip()
            if part:
                fragments.append(part)
        return fragments
