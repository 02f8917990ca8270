"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True, frozen=True)
class Document:
    """A source document supplied by the corpus loader."""

    doc_id: str
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class Chunk:
    """A sentence-level span of a document."""

    chunk_id: str
    doc_id: str
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ScoredChunk:
    """A retrieval result with cosine score and 1-based rank."""

    chunk: Chunk
    score: float
    rank: int = 0


@dataclass(slots=True, frozen=True)
class CapabilityTuple:
    """One (user, relation, object) relationship check."""

    user: str
    relation: str
    object: str


@dataclass(slots=True, frozen=True)
class Credential:
    """Scoped access token for one connection, minted per tool call."""

    access_token: str
    connection: str
    scopes: tuple[str, ...]
    expires_at: float | None = None

    def __repr__(self) -> str:
        return f"Credential(connection={self.connection!r}, scopes={self.scopes!r})"


@dataclass(slots=True, frozen=True)
class Session:
    """What the session layer knows about the caller for one request."""

    subject: str | None
    refresh_token: str | None = None
    thread_id: str = "default-thread"

    def __repr__(self) -> str:
        return f"Session(subject={self.subject!r}, thread_id={self.thread_id!r})"


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed tool call."""

    name: str
    input_payload: dict[str, Any]
    output_preview: str
    latency_ms: float
    outcome: str = "ok"
