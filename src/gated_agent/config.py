"""Configuration models for the gated agent."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field

DEFAULT_SPOTIFY_SCOPES = (
    "user-read-email",
    "user-read-private",
    "playlist-read-private",
    "playlist-read-collaborative",
    "playlist-modify-public",
    "playlist-modify-private",
    "ugc-image-upload",
)


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in (raw or "").split(",") if x.strip()]


class ChunkingConfig(BaseModel):
    """Configures sentence chunking."""

    max_chunk_chars: int = Field(default=2000, ge=1)


class RetrievalConfig(BaseModel):
    """Configures corpus location and authorized retrieval depth."""

    top_k: int = Field(default=6, ge=1, le=50)
    docs_path: str = "assets/docs"

    @classmethod
    def from_env(cls) -> "RetrievalConfig":
        return cls(
            top_k=max(1, min(_env_int("RAG_TOP_K", 6), 50)),
            docs_path=os.getenv("RAG_DOCS_PATH") or "assets/docs",
        )


class AgentConfig(BaseModel):
    """Configures the generation loop."""

    max_steps: int = Field(default=12, ge=1)
    consent_ttl_seconds: int = Field(default=3600, ge=1)

    @classmethod
    def from_env(cls) -> "AgentConfig":
        return cls(
            max_steps=max(1, min(_env_int("AGENT_MAX_STEPS", 12), 50)),
            consent_ttl_seconds=max(1, _env_int("CONSENT_TTL_SECONDS", 3600)),
        )


class ConnectionConfig(BaseModel):
    """A third-party connection and the union of scopes its tools need."""

    name: str = Field(default="spotify", min_length=1)
    scopes: list[str] = Field(default_factory=lambda: list(DEFAULT_SPOTIFY_SCOPES))

    @classmethod
    def from_env(cls) -> "ConnectionConfig":
        scopes = _split_csv(os.getenv("SPOTIFY_SCOPES", ""))
        return cls(
            name=os.getenv("SPOTIFY_CONNECTION") or "spotify",
            scopes=scopes or list(DEFAULT_SPOTIFY_SCOPES),
        )


class TokenExchangeConfig(BaseModel):
    """Credentials for exchanging a refresh secret for a connection token."""

    domain: str = ""
    client_id: str = ""
    client_secret: str = ""
    timeout_seconds: float = Field(default=10.0, gt=0.0)

    @property
    def configured(self) -> bool:
        return bool(self.domain and self.client_id and self.client_secret)

    @classmethod
    def from_env(cls) -> "TokenExchangeConfig":
        return cls(
            domain=(os.getenv("AUTH0_DOMAIN") or "").strip(),
            client_id=(os.getenv("AUTH0_CLIENT_ID") or "").strip(),
            client_secret=(os.getenv("AUTH0_CLIENT_SECRET") or "").strip(),
        )


class FGAConfig(BaseModel):
    """Location of the relationship-based authorization service."""

    api_url: str = ""
    store_id: str = ""
    model_id: str | None = None
    api_token: str | None = None
    timeout_seconds: float = Field(default=10.0, gt=0.0)

    @property
    def configured(self) -> bool:
        return bool(self.api_url and self.store_id)

    @classmethod
    def from_env(cls) -> "FGAConfig":
        return cls(
            api_url=(os.getenv("FGA_API_URL") or "").strip().rstrip("/"),
            store_id=(os.getenv("FGA_STORE_ID") or "").strip(),
            model_id=(os.getenv("FGA_MODEL_ID") or "").strip() or None,
            api_token=(os.getenv("FGA_API_TOKEN") or "").strip() or None,
        )
