"""Spotify Web API actions, registered behind the Tool Gate."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Literal

import requests
from pydantic import BaseModel, Field

from gated_agent.agent.context import get_access_token
from gated_agent.agent.gate import GatePolicy, ToolGate
from gated_agent.agent.registry import ToolRegistry, ToolSpec
from gated_agent.errors import ExternalServiceFailure, MissingCredential

logger = logging.getLogger(__name__)

SPOTIFY_API_BASE = "https://api.spotify.com/v1"
COVER_UPLOAD_BINDING_MESSAGE = "Approve uploading playlist artwork"


class SpotifyClient:
    """Thin Spotify REST client using the credential bound to the current tool call."""

    def __init__(
        self,
        base_url: str = SPOTIFY_API_BASE,
        session: requests.Session | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = session or requests.Session()
        self.timeout = timeout

    def request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {get_access_token()}"
        headers.setdefault("Accept", "application/json")
        kwargs.setdefault("timeout", self.timeout)

        try:
            response = self._http.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except requests.RequestException as exc:
            raise ExternalServiceFailure(f"Spotify API unreachable: {exc}") from exc

        if response.status_code in (401, 403):
            raise MissingCredential("Authorization required to access Spotify API")
        if not response.ok:
            raise ExternalServiceFailure(
                f"Spotify API request failed: {response.status_code} {response.reason} - "
                f"{response.text[:200]}",
                status_code=response.status_code,
            )
        if response.status_code in (202, 204) or not response.content:
            return None
        content_type = response.headers.get("Content-Type", "")
        if "json" in content_type:
            try:
                return response.json()
            except ValueError as exc:
                raise ExternalServiceFailure(
                    f"Spotify API returned malformed JSON: {exc}",
                    status_code=response.status_code,
                ) from exc
        return response.text


class ListPlaylistsInput(BaseModel):
    limit: int = Field(default=10, ge=1, le=50)


class SearchSpotifyInput(BaseModel):
    query: str = Field(min_length=1)
    types: list[Literal["track", "artist", "album", "playlist"]] = Field(
        default_factory=lambda: ["track", "artist"], min_length=1, max_length=4
    )
    limit: int = Field(default=5, ge=1, le=20)


class CreatePlaylistInput(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=300)
    public: bool = False


class UploadCoverInput(BaseModel):
    playlist_id: str = Field(min_length=1, description="Playlist id, URI or URL.")
    image_base64: str = Field(
        min_length=4,
        max_length=256 * 1024,
        description="Base64-encoded JPEG image.",
    )


def extract_spotify_id(value: str, kind: str) -> str:
    for pattern in (rf"spotify:{kind}:([A-Za-z0-9]+)", rf"spotify\.com/{kind}/([A-Za-z0-9]+)"):
        match = re.search(pattern, value)
        if match:
            return match.group(1)
    return value


def register_spotify_tools(
    registry: ToolRegistry, gate: ToolGate, client: SpotifyClient | None = None
) -> None:
    """Register the Spotify actions.

    Reads and playlist creation need only the connection credential; cover
    uploads additionally need the user's explicit approval for the thread.
    """

    api = client or SpotifyClient()

    def _list_playlists(data: ListPlaylistsInput) -> str:
        payload = api.request("GET", "/me/playlists", params={"limit": data.limit}) or {}
        playlists = [
            {
                "id": item.get("id"),
                "name": item.get("name"),
                "total_tracks": (item.get("tracks") or {}).get("total", 0),
                "url": (item.get("external_urls") or {}).get("spotify", ""),
            }
            for item in payload.get("items") or []
            if item
        ]
        return json.dumps({"playlists": playlists, "total": payload.get("total", len(playlists))})

    def _search(data: SearchSpotifyInput) -> str:
        payload = api.request(
            "GET",
            "/search",
            params={"q": data.query, "type": ",".join(data.types), "limit": data.limit},
        ) or {}
        results: dict[str, list[dict[str, Any]]] = {}
        for kind in data.types:
            items = (payload.get(f"{kind}s") or {}).get("items") or []
            results[kind] = [
                {
                    "id": item.get("id"),
                    "name": item.get("name"),
                    "url": (item.get("external_urls") or {}).get("spotify", ""),
                }
                for item in items[: data.limit]
                if item
            ]
        return json.dumps({"results": results})

    def _create_playlist(data: CreatePlaylistInput) -> str:
        profile = api.request("GET", "/me") or {}
        user_id = profile.get("id")
        if not user_id:
            raise ExternalServiceFailure("Spotify profile did not include a user id")
        body: dict[str, Any] = {"name": data.name, "public": data.public}
        if data.description:
            body["description"] = data.description
        playlist = api.request("POST", f"/users/{user_id}/playlists", json=body) or {}
        logger.info("Created Spotify playlist %s", playlist.get("id"))
        return json.dumps(
            {
                "id": playlist.get("id"),
                "name": playlist.get("name", data.name),
                "url": (playlist.get("external_urls") or {}).get("spotify", ""),
            }
        )

    def _upload_cover(data: UploadCoverInput) -> str:
        playlist_id = extract_spotify_id(data.playlist_id, "playlist")
        api.request(
            "PUT",
            f"/playlists/{playlist_id}/images",
            data=data.image_base64,
            headers={"Content-Type": "image/jpeg"},
        )
        return json.dumps({"playlist_id": playlist_id, "uploaded": True})

    registry.register(
        gate.gate(
            ToolSpec(
                name="list_playlists",
                description="List Spotify playlists for the current user.",
                args_schema=ListPlaylistsInput,
                handler=_list_playlists,
                tags=["spotify"],
            ),
            GatePolicy.CREDENTIAL_ONLY,
        )
    )
    registry.register(
        gate.gate(
            ToolSpec(
                name="search_spotify",
                description="Search Spotify for tracks, artists, albums, or playlists.",
                args_schema=SearchSpotifyInput,
                handler=_search,
                tags=["spotify"],
            ),
            GatePolicy.CREDENTIAL_ONLY,
        )
    )
    registry.register(
        gate.gate(
            ToolSpec(
                name="create_playlist",
                description="Create a new Spotify playlist in the user's account.",
                args_schema=CreatePlaylistInput,
                handler=_create_playlist,
                tags=["spotify", "write"],
            ),
            GatePolicy.CREDENTIAL_ONLY,
        )
    )
    registry.register(
        gate.gate(
            ToolSpec(
                name="upload_playlist_cover",
                description="Upload a custom JPEG image as a playlist cover.",
                args_schema=UploadCoverInput,
                handler=_upload_cover,
                tags=["spotify", "write"],
            ),
            GatePolicy.CREDENTIAL_AND_EXPLICIT_GRANT,
            binding_message=COVER_UPLOAD_BINDING_MESSAGE,
        )
    )
