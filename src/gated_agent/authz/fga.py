"""Relationship-based capability checks and post-retrieval filtering."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any, Protocol

import requests

from gated_agent.config import FGAConfig
from gated_agent.errors import AuthorizationDenied, ExternalServiceFailure, PolicyUnconfigured
from gated_agent.types import CapabilityTuple, ScoredChunk

logger = logging.getLogger(__name__)

_MODEL_NOT_FOUND_CODE = "latest_authorization_model_not_found"
_MODEL_NOT_FOUND_MESSAGE = "No authorization models found"
WILDCARD_USER = "user:*"


def ensure_prefixed(prefix: str, identifier: str) -> str:
    """Return `prefix:identifier`, leaving already-prefixed ids untouched."""
    if identifier.startswith(f"{prefix}:"):
        return identifier
    return f"{prefix}:{identifier}"


class DecisionService(Protocol):
    """Batched relationship check; answers align by position with `tuples`."""

    def check(self, tuples: Sequence[CapabilityTuple]) -> list[bool]:
        ...


class InMemoryDecisionService:
    """Tuple-set decision service for local runs and tests.

    A grant to `user:*` allows every subject, like an OpenFGA wildcard.
    `configured=False` behaves like a store without an authorization model.
    """

    def __init__(
        self,
        grants: Iterable[tuple[str, str, str]] = (),
        *,
        configured: bool = True,
    ) -> None:
        self._grants = {
            (ensure_prefixed("user", user), relation, ensure_prefixed("doc", obj))
            for user, relation, obj in grants
        }
        self.configured = configured
        self.calls: list[list[CapabilityTuple]] = []

    def grant(self, user: str, relation: str, obj: str) -> None:
        self._grants.add((ensure_prefixed("user", user), relation, ensure_prefixed("doc", obj)))

    def check(self, tuples: Sequence[CapabilityTuple]) -> list[bool]:
        self.calls.append(list(tuples))
        if not self.configured:
            raise PolicyUnconfigured(_MODEL_NOT_FOUND_MESSAGE)
        return [
            (t.user, t.relation, t.object) in self._grants
            or (WILDCARD_USER, t.relation, t.object) in self._grants
            for t in tuples
        ]


class OpenFGADecisionService:
    """OpenFGA `batch-check` client.

    The "no authorization model" condition is recognized from the structured
    error code first; the message match only covers servers that omit it.
    """

    def __init__(self, config: FGAConfig, session: requests.Session | None = None) -> None:
        if not config.configured:
            raise ValueError("FGA_API_URL and FGA_STORE_ID are required")
        self.config = config
        self._http = session or requests.Session()

    def check(self, tuples: Sequence[CapabilityTuple]) -> list[bool]:
        if not tuples:
            return []

        body: dict[str, Any] = {
            "checks": [
                {
                    "tuple_key": {"user": t.user, "relation": t.relation, "object": t.object},
                    "correlation_id": str(i),
                }
                for i, t in enumerate(tuples)
            ]
        }
        if self.config.model_id:
            body["authorization_model_id"] = self.config.model_id

        url = f"{self.config.api_url}/stores/{self.config.store_id}/batch-check"
        try:
            response = self._http.post(
                url,
                json=body,
                headers=request_headers(self.config),
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ExternalServiceFailure(f"authorization service unreachable: {exc}") from exc

        if not response.ok:
            payload = _safe_json(response)
            if _is_missing_model(payload):
                raise PolicyUnconfigured(str(payload.get("message") or _MODEL_NOT_FOUND_MESSAGE))
            raise ExternalServiceFailure(
                f"authorization check failed: {response.status_code} {response.text[:200]}",
                status_code=response.status_code,
            )

        results = _safe_json(response).get("result") or {}
        decisions: list[bool] = []
        for i, t in enumerate(tuples):
            item = results.get(str(i)) or {}
            if item.get("error"):
                logger.warning("Capability check errored for %s: %s", t.object, item["error"])
            decisions.append(bool(item.get("allowed")) and not item.get("error"))
        return decisions


class CapabilityFilter:
    """Drops ranked candidates the subject may not view, preserving order."""

    def __init__(self, service: DecisionService, relation: str = "viewer") -> None:
        self.service = service
        self.relation = relation

    def build_tuple(self, subject: str, candidate: ScoredChunk) -> CapabilityTuple:
        return CapabilityTuple(
            user=ensure_prefixed("user", subject),
            relation=self.relation,
            object=ensure_prefixed("doc", candidate.chunk.doc_id),
        )

    def filter(self, subject: str, candidates: Sequence[ScoredChunk]) -> list[ScoredChunk]:
        if not subject:
            raise AuthorizationDenied("capability checks require a subject")
        if not candidates:
            return []

        tuples = [self.build_tuple(subject, candidate) for candidate in candidates]
        decisions = self.service.check(tuples)
        if len(decisions) != len(tuples):
            raise ExternalServiceFailure(
                f"authorization service answered {len(decisions)} of {len(tuples)} checks"
            )

        allowed = [c for c, ok in zip(candidates, decisions, strict=True) if ok is True]
        logger.debug(
            "Capability filter kept %d of %d candidates", len(allowed), len(candidates)
        )
        return allowed


def request_headers(config: FGAConfig) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if config.api_token:
        headers["Authorization"] = f"Bearer {config.api_token}"
    return headers


def _safe_json(response: requests.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _is_missing_model(payload: dict[str, Any]) -> bool:
    if payload.get("code") == _MODEL_NOT_FOUND_CODE:
        return True
    message = payload.get("message")
    return isinstance(message, str) and _MODEL_NOT_FOUND_MESSAGE in message
