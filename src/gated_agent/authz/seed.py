"""Seed an OpenFGA store with the document authorization model and tuples.

Run with `python -m gated_agent.authz.seed` after setting `FGA_API_URL` and
`FGA_STORE_ID` (and `FGA_API_TOKEN` when the store requires one).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Sequence
from typing import Any, List, Optional

import requests

from gated_agent.authz.fga import WILDCARD_USER, request_headers
from gated_agent.config import FGAConfig
from gated_agent.errors import ExternalServiceFailure
from gated_agent.types import CapabilityTuple

logger = logging.getLogger(__name__)

AUTHORIZATION_MODEL: dict[str, Any] = {
    "schema_version": "1.1",
    "type_definitions": [
        {"type": "user"},
        {
            "type": "doc",
            "relations": {"viewer": {"this": {}}},
            "metadata": {
                "relations": {
                    "viewer": {
                        "directly_related_user_types": [
                            {"type": "user"},
                            {"type": "user", "wildcard": {}},
                        ]
                    }
                }
            },
        },
    ],
}

DEFAULT_TUPLES = (CapabilityTuple(user=WILDCARD_USER, relation="viewer", object="doc:public-doc"),)


def _post(
    config: FGAConfig, path: str, body: dict[str, Any], session: requests.Session
) -> dict[str, Any]:
    url = f"{config.api_url}/stores/{config.store_id}{path}"
    try:
        response = session.post(
            url, json=body, headers=request_headers(config), timeout=config.timeout_seconds
        )
    except requests.RequestException as exc:
        raise ExternalServiceFailure(f"authorization service unreachable: {exc}") from exc
    if not response.ok:
        raise ExternalServiceFailure(
            f"authorization service rejected {path}: {response.status_code} {response.text[:200]}",
            status_code=response.status_code,
        )
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def write_authorization_model(config: FGAConfig, session: requests.Session) -> str:
    payload = _post(config, "/authorization-models", AUTHORIZATION_MODEL, session)
    model_id = payload.get("authorization_model_id")
    if not model_id:
        raise ExternalServiceFailure("authorization service returned no authorization_model_id")
    return str(model_id)


def write_tuples(
    config: FGAConfig,
    tuples: Sequence[CapabilityTuple],
    model_id: str,
    session: requests.Session,
) -> None:
    body = {
        "writes": {
            "tuple_keys": [
                {"user": t.user, "relation": t.relation, "object": t.object} for t in tuples
            ]
        },
        "authorization_model_id": model_id,
    }
    _post(config, "/write", body, session)


def seed(
    config: FGAConfig,
    tuples: Sequence[CapabilityTuple] = DEFAULT_TUPLES,
    session: requests.Session | None = None,
) -> str:
    """Write the authorization model, then the tuples against it. Returns the model id."""
    if not config.configured:
        raise ValueError("FGA_API_URL and FGA_STORE_ID are required to seed tuples")
    http = session or requests.Session()
    model_id = write_authorization_model(config, http)
    logger.info("Authorization model created: %s", model_id)
    if tuples:
        write_tuples(config, tuples, model_id, http)
        logger.info("Seeded %d tuple(s)", len(tuples))
    return model_id


def _parse_tuple(raw: str) -> CapabilityTuple:
    user, sep, rest = raw.partition(",")
    relation, sep2, obj = rest.partition(",")
    if not (sep and sep2 and user and relation and obj):
        raise argparse.ArgumentTypeError(f"expected user,relation,object but got {raw!r}")
    return CapabilityTuple(user=user.strip(), relation=relation.strip(), object=obj.strip())


def main(argv: Optional[List[str]] = None) -> int:
    p = argparse.ArgumentParser(description="Seed OpenFGA with the document authorization model.")
    p.add_argument(
        "--tuple",
        dest="tuples",
        action="append",
        type=_parse_tuple,
        help="user,relation,object to write (repeatable; defaults to the public doc wildcard)",
    )
    args = p.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    tuples = tuple(args.tuples) if args.tuples else DEFAULT_TUPLES
    try:
        model_id = seed(FGAConfig.from_env(), tuples)
    except (ValueError, ExternalServiceFailure) as exc:
        logger.error("Failed to seed OpenFGA tuples: %s", exc)
        return 1

    payload = {
        "authorization_model_id": model_id,
        "tuples": [{"user": t.user, "relation": t.relation, "object": t.object} for t in tuples],
    }
    print(json.dumps(payload, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
