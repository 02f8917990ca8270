"""Credential Broker: mints a scoped connection token for every gated call."""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import Callable, Iterable
from typing import Any, Protocol, TypeVar

import requests

from gated_agent.agent.context import bind_credential, current_context
from gated_agent.config import TokenExchangeConfig
from gated_agent.errors import AuthorizationDenied, ExternalServiceFailure, MissingCredential
from gated_agent.types import Credential

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TOKEN_EXCHANGE_GRANT = (
    "urn:auth0:params:oauth:grant-type:token-exchange:federated-connection-access-token"
)
_REFRESH_TOKEN_TYPE = "urn:ietf:params:oauth:token-type:refresh_token"
_FEDERATED_TOKEN_TYPE = "http://auth0.com/oauth/token-type/federated-connection-access-token"
_NO_CREDENTIAL_ERRORS = frozenset(
    {"invalid_grant", "federated_connection_refresh_token_not_found", "access_denied"}
)


class TokenExchanger(Protocol):
    """Turns the session's durable refresh secret into a connection token."""

    def exchange(self, refresh_token: str, connection: str, scopes: tuple[str, ...]) -> Credential:
        ...


class Auth0TokenExchanger:
    """Federated connection token exchange over the identity provider's `/oauth/token`."""

    def __init__(
        self, config: TokenExchangeConfig, session: requests.Session | None = None
    ) -> None:
        if not config.configured:
            raise ValueError("AUTH0_DOMAIN, AUTH0_CLIENT_ID and AUTH0_CLIENT_SECRET are required")
        self.config = config
        self._http = session or requests.Session()

    def exchange(self, refresh_token: str, connection: str, scopes: tuple[str, ...]) -> Credential:
        url = f"https://{self.config.domain}/oauth/token"
        data = {
            "grant_type": _TOKEN_EXCHANGE_GRANT,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "subject_token": refresh_token,
            "subject_token_type": _REFRESH_TOKEN_TYPE,
            "requested_token_type": _FEDERATED_TOKEN_TYPE,
            "connection": connection,
            "scope": " ".join(scopes),
        }
        try:
            response = self._http.post(url, data=data, timeout=self.config.timeout_seconds)
        except requests.RequestException as exc:
            raise ExternalServiceFailure(f"token exchange unreachable: {exc}") from exc

        try:
            payload: dict[str, Any] = response.json()
        except ValueError:
            payload = {}

        if response.status_code in (401, 403) or payload.get("error") in _NO_CREDENTIAL_ERRORS:
            raise MissingCredential(
                f"no {connection} credential on file",
                connection=connection,
                scopes=scopes,
            )
        if not response.ok or not payload.get("access_token"):
            raise ExternalServiceFailure(
                f"token exchange failed: {response.status_code} {payload.get('error', '')}".strip(),
                status_code=response.status_code,
            )

        expires_in = payload.get("expires_in")
        return Credential(
            access_token=str(payload["access_token"]),
            connection=connection,
            scopes=tuple(str(payload.get("scope", "")).split()) or scopes,
            expires_at=time.time() + float(expires_in) if expires_in else None,
        )


class CredentialBroker:
    """Wraps actions so each call runs with a freshly minted credential.

    Scopes are fixed when the broker is built and cover every action wrapped
    for the connection. The broker keeps no token between calls.
    """

    def __init__(self, connection: str, scopes: Iterable[str], exchanger: TokenExchanger) -> None:
        self.connection = connection
        self.scopes = tuple(dict.fromkeys(scopes))
        self.exchanger = exchanger

    def resolve(self) -> Credential:
        session = current_context().session
        if not session.subject:
            raise AuthorizationDenied(f"{self.connection} actions require an authenticated user")
        if not session.refresh_token:
            raise MissingCredential(
                f"no refresh secret available for {self.connection}",
                connection=self.connection,
                scopes=self.scopes,
            )
        try:
            return self.exchanger.exchange(session.refresh_token, self.connection, self.scopes)
        except MissingCredential as exc:
            # Exchangers may not know the connection hint; fill it in for the interrupt.
            raise MissingCredential(
                str(exc), connection=self.connection, scopes=self.scopes
            ) from exc

    def with_credential(self, handler: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(handler)
        def _wrapped(*args: Any, **kwargs: Any) -> T:
            credential = self.resolve()
            logger.debug("Resolved %s credential for tool call", self.connection)
            with bind_credential(credential):
                try:
                    return handler(*args, **kwargs)
                except MissingCredential as exc:
                    if exc.connection:
                        raise
                    raise MissingCredential(
                        str(exc), connection=self.connection, scopes=self.scopes
                    ) from exc

        return _wrapped
