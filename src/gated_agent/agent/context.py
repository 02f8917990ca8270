"""Per-tool-call context carried through a `ContextVar`.

The planner binds the caller's session around each tool execution and the
credential broker binds a freshly minted credential inside that. Each turn
runs in its own thread or context copy, so concurrent turns never observe
each other's values.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, replace

from gated_agent.errors import AuthorizationDenied, MissingCredential
from gated_agent.types import Credential, Session


@dataclass(slots=True, frozen=True)
class ToolContext:
    session: Session
    credential: Credential | None = None


_current: ContextVar[ToolContext | None] = ContextVar("gated_agent_tool_context", default=None)


@contextmanager
def bind_session(session: Session) -> Iterator[ToolContext]:
    context = ToolContext(session=session)
    token = _current.set(context)
    try:
        yield context
    finally:
        _current.reset(token)


@contextmanager
def bind_credential(credential: Credential) -> Iterator[ToolContext]:
    context = replace(current_context(), credential=credential)
    token = _current.set(context)
    try:
        yield context
    finally:
        _current.reset(token)


def current_context() -> ToolContext:
    context = _current.get()
    if context is None:
        raise AuthorizationDenied("tool invoked outside of an authenticated turn")
    return context


def current_subject() -> str:
    subject = current_context().session.subject
    if not subject:
        raise AuthorizationDenied("no authenticated subject for this request")
    return subject


def get_access_token() -> str:
    """Access token bound by the credential broker for the running tool call."""
    context = _current.get()
    if context is None or context.credential is None:
        raise MissingCredential("no credential bound to this tool call")
    return context.credential.access_token
