"""Consent interrupts: suspended tool calls awaiting a user grant.

An interrupt is created when a gated tool finds a credential or an explicit
approval missing. It moves from AWAITING_CONSENT to GRANTED (the caller
resumed it) or DECLINED (the caller dismissed it); both are terminal. The
registry lives in process memory only and remembers a bounded number of
resolved interrupts so late resume or decline calls are rejected. Interrupts
left awaiting consent longer than the registry TTL are dropped.
"""

from __future__ import annotations

import functools
import logging
import re
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from gated_agent.agent.context import current_context
from gated_agent.errors import (
    ApprovalRequired,
    ConsentRequired,
    GatedAgentError,
    GrantKind,
    InterruptNotPending,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_BINDING_MESSAGE_DISALLOWED = re.compile(r"[^A-Za-z0-9\s+\-_.:,#]")


class InterruptState(str, Enum):
    AWAITING_CONSENT = "awaiting_consent"
    GRANTED = "granted"
    DECLINED = "declined"


@dataclass(slots=True)
class Interrupt:
    token: str
    tool_name: str
    tool_input: dict[str, Any]
    kind: GrantKind
    thread_id: str
    subject: str = ""
    connection: str | None = None
    scopes: tuple[str, ...] = ()
    binding_message: str | None = None
    message: str = ""
    state: InterruptState = InterruptState.AWAITING_CONSENT
    created_at: float = field(default_factory=time.time)

    def descriptor(self) -> dict[str, Any]:
        """Payload handed to the calling surface to render a consent prompt."""
        return {
            "tool": self.tool_name,
            "correlationToken": self.token,
            "requiredGrantKind": self.kind,
            "connectionHint": self.connection,
            "scopes": list(self.scopes),
            "bindingMessage": self.binding_message,
            "message": self.message,
        }


class ToolInterrupted(GatedAgentError):
    """Raised by a gated tool in place of its result; carries the live interrupt."""

    def __init__(self, interrupt: Interrupt) -> None:
        super().__init__(f"tool {interrupt.tool_name} is awaiting {interrupt.kind} consent")
        self.interrupt = interrupt


def sanitize_binding_message(value: str) -> str:
    return _BINDING_MESSAGE_DISALLOWED.sub("", value).strip()


class GrantLedger:
    """Approvals recorded per subject, conversation thread and binding message."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._approved: set[tuple[str, str, str]] = set()

    def record(self, subject: str, thread_id: str, binding_message: str) -> None:
        with self._lock:
            self._approved.add((subject, thread_id, binding_message))

    def is_approved(self, subject: str, thread_id: str, binding_message: str) -> bool:
        with self._lock:
            return (subject, thread_id, binding_message) in self._approved


class InterruptRegistry:
    """Thread-safe correlation map from token to live interrupt."""

    def __init__(
        self,
        ledger: GrantLedger | None = None,
        *,
        max_resolved: int = 1000,
        pending_ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger or GrantLedger()
        self.pending_ttl_seconds = pending_ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._interrupts: dict[str, Interrupt] = {}
        self._resolved: deque[str] = deque()
        self._max_resolved = max_resolved

    def open(
        self,
        *,
        tool_name: str,
        tool_input: dict[str, Any],
        requirement: ConsentRequired,
        thread_id: str,
        subject: str = "",
    ) -> Interrupt:
        interrupt = Interrupt(
            token=uuid.uuid4().hex,
            tool_name=tool_name,
            tool_input=dict(tool_input),
            kind=requirement.kind,
            thread_id=thread_id,
            subject=subject,
            connection=requirement.connection,
            scopes=requirement.scopes,
            binding_message=requirement.binding_message,
            message=str(requirement),
            created_at=self._clock(),
        )
        with self._lock:
            self._interrupts[interrupt.token] = interrupt
        logger.info(
            "Tool %s suspended awaiting %s consent (token=%s)",
            tool_name,
            interrupt.kind,
            interrupt.token,
        )
        return interrupt

    def get(self, token: str) -> Interrupt:
        with self._lock:
            interrupt = self._interrupts.get(token)
        if interrupt is None:
            raise KeyError(f"Interrupt not found: {token}")
        return interrupt

    def grant(self, token: str) -> Interrupt:
        interrupt = self._transition(token, InterruptState.GRANTED)
        if interrupt.kind == "approval" and interrupt.binding_message:
            self.ledger.record(
                interrupt.subject, interrupt.thread_id, interrupt.binding_message
            )
        return interrupt

    def decline(self, token: str) -> Interrupt:
        return self._transition(token, InterruptState.DECLINED)

    def pending(self) -> list[Interrupt]:
        with self._lock:
            return [
                i for i in self._interrupts.values() if i.state is InterruptState.AWAITING_CONSENT
            ]

    def expire_stale(self) -> list[str]:
        """Drop interrupts that waited for consent longer than the TTL."""
        cutoff = self._clock() - self.pending_ttl_seconds
        with self._lock:
            expired = [
                token
                for token, interrupt in self._interrupts.items()
                if interrupt.state is InterruptState.AWAITING_CONSENT
                and interrupt.created_at < cutoff
            ]
            for token in expired:
                del self._interrupts[token]
        if expired:
            logger.info("Expired %d unanswered interrupt(s)", len(expired))
        return expired

    def _transition(self, token: str, target: InterruptState) -> Interrupt:
        with self._lock:
            interrupt = self._interrupts.get(token)
            if interrupt is None:
                raise KeyError(f"Interrupt not found: {token}")
            if interrupt.state is not InterruptState.AWAITING_CONSENT:
                raise InterruptNotPending(
                    f"Interrupt {token} is already {interrupt.state.value}"
                )
            interrupt.state = target
            self._resolved.append(token)
            while len(self._resolved) > self._max_resolved:
                self._interrupts.pop(self._resolved.popleft(), None)
        logger.info("Interrupt %s %s", token, target.value)
        return interrupt


class ApprovalGate:
    """Requires a recorded user approval of `binding_message` before an action runs."""

    def __init__(self, binding_message: str, ledger: GrantLedger) -> None:
        self.binding_message = sanitize_binding_message(binding_message)
        if not self.binding_message:
            raise ValueError("binding message is empty after sanitizing")
        self.ledger = ledger

    def with_approval(self, handler: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(handler)
        def _wrapped(*args: Any, **kwargs: Any) -> T:
            session = current_context().session
            approved = self.ledger.is_approved(
                session.subject or "", session.thread_id, self.binding_message
            )
            if not approved:
                raise ApprovalRequired(
                    f"user approval required: {self.binding_message}",
                    binding_message=self.binding_message,
                )
            return handler(*args, **kwargs)

        return _wrapped
