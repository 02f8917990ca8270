"""Tool Gate: wraps a tool spec with credential and approval checks."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel

from gated_agent.agent.context import current_context
from gated_agent.agent.credentials import CredentialBroker
from gated_agent.agent.interrupts import ApprovalGate, InterruptRegistry, ToolInterrupted
from gated_agent.agent.registry import ToolSpec
from gated_agent.errors import ConsentRequired


class GatePolicy(str, Enum):
    CREDENTIAL_ONLY = "credential"
    CREDENTIAL_AND_EXPLICIT_GRANT = "approval"


class ToolGate:
    """Decorates tool specs without changing their name, schema or output.

    Call order for a gated tool: input validation (done by `ToolSpec.invoke`),
    credential resolution, approval check for explicit-grant tools, then the
    action. Anything the action does over the network therefore happens only
    after every check has passed. A `ConsentRequired` raised at any of these
    points is registered as an interrupt and re-raised as `ToolInterrupted`.
    """

    def __init__(self, interrupts: InterruptRegistry, broker: CredentialBroker) -> None:
        self.interrupts = interrupts
        self.broker = broker

    def approval(self, binding_message: str) -> ApprovalGate:
        return ApprovalGate(binding_message, self.interrupts.ledger)

    def gate(
        self,
        spec: ToolSpec,
        policy: GatePolicy,
        *,
        binding_message: str | None = None,
    ) -> ToolSpec:
        handler = spec.handler
        if policy is GatePolicy.CREDENTIAL_AND_EXPLICIT_GRANT:
            if not binding_message:
                raise ValueError(f"{spec.name}: explicit-grant tools need a binding message")
            handler = self.approval(binding_message).with_approval(handler)
        handler = self.broker.with_credential(handler)

        tool_name = spec.name
        interrupts = self.interrupts

        def _gated(data: BaseModel) -> str:
            try:
                return handler(data)
            except ConsentRequired as exc:
                session = current_context().session
                interrupt = interrupts.open(
                    tool_name=tool_name,
                    tool_input=data.model_dump(mode="json"),
                    requirement=exc,
                    thread_id=session.thread_id,
                    subject=session.subject or "",
                )
                raise ToolInterrupted(interrupt) from exc

        return spec.model_copy(
            update={
                "handler": _gated,
                "tags": [*spec.tags, f"gated:{policy.value}"],
            }
        )
