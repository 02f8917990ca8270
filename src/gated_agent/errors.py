"""Error taxonomy shared by the gate, the retrieval service and the planner."""

from __future__ import annotations

from typing import Literal

GrantKind = Literal["credential", "approval"]


class GatedAgentError(Exception):
    """Base class for all errors raised by this package."""

    user_message = "An unexpected error occurred while processing your request."


class ConsentRequired(GatedAgentError):
    """An action cannot run until the user grants something out of band.

    The Tool Gate converts these into a suspend/resume cycle instead of
    letting them reach the planner.
    """

    kind: GrantKind = "credential"

    def __init__(
        self,
        message: str,
        *,
        connection: str | None = None,
        scopes: list[str] | tuple[str, ...] = (),
        binding_message: str | None = None,
    ) -> None:
        super().__init__(message)
        self.connection = connection
        self.scopes = tuple(scopes)
        self.binding_message = binding_message


class MissingCredential(ConsentRequired):
    """No credential is on file for the subject and connection."""

    kind: GrantKind = "credential"


class ApprovalRequired(ConsentRequired):
    """No approval has been recorded for the action's binding message."""

    kind: GrantKind = "approval"


class PolicyUnconfigured(GatedAgentError):
    """The decision service has no authorization model to evaluate against."""

    user_message = (
        "The knowledge base is not initialized. Ask an administrator to create "
        "an authorization model before using this tool."
    )


class AuthorizationDenied(GatedAgentError):
    """The request carries no subject identity; never retried."""

    user_message = "This action requires an authenticated user."


class ExternalServiceFailure(GatedAgentError):
    """A third-party API or provider call failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def user_message(self) -> str:  # type: ignore[override]
        return f"An external service request failed: {self}"


class StepBudgetExhausted(GatedAgentError):
    """The generation loop reached its step cap without a final answer."""

    user_message = (
        "I could not finish this request within the allowed number of steps. "
        "Try narrowing the request."
    )


class InterruptNotPending(GatedAgentError):
    """resume/decline was called on an interrupt that is no longer awaiting consent."""
