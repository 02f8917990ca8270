"""Bounded tool-calling loop that suspends whole turns on consent interrupts."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Literal

from langchain_core.messages import (
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
    convert_to_messages,
)
from pydantic import ValidationError

from gated_agent.agent.context import bind_session
from gated_agent.agent.interrupts import Interrupt, InterruptRegistry, ToolInterrupted
from gated_agent.agent.registry import ToolRegistry
from gated_agent.config import AgentConfig
from gated_agent.errors import (
    AuthorizationDenied,
    ExternalServiceFailure,
    GatedAgentError,
    InterruptNotPending,
    StepBudgetExhausted,
)
from gated_agent.obs.tracing import Timer, TraceStore, estimate_token_count
from gated_agent.types import Session, ToolTrace

logger = logging.getLogger(__name__)

TurnStatus = Literal["completed", "interrupted", "declined", "error", "step_budget_exhausted"]

DECLINED_MESSAGE = (
    "Okay, I won't do that. The action was cancelled because access was not granted."
)

_SYSTEM_PROMPT = """
You are an assistant that acts on the user's behalf against connected services
and the internal knowledge base.

Rules:
1) Use `query_knowledge_base` for questions about internal knowledge and answer
   only from what it returns.
2) Never invent results for a tool call; if a tool reports an error, explain it.
3) Some tools need the user to connect an account or approve an action. When
   that happens the conversation pauses until the user decides.
4) Acknowledge the request, call tools as needed, then summarize the outcome
   in plain language.
""".strip()


@dataclass(slots=True)
class TurnResult:
    status: TurnStatus
    answer: str
    thread_id: str
    interrupt: dict[str, Any] | None = None
    tool_traces: list[ToolTrace] = field(default_factory=list)
    trace_id: str = ""
    latency_ms: float = 0.0
    steps_used: int = 0


@dataclass(slots=True)
class _TurnState:
    question: str
    subject: str
    thread_id: str
    messages: list[BaseMessage]
    steps_used: int = 0
    tool_traces: list[ToolTrace] = field(default_factory=list)


@dataclass(slots=True)
class SuspendedTurn:
    """A parked turn: the call that raised the interrupt and what follows it."""

    state: _TurnState
    pending_call: dict[str, Any]
    remaining_calls: list[dict[str, Any]]


class GatedAgentPlanner:
    """Runs one conversation turn as a bounded generate/execute loop.

    Tool calls requested in a step run one at a time in the order the model
    issued them. When a gated tool raises `ToolInterrupted`, the whole turn
    is parked under the interrupt's correlation token and the descriptor is
    returned to the caller; `resume` re-issues the exact suspended call and
    continues, `decline` ends the turn with a refusal.
    """

    def __init__(
        self,
        *,
        llm: Any,
        tool_registry: ToolRegistry,
        trace_store: TraceStore,
        interrupts: InterruptRegistry,
        config: AgentConfig | None = None,
        system_prompt: str = _SYSTEM_PROMPT,
    ) -> None:
        self.tool_registry = tool_registry
        self.trace_store = trace_store
        self.interrupts = interrupts
        self.config = config or AgentConfig()
        self.system_prompt = system_prompt
        self.model = llm.bind_tools(tool_registry.as_langchain_tools())
        self._lock = threading.Lock()
        self._suspended: dict[str, SuspendedTurn] = {}

    def invoke(
        self,
        question: str,
        *,
        session: Session,
        chat_history: list[Any] | None = None,
    ) -> TurnResult:
        """Start a turn for `question` on behalf of the session's subject."""
        if not session.subject:
            raise AuthorizationDenied("a turn requires an authenticated subject")
        self._evict_expired()

        messages: list[BaseMessage] = [SystemMessage(content=self.system_prompt)]
        messages.extend(convert_to_messages(chat_history or []))
        messages.append(HumanMessage(content=question))
        state = _TurnState(
            question=question,
            subject=session.subject,
            thread_id=session.thread_id,
            messages=messages,
        )
        return self._run(state, session, [])

    def resume(self, token: str, *, session: Session) -> TurnResult:
        """Grant the interrupt and replay its tool call with the original input."""
        self._evict_expired()
        with self._lock:
            suspended = self._suspended.get(token)
        if suspended is None:
            self.interrupts.get(token)  # KeyError for unknown or expired tokens
            raise InterruptNotPending(f"Interrupt {token} has no suspended turn")
        if session.subject != suspended.state.subject:
            raise AuthorizationDenied("only the user who started the turn may resume it")

        self.interrupts.grant(token)
        with self._lock:
            self._suspended.pop(token, None)

        logger.info(
            "Resuming turn on thread %s at tool %s",
            suspended.state.thread_id,
            suspended.pending_call.get("name"),
        )
        pending = [suspended.pending_call, *suspended.remaining_calls]
        session = replace(session, thread_id=suspended.state.thread_id)
        return self._run(suspended.state, session, pending)

    def decline(self, token: str, *, session: Session | None = None) -> TurnResult:
        """Dismiss the interrupt and end its turn without running the tool."""
        self._evict_expired()
        with self._lock:
            suspended = self._suspended.get(token)
        if (
            suspended is not None
            and session is not None
            and session.subject != suspended.state.subject
        ):
            raise AuthorizationDenied("only the user who started the turn may decline it")

        interrupt = self.interrupts.decline(token)
        with self._lock:
            self._suspended.pop(token, None)

        thread_id = suspended.state.thread_id if suspended else interrupt.thread_id
        question = suspended.state.question if suspended else ""
        traces = suspended.state.tool_traces if suspended else []
        record = self.trace_store.create_record(
            thread_id=thread_id,
            question=question,
            answer=DECLINED_MESSAGE,
            status="declined",
            tool_traces=traces,
            interrupt_token=token,
            input_tokens=0,
            output_tokens=estimate_token_count(DECLINED_MESSAGE),
            latency_ms=0.0,
        )
        return TurnResult(
            status="declined",
            answer=DECLINED_MESSAGE,
            thread_id=thread_id,
            tool_traces=traces,
            trace_id=record.trace_id,
            steps_used=suspended.state.steps_used if suspended else 0,
        )

    def suspended_count(self) -> int:
        with self._lock:
            return len(self._suspended)

    def _evict_expired(self) -> None:
        expired = self.interrupts.expire_stale()
        if not expired:
            return
        with self._lock:
            for token in expired:
                self._suspended.pop(token, None)

    def _run(
        self, state: _TurnState, session: Session, pending: list[dict[str, Any]]
    ) -> TurnResult:
        interrupt: Interrupt | None = None
        with Timer() as timer:
            try:
                with bind_session(session):
                    answer, interrupt = self._loop(state, pending)
                status: TurnStatus = "interrupted" if interrupt is not None else "completed"
            except StepBudgetExhausted as exc:
                logger.warning("Turn on thread %s exhausted %d steps", state.thread_id, state.steps_used)
                status, answer = "step_budget_exhausted", exc.user_message
            except GatedAgentError as exc:
                logger.warning("Turn on thread %s failed: %s", state.thread_id, type(exc).__name__)
                status, answer = "error", exc.user_message
            except Exception:
                logger.exception("Turn on thread %s failed unexpectedly", state.thread_id)
                status, answer = "error", GatedAgentError.user_message

        record = self.trace_store.create_record(
            thread_id=state.thread_id,
            question=state.question,
            answer=answer,
            status=status,
            tool_traces=list(state.tool_traces),
            interrupt_token=interrupt.token if interrupt else None,
            input_tokens=estimate_token_count(state.question),
            output_tokens=estimate_token_count(answer),
            latency_ms=timer.elapsed_ms,
        )
        return TurnResult(
            status=status,
            answer=answer,
            thread_id=state.thread_id,
            interrupt=interrupt.descriptor() if interrupt else None,
            tool_traces=list(state.tool_traces),
            trace_id=record.trace_id,
            latency_ms=record.latency_ms,
            steps_used=state.steps_used,
        )

    def _loop(
        self, state: _TurnState, pending: list[dict[str, Any]]
    ) -> tuple[str, Interrupt | None]:
        while True:
            while pending:
                call = pending[0]
                try:
                    content = self._execute_call(state, call)
                except ToolInterrupted as exc:
                    self._park(exc.interrupt, state, call, pending[1:])
                    return "", exc.interrupt
                state.messages.append(
                    ToolMessage(content=content, tool_call_id=call.get("id") or "", name=call["name"])
                )
                pending = pending[1:]

            if state.steps_used >= self.config.max_steps:
                raise StepBudgetExhausted(f"no final answer after {state.steps_used} steps")
            state.steps_used += 1

            try:
                message = self.model.invoke(state.messages)
            except Exception as exc:
                raise ExternalServiceFailure(f"chat model request failed: {exc}") from exc
            state.messages.append(message)
            tool_calls = list(getattr(message, "tool_calls", None) or [])
            if not tool_calls:
                return _message_text(message), None
            pending = tool_calls

    def _execute_call(self, state: _TurnState, call: dict[str, Any]) -> str:
        name = str(call.get("name", ""))
        if not self.tool_registry.has(name):
            return f"TOOL_ERROR: unknown tool {name!r}"
        try:
            return self.tool_registry.execute(
                name, dict(call.get("args") or {}), observer=state.tool_traces.append
            )
        except ValidationError as exc:
            # Let the model correct malformed arguments on its next step.
            return f"TOOL_INPUT_ERROR: {exc.error_count()} invalid field(s): {exc}"

    def _park(
        self,
        interrupt: Interrupt,
        state: _TurnState,
        call: dict[str, Any],
        remaining: list[dict[str, Any]],
    ) -> None:
        with self._lock:
            self._suspended[interrupt.token] = SuspendedTurn(
                state=state, pending_call=call, remaining_calls=list(remaining)
            )


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                if item.get("type", "text") == "text" and "text" in item:
                    parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return " ".join(parts).strip()
    return str(content).strip()
