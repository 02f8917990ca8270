"""Deterministic fallback planner when external LLM is unavailable."""

from __future__ import annotations

import json
import logging
from typing import Any

from gated_agent.agent.context import bind_session
from gated_agent.agent.planner import TurnResult, TurnStatus
from gated_agent.agent.registry import ToolRegistry
from gated_agent.agent.tools import KNOWLEDGE_BASE_TOOL
from gated_agent.errors import AuthorizationDenied, GatedAgentError
from gated_agent.obs.tracing import Timer, TraceStore, estimate_token_count
from gated_agent.types import Session, ToolTrace

logger = logging.getLogger(__name__)


class DeterministicPlanner:
    """Planner that answers from the knowledge base without an LLM.

    Keeps the `TurnResult` contract of `GatedAgentPlanner` for local and
    offline environments where `OPENAI_API_KEY` is not configured. It never
    calls gated tools, so it never produces interrupts.
    """

    def __init__(self, *, tool_registry: ToolRegistry, trace_store: TraceStore) -> None:
        self.tool_registry = tool_registry
        self.trace_store = trace_store

    def invoke(
        self,
        question: str,
        *,
        session: Session,
        chat_history: list[Any] | None = None,
    ) -> TurnResult:
        del chat_history  # deterministic planner is stateless.
        if not session.subject:
            raise AuthorizationDenied("a turn requires an authenticated subject")

        observed: list[ToolTrace] = []
        status: TurnStatus = "completed"
        with Timer() as timer:
            try:
                with bind_session(session):
                    raw = self.tool_registry.execute(
                        KNOWLEDGE_BASE_TOOL, {"question": question}, observer=observed.append
                    )
                answer = str(json.loads(raw).get("answer", ""))
            except GatedAgentError as exc:
                status, answer = "error", exc.user_message
            except Exception:
                logger.exception("Knowledge base turn failed unexpectedly")
                status, answer = "error", GatedAgentError.user_message

        record = self.trace_store.create_record(
            thread_id=session.thread_id,
            question=question,
            answer=answer,
            status=status,
            tool_traces=observed,
            interrupt_token=None,
            input_tokens=estimate_token_count(question),
            output_tokens=estimate_token_count(answer),
            latency_ms=timer.elapsed_ms,
        )
        return TurnResult(
            status=status,
            answer=answer,
            thread_id=session.thread_id,
            tool_traces=observed,
            trace_id=record.trace_id,
            latency_ms=record.latency_ms,
            steps_used=1,
        )

    def resume(self, token: str, *, session: Session) -> TurnResult:
        raise KeyError(f"Interrupt not found: {token}")

    def decline(self, token: str, *, session: Session | None = None) -> TurnResult:
        raise KeyError(f"Interrupt not found: {token}")
