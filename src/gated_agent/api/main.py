"""FastAPI entrypoint for chat turns, consent resolution, retrieval and traces."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from gated_agent.agent.credentials import Auth0TokenExchanger, CredentialBroker
from gated_agent.agent.fallback import DeterministicPlanner
from gated_agent.agent.gate import ToolGate
from gated_agent.agent.interrupts import InterruptRegistry
from gated_agent.agent.planner import GatedAgentPlanner, TurnResult
from gated_agent.agent.registry import ToolRegistry
from gated_agent.agent.spotify import register_spotify_tools
from gated_agent.agent.tools import register_builtin_tools
from gated_agent.authz.fga import CapabilityFilter, InMemoryDecisionService, OpenFGADecisionService
from gated_agent.config import (
    AgentConfig,
    ConnectionConfig,
    FGAConfig,
    RetrievalConfig,
    TokenExchangeConfig,
)
from gated_agent.errors import AuthorizationDenied, GatedAgentError, InterruptNotPending
from gated_agent.ingest.embedder import create_embedder
from gated_agent.ingest.parser import load_documents
from gated_agent.obs.tracing import TraceStore
from gated_agent.rag.service import (
    AuthorizedRetrievalService,
    ExtractiveGenerator,
    LangChainGenerator,
)
from gated_agent.retrieval.index import SharedIndex
from gated_agent.types import Session

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)


def _create_llm() -> Any:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return None

    from langchain_openai import ChatOpenAI

    return ChatOpenAI(model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"), temperature=0)


class ChatRequest(BaseModel):
    question: str = Field(min_length=1)
    thread_id: str | None = None
    chat_history: list[Any] = Field(default_factory=list)


class KnowledgeQueryRequest(BaseModel):
    question: str = Field(min_length=1)
    top_k: int | None = Field(default=None, ge=1, le=20)


app = FastAPI(title="Gated Agent", version="0.1.0")

_retrieval_config = RetrievalConfig.from_env()
_fga_config = FGAConfig.from_env()
_exchange_config = TokenExchangeConfig.from_env()
_connection = ConnectionConfig.from_env()

_embedder = create_embedder()
_shared_index = SharedIndex(lambda: load_documents(_retrieval_config.docs_path), _embedder)
_decision_service = (
    OpenFGADecisionService(_fga_config)
    if _fga_config.configured
    else InMemoryDecisionService(configured=False)
)

_llm = _create_llm()
_rag_service = AuthorizedRetrievalService(
    _shared_index,
    CapabilityFilter(_decision_service),
    LangChainGenerator(_llm) if _llm is not None else ExtractiveGenerator(),
    _retrieval_config,
)

_agent_config = AgentConfig.from_env()
_trace_store = TraceStore()
_interrupts = InterruptRegistry(pending_ttl_seconds=_agent_config.consent_ttl_seconds)
_registry = ToolRegistry()
register_builtin_tools(_registry, _rag_service)
if _exchange_config.configured:
    _broker = CredentialBroker(
        _connection.name, _connection.scopes, Auth0TokenExchanger(_exchange_config)
    )
    register_spotify_tools(_registry, ToolGate(_interrupts, _broker))
else:
    logger.info("Token exchange not configured; %s tools disabled", _connection.name)

_planner: GatedAgentPlanner | DeterministicPlanner = (
    GatedAgentPlanner(
        llm=_llm,
        tool_registry=_registry,
        trace_store=_trace_store,
        interrupts=_interrupts,
        config=_agent_config,
    )
    if _llm is not None
    else DeterministicPlanner(tool_registry=_registry, trace_store=_trace_store)
)


def _session(subject: str | None, refresh_token: str | None, thread_id: str | None) -> Session:
    if not subject:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return Session(subject=subject, refresh_token=refresh_token, thread_id=thread_id or subject)


def _turn_payload(result: TurnResult) -> dict[str, Any]:
    return asdict(result)


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "llm_configured": _llm is not None,
        "planner_mode": "langchain" if _llm is not None else "deterministic",
        "authorization_configured": _fga_config.configured,
        "tools": [spec.name for spec in _registry.specs()],
        "pending_interrupts": len(_interrupts.pending()),
    }


@app.post("/chat")
def chat(
    request: ChatRequest,
    x_subject: str | None = Header(default=None),
    x_refresh_token: str | None = Header(default=None),
) -> dict[str, Any]:
    session = _session(x_subject, x_refresh_token, request.thread_id)
    try:
        result = _planner.invoke(
            request.question, session=session, chat_history=request.chat_history
        )
    except AuthorizationDenied as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Chat turn failed")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return _turn_payload(result)


@app.post("/interrupts/{token}/resume")
def resume(
    token: str,
    x_subject: str | None = Header(default=None),
    x_refresh_token: str | None = Header(default=None),
) -> dict[str, Any]:
    session = _session(x_subject, x_refresh_token, None)
    try:
        return _turn_payload(_planner.resume(token, session=session))
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InterruptNotPending as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except AuthorizationDenied as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


@app.post("/interrupts/{token}/decline")
def decline(
    token: str,
    x_subject: str | None = Header(default=None),
) -> dict[str, Any]:
    session = _session(x_subject, None, None)
    try:
        return _turn_payload(_planner.decline(token, session=session))
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InterruptNotPending as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except AuthorizationDenied as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


@app.post("/knowledge/query")
def knowledge_query(
    request: KnowledgeQueryRequest,
    x_subject: str | None = Header(default=None),
) -> dict[str, Any]:
    session = _session(x_subject, None, None)
    try:
        result = _rag_service.answer(request.question, session.subject or "", top_k=request.top_k)
    except GatedAgentError as exc:
        raise HTTPException(status_code=502, detail=exc.user_message) from exc
    return {
        "answer": result.answer,
        "context": [
            {
                "id": item.chunk.doc_id,
                "chunk_id": item.chunk.chunk_id,
                "text": item.chunk.text,
                "score": round(item.score, 3),
            }
            for item in result.allowed
        ],
        "filtered_count": len(result.filtered),
    }


@app.get("/traces")
def traces(limit: int = 20) -> dict[str, Any]:
    records = [asdict(record) for record in _trace_store.list_recent(limit=limit)]
    return {"items": records}


@app.get("/traces/{trace_id}")
def trace_detail(trace_id: str) -> dict[str, Any]:
    try:
        record = _trace_store.get(trace_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return asdict(record)


@app.get("/metrics")
def metrics() -> dict[str, Any]:
    return _trace_store.summary()
