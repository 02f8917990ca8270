"""Built-in tool implementations for the gated agent."""

from __future__ import annotations

import json

from pydantic import BaseModel, Field

from gated_agent.agent.context import current_subject
from gated_agent.agent.registry import ToolRegistry, ToolSpec
from gated_agent.rag.service import AuthorizedRetrievalService
from gated_agent.types import ScoredChunk

KNOWLEDGE_BASE_TOOL = "query_knowledge_base"


class KnowledgeBaseInput(BaseModel):
    question: str = Field(
        min_length=1,
        description="Natural language question to answer with the internal knowledge base.",
    )
    top_k: int | None = Field(
        default=None,
        ge=1,
        le=20,
        description="Maximum number of authorized snippets to inspect.",
    )
    include_filtered: bool = Field(
        default=False,
        description="Also list ids of snippets removed by authorization checks.",
    )


def register_builtin_tools(registry: ToolRegistry, rag_service: AuthorizedRetrievalService) -> None:
    """Register the knowledge base tool.

    The tool answers on behalf of the subject bound to the current turn, so
    only snippets that subject may view are summarized.
    """

    def _query(input_data: KnowledgeBaseInput) -> str:
        result = rag_service.answer(
            input_data.question, current_subject(), top_k=input_data.top_k
        )
        payload: dict[str, object] = {
            "answer": result.answer,
            "context": [_summary(item) for item in result.allowed],
        }
        if input_data.include_filtered:
            payload["filtered"] = [_summary(item, with_text=False) for item in result.filtered]
        return json.dumps(payload, ensure_ascii=False)

    registry.register(
        ToolSpec(
            name=KNOWLEDGE_BASE_TOOL,
            description=(
                "Retrieve authorized snippets from the internal knowledge base and "
                "summarize them for the user."
            ),
            args_schema=KnowledgeBaseInput,
            handler=_query,
            tags=["retrieval", "rag"],
        )
    )


def _summary(item: ScoredChunk, *, with_text: bool = True) -> dict[str, object]:
    summary: dict[str, object] = {
        "id": item.chunk.doc_id,
        "chunk_id": item.chunk.chunk_id,
        "score": round(item.score, 3),
    }
    # Filtered snippets are reported by id only; their text is never exposed.
    if with_text:
        summary["text"] = item.chunk.text
    return summary
