"""Authorized retrieval: search, filter by capability, then answer."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from gated_agent.authz.fga import CapabilityFilter
from gated_agent.config import RetrievalConfig
from gated_agent.errors import ExternalServiceFailure, PolicyUnconfigured
from gated_agent.retrieval.index import SharedIndex
from gated_agent.types import ScoredChunk

logger = logging.getLogger(__name__)

NO_MATCHES_MESSAGE = "No knowledge base entries matched this request."
NOT_AUTHORIZED_MESSAGE = (
    "No authorized knowledge was found for this user. Either no documents match "
    "the request or your account lacks permission."
)
POLICY_UNCONFIGURED_MESSAGE = PolicyUnconfigured.user_message

_PROMPT_TEMPLATE = """Answer the following question using only the provided authorized context.
Do not use outside knowledge. If the context does not contain the answer, respond
that the information is not available for this user.

Context:
{context}

Question: {question}"""


class Generator(Protocol):
    def generate(self, prompt: str) -> str:
        ...


class LangChainGenerator:
    """Adapts a LangChain chat model to the single-prompt `Generator` contract."""

    def __init__(self, llm: Any) -> None:
        self.llm = llm

    def generate(self, prompt: str) -> str:
        try:
            response = self.llm.invoke(prompt)
        except Exception as exc:
            raise ExternalServiceFailure(f"generation request failed: {exc}") from exc
        content = getattr(response, "content", response)
        if isinstance(content, list):
            return " ".join(
                str(item.get("text", "")) if isinstance(item, dict) else str(item)
                for item in content
            )
        return str(content)


class ExtractiveGenerator:
    """Offline generator that quotes the context passages of the prompt.

    Only text between the `Context:` and `Question:` markers is used, so it
    can never add anything the prompt did not already contain.
    """

    def __init__(self, max_passages: int = 3) -> None:
        self.max_passages = max_passages

    def generate(self, prompt: str) -> str:
        _, _, rest = prompt.partition("Context:\n")
        context, _, _ = rest.partition("\n\nQuestion:")
        passages = [
            block.split("\n", 1)[1].strip()
            for block in context.split("\n\n")
            if "\n" in block and block.startswith("Document ")
        ]
        return " ".join(passages[: self.max_passages])


@dataclass(slots=True)
class AuthorizedAnswer:
    allowed: list[ScoredChunk] = field(default_factory=list)
    filtered: list[ScoredChunk] = field(default_factory=list)
    answer: str = ""


class AuthorizedRetrievalService:
    """Answers questions from chunks the subject is allowed to view.

    Unauthorized chunks never reach the generator: when nothing survives the
    capability filter the service returns a fixed message without calling it.
    """

    def __init__(
        self,
        index_provider: SharedIndex,
        capability_filter: CapabilityFilter,
        generator: Generator,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.index_provider = index_provider
        self.capability_filter = capability_filter
        self.generator = generator
        self.config = config or RetrievalConfig()

    def authorized_context(
        self, question: str, subject: str, top_k: int | None = None
    ) -> AuthorizedAnswer:
        index = self.index_provider.get()
        limit = max(self.config.top_k if top_k is None else top_k, 1)
        candidates = index.search(question, limit)
        if not candidates:
            return AuthorizedAnswer()

        allowed = self.capability_filter.filter(subject, candidates)
        allowed_ids = {id(item) for item in allowed}
        filtered = [item for item in candidates if id(item) not in allowed_ids]
        return AuthorizedAnswer(allowed=allowed, filtered=filtered)

    def answer(self, question: str, subject: str, top_k: int | None = None) -> AuthorizedAnswer:
        try:
            context = self.authorized_context(question, subject, top_k)
        except PolicyUnconfigured:
            logger.warning("Authorization model missing; knowledge base disabled")
            return AuthorizedAnswer(answer=POLICY_UNCONFIGURED_MESSAGE)

        if not context.allowed and not context.filtered:
            context.answer = NO_MATCHES_MESSAGE
            return context
        if not context.allowed:
            logger.info("All %d candidates filtered for subject", len(context.filtered))
            context.answer = NOT_AUTHORIZED_MESSAGE
            return context

        prompt = build_prompt(question, context.allowed)
        context.answer = self.generator.generate(prompt).strip()
        return context


def format_context(chunks: list[ScoredChunk]) -> str:
    return "\n\n".join(
        f"Document {i} ({item.chunk.chunk_id} from {item.chunk.doc_id}, "
        f"score: {item.score:.3f}):\n{item.chunk.text}"
        for i, item in enumerate(chunks, start=1)
    )


def build_prompt(question: str, chunks: list[ScoredChunk]) -> str:
    return _PROMPT_TEMPLATE.format(context=format_context(chunks), question=question)
