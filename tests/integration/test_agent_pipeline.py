import json

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage
from pydantic import BaseModel, Field

from conftest import FakeClock, FakeExchanger, ScriptedChatModel, tool_call
from gated_agent.agent.context import get_access_token
from gated_agent.agent.credentials import CredentialBroker
from gated_agent.agent.gate import GatePolicy, ToolGate
from gated_agent.agent.interrupts import InterruptRegistry
from gated_agent.agent.planner import DECLINED_MESSAGE, GatedAgentPlanner
from gated_agent.agent.registry import ToolRegistry, ToolSpec
from gated_agent.agent.tools import register_builtin_tools
from gated_agent.authz.fga import CapabilityFilter, InMemoryDecisionService
from gated_agent.config import AgentConfig
from gated_agent.errors import AuthorizationDenied, GatedAgentError, InterruptNotPending
from gated_agent.ingest.embedder import HashingEmbedder
from gated_agent.obs.tracing import TraceStore
from gated_agent.rag.service import AuthorizedRetrievalService, ExtractiveGenerator
from gated_agent.retrieval.index import SharedIndex
from gated_agent.types import Document, Session


class ListInput(BaseModel):
    limit: int = Field(default=5, ge=1, le=50)


class PlaylistAction:
    def __init__(self) -> None:
        self.calls: list[tuple[str, int]] = []

    def __call__(self, data: ListInput) -> str:
        self.calls.append((get_access_token(), data.limit))
        return json.dumps({"playlists": ["Focus"][: data.limit]})


class FailingDecisionService:
    def check(self, tuples):
        return []


class BrokenDecisionService:
    def check(self, tuples):
        raise RuntimeError("decision backend crashed")


DOCS = [Document(doc_id="handbook", text="Customer data must be encrypted at rest.")]


def _build(
    responses,
    *,
    policy=GatePolicy.CREDENTIAL_ONLY,
    decisions=None,
    max_steps=12,
    interrupts=None,
):
    exchanger = FakeExchanger(linked={"refresh-alice", "refresh-bob"})
    interrupts = interrupts or InterruptRegistry()
    gate = ToolGate(interrupts, CredentialBroker("spotify", ["playlist-read-private"], exchanger))

    rag_service = AuthorizedRetrievalService(
        SharedIndex(lambda: DOCS, HashingEmbedder()),
        CapabilityFilter(decisions or InMemoryDecisionService([("alice", "viewer", "handbook")])),
        ExtractiveGenerator(),
    )
    registry = ToolRegistry()
    register_builtin_tools(registry, rag_service)

    action = PlaylistAction()
    binding = "Approve playlist access" if policy is GatePolicy.CREDENTIAL_AND_EXPLICIT_GRANT else None
    registry.register(
        gate.gate(
            ToolSpec(
                name="list_playlists",
                description="List playlists.",
                args_schema=ListInput,
                handler=action,
            ),
            policy,
            binding_message=binding,
        )
    )

    model = ScriptedChatModel(responses)
    trace_store = TraceStore()
    planner = GatedAgentPlanner(
        llm=model,
        tool_registry=registry,
        trace_store=trace_store,
        interrupts=interrupts,
        config=AgentConfig(max_steps=max_steps),
    )
    return planner, model, action, trace_store, exchanger


def _ask_for_playlists(final: str = "You have one playlist: Focus."):
    return [
        AIMessage(content="", tool_calls=[tool_call("list_playlists", {"limit": 3}, "call-1")]),
        AIMessage(content=final),
    ]


ALICE_UNLINKED = Session(subject="alice", thread_id="thread-1")
ALICE_LINKED = Session(subject="alice", refresh_token="refresh-alice", thread_id="thread-1")


def test_knowledge_question_completes_in_one_turn() -> None:
    planner, model, _, trace_store, _ = _build(
        [
            AIMessage(
                content="",
                tool_calls=[tool_call("query_knowledge_base", {"question": "customer data"}, "kb-1")],
            ),
            AIMessage(content="Customer data must be encrypted at rest."),
        ]
    )

    result = planner.invoke("How do we store customer data?", session=ALICE_LINKED)

    assert result.status == "completed"
    assert result.answer == "Customer data must be encrypted at rest."
    assert result.steps_used == 2
    assert [t.name for t in result.tool_traces] == ["query_knowledge_base"]
    assert isinstance(model.calls[0][0], SystemMessage)
    assert isinstance(model.calls[0][-1], HumanMessage)
    tool_message = model.calls[1][-1]
    assert isinstance(tool_message, ToolMessage)
    assert tool_message.tool_call_id == "kb-1"
    assert "encrypted at rest" in json.loads(tool_message.content)["answer"]
    assert trace_store.get(result.trace_id).status == "completed"
    assert {tool.name for tool in model.bound_tools} == {"query_knowledge_base", "list_playlists"}


def test_missing_credential_interrupts_then_resume_replays_original_input() -> None:
    planner, model, action, trace_store, _ = _build(_ask_for_playlists())

    first = planner.invoke("Show my playlists", session=ALICE_UNLINKED)

    assert first.status == "interrupted"
    assert first.interrupt["tool"] == "list_playlists"
    assert first.interrupt["requiredGrantKind"] == "credential"
    assert first.interrupt["connectionHint"] == "spotify"
    assert action.calls == []
    assert planner.suspended_count() == 1
    assert len(model.calls) == 1

    resumed = planner.resume(
        first.interrupt["correlationToken"],
        session=Session(subject="alice", refresh_token="refresh-alice", thread_id="ignored"),
    )

    assert resumed.status == "completed"
    assert resumed.answer == "You have one playlist: Focus."
    assert resumed.thread_id == "thread-1"
    assert resumed.steps_used == 2
    assert action.calls == [("token-1", 3)]
    assert model.calls[1][-1].content == json.dumps({"playlists": ["Focus"]})
    assert model.calls[1][-1].tool_call_id == "call-1"
    assert planner.suspended_count() == 0
    statuses = [record.status for record in trace_store.list_recent()]
    assert statuses == ["interrupted", "completed"]


def test_explicit_grant_resume_records_approval_for_thread() -> None:
    planner, _, action, _, _ = _build(
        _ask_for_playlists(), policy=GatePolicy.CREDENTIAL_AND_EXPLICIT_GRANT
    )

    first = planner.invoke("Show my playlists", session=ALICE_LINKED)

    assert first.status == "interrupted"
    assert first.interrupt["requiredGrantKind"] == "approval"
    assert first.interrupt["bindingMessage"] == "Approve playlist access"
    assert action.calls == []

    resumed = planner.resume(first.interrupt["correlationToken"], session=ALICE_LINKED)

    assert resumed.status == "completed"
    assert len(action.calls) == 1


def test_approval_on_a_thread_does_not_cover_another_subject_reusing_it() -> None:
    planner, _, action, _, _ = _build(
        [*_ask_for_playlists(), *_ask_for_playlists()],
        policy=GatePolicy.CREDENTIAL_AND_EXPLICIT_GRANT,
    )
    first = planner.invoke("Show my playlists", session=ALICE_LINKED)
    planner.resume(first.interrupt["correlationToken"], session=ALICE_LINKED)
    assert len(action.calls) == 1

    bob = Session(subject="bob", refresh_token="refresh-bob", thread_id="thread-1")
    second = planner.invoke("Show my playlists", session=bob)

    assert second.status == "interrupted"
    assert second.interrupt["requiredGrantKind"] == "approval"
    assert len(action.calls) == 1


def test_expired_interrupt_drops_its_suspended_turn() -> None:
    clock = FakeClock()
    interrupts = InterruptRegistry(pending_ttl_seconds=60.0, clock=clock)
    planner, _, action, _, _ = _build(
        [_ask_for_playlists()[0], AIMessage(content="Hi.")], interrupts=interrupts
    )
    first = planner.invoke("Show my playlists", session=ALICE_UNLINKED)
    token = first.interrupt["correlationToken"]
    assert planner.suspended_count() == 1

    clock.now += 61
    planner.invoke("hello", session=ALICE_LINKED)

    assert planner.suspended_count() == 0
    assert interrupts.pending() == []
    with pytest.raises(KeyError):
        planner.resume(token, session=ALICE_LINKED)
    with pytest.raises(KeyError):
        planner.decline(token, session=ALICE_LINKED)
    assert action.calls == []


def test_decline_ends_turn_and_is_terminal() -> None:
    planner, model, action, trace_store, _ = _build(_ask_for_playlists())
    first = planner.invoke("Show my playlists", session=ALICE_UNLINKED)
    token = first.interrupt["correlationToken"]

    declined = planner.decline(token, session=ALICE_UNLINKED)

    assert declined.status == "declined"
    assert declined.answer == DECLINED_MESSAGE
    assert declined.thread_id == "thread-1"
    with pytest.raises(InterruptNotPending):
        planner.resume(token, session=ALICE_LINKED)
    with pytest.raises(InterruptNotPending):
        planner.decline(token, session=ALICE_LINKED)
    assert action.calls == []
    assert len(model.calls) == 1
    assert trace_store.summary()["declined_turns"] == 1


def test_only_the_originating_subject_may_resume() -> None:
    planner, _, action, _, _ = _build(_ask_for_playlists())
    first = planner.invoke("Show my playlists", session=ALICE_UNLINKED)
    token = first.interrupt["correlationToken"]

    with pytest.raises(AuthorizationDenied):
        planner.resume(token, session=Session(subject="mallory", refresh_token="refresh-alice"))

    assert planner.suspended_count() == 1
    assert action.calls == []
    assert planner.resume(token, session=ALICE_LINKED).status == "completed"


def test_unknown_token_is_key_error() -> None:
    planner, _, _, _, _ = _build([])

    with pytest.raises(KeyError):
        planner.resume("does-not-exist", session=ALICE_LINKED)


def test_remaining_calls_of_the_step_run_after_resume_in_order() -> None:
    planner, model, action, _, _ = _build(
        [
            AIMessage(
                content="",
                tool_calls=[
                    tool_call("list_playlists", {"limit": 1}, "call-a"),
                    tool_call("query_knowledge_base", {"question": "customer data"}, "call-b"),
                ],
            ),
            AIMessage(content="Done."),
        ]
    )

    first = planner.invoke("Playlists and data policy", session=ALICE_UNLINKED)
    resumed = planner.resume(first.interrupt["correlationToken"], session=ALICE_LINKED)

    assert resumed.status == "completed"
    tool_messages = [m for m in model.calls[1] if isinstance(m, ToolMessage)]
    assert [m.tool_call_id for m in tool_messages] == ["call-a", "call-b"]
    assert action.calls == [("token-1", 1)]


def test_tool_results_follow_issued_order() -> None:
    planner, model, _, _, _ = _build(
        [
            AIMessage(
                content="",
                tool_calls=[
                    tool_call("query_knowledge_base", {"question": "first"}, "q-1"),
                    tool_call("missing_tool", {}, "q-2"),
                    tool_call("query_knowledge_base", {"question": ""}, "q-3"),
                ],
            ),
            AIMessage(content="Summary."),
        ]
    )

    result = planner.invoke("Several things", session=ALICE_LINKED)

    assert result.status == "completed"
    tool_messages = [m for m in model.calls[1] if isinstance(m, ToolMessage)]
    assert [m.tool_call_id for m in tool_messages] == ["q-1", "q-2", "q-3"]
    assert tool_messages[1].content.startswith("TOOL_ERROR")
    assert tool_messages[2].content.startswith("TOOL_INPUT_ERROR")


def test_step_budget_exhaustion_is_reported() -> None:
    looping = [
        AIMessage(
            content="",
            tool_calls=[tool_call("query_knowledge_base", {"question": "again"}, f"loop-{i}")],
        )
        for i in range(2)
    ]
    planner, model, _, _, _ = _build(looping, max_steps=2)

    result = planner.invoke("Loop forever", session=ALICE_LINKED)

    assert result.status == "step_budget_exhausted"
    assert result.steps_used == 2
    assert len(model.calls) == 2


def test_external_failure_in_tool_becomes_error_turn() -> None:
    planner, _, _, trace_store, _ = _build(
        [
            AIMessage(
                content="",
                tool_calls=[tool_call("query_knowledge_base", {"question": "customer data"}, "kb-1")],
            )
        ],
        decisions=FailingDecisionService(),
    )

    result = planner.invoke("How do we store customer data?", session=ALICE_LINKED)

    assert result.status == "error"
    assert "external service" in result.answer
    assert result.tool_traces[0].outcome == "error"
    assert trace_store.summary()["error_turns"] == 1


def test_chat_model_failure_becomes_error_turn() -> None:
    planner, model, _, trace_store, _ = _build([ConnectionError("upstream reset")])

    result = planner.invoke("hello", session=ALICE_LINKED)

    assert result.status == "error"
    assert "external service" in result.answer
    assert "upstream reset" in result.answer
    assert len(model.calls) == 1
    assert trace_store.get(result.trace_id).status == "error"


def test_chat_model_failure_after_resume_is_recorded_and_token_is_spent() -> None:
    planner, _, action, trace_store, _ = _build(
        [
            AIMessage(content="", tool_calls=[tool_call("list_playlists", {"limit": 3}, "call-1")]),
            RuntimeError("model crashed"),
        ]
    )
    first = planner.invoke("Show my playlists", session=ALICE_UNLINKED)
    token = first.interrupt["correlationToken"]

    resumed = planner.resume(token, session=ALICE_LINKED)

    assert resumed.status == "error"
    assert "external service" in resumed.answer
    assert action.calls == [("token-1", 3)]
    assert planner.suspended_count() == 0
    assert [record.status for record in trace_store.list_recent()] == ["interrupted", "error"]
    with pytest.raises(InterruptNotPending):
        planner.resume(token, session=ALICE_LINKED)


def test_unexpected_tool_failure_becomes_generic_error_turn() -> None:
    planner, _, _, trace_store, _ = _build(
        [
            AIMessage(
                content="",
                tool_calls=[tool_call("query_knowledge_base", {"question": "customer data"}, "kb-1")],
            )
        ],
        decisions=BrokenDecisionService(),
    )

    result = planner.invoke("How do we store customer data?", session=ALICE_LINKED)

    assert result.status == "error"
    assert result.answer == GatedAgentError.user_message
    assert trace_store.summary()["error_turns"] == 1


def test_turn_requires_subject() -> None:
    planner, model, _, _, _ = _build([])

    with pytest.raises(AuthorizationDenied):
        planner.invoke("hello", session=Session(subject=None))
    assert model.calls == []


def test_chat_history_is_forwarded_to_model() -> None:
    planner, model, _, _, _ = _build([AIMessage(content="Hi again.")])

    planner.invoke(
        "And now?",
        session=ALICE_LINKED,
        chat_history=[("human", "Hello"), ("ai", "Hi there.")],
    )

    contents = [m.content for m in model.calls[0]]
    assert contents[1:] == ["Hello", "Hi there.", "And now?"]
