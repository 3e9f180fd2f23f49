"""Tests for the chat streaming coordinator and exchange persistence.

Covers:
- SSE frame order and the done/error contract
- Detached persistence: message id in done, grace period, failures
- First-exchange titles (including concurrent writers)
- Citation rounding and dedupe
- Retrieval / model deadlines
"""

import asyncio
import json

import pytest

from app.core.background import drain
from app.core.chat_stream import (
    STREAM_ERROR_MESSAGE,
    STREAM_TIMEOUT_MESSAGE,
    ChatTurn,
    StreamingResponseCoordinator,
    StreamState,
    build_auto_title,
    dedupe_citations,
    persist_exchange,
    round_relevance,
    sse_event,
)
from app.core.errors import ModelCallError, PersistenceError, ScopeViolation
from app.core.retrieval import RetrievalContext, RetrievalContextAssembler
from app.core.schemas_chat import SourceCitation, Usage
from app.core.similarity import SimilarityEngine
from tests.fakes.knowledge import (
    ORG_ID,
    OTHER_ORG_ID,
    USER_ID,
    FakeConversationStore,
    FakeEmbedder,
    FakeVectorStore,
    ScriptedChatModel,
    make_candidate,
)


def parse_frames(frames: list[str]) -> list[dict]:
    events = []
    for frame in frames:
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        events.append(json.loads(frame[len("data: "):].strip()))
    return events


async def collect(stream) -> list[dict]:
    return parse_frames([frame async for frame in stream])


async def new_turn(
    store: FakeConversationStore,
    content: str = "What did we decide about pricing?",
    title: str | None = None,
    system_prompt: str | None = None,
    video_ids: list[str] | None = None,
) -> ChatTurn:
    conversation = await store.create_conversation(
        ORG_ID, USER_ID, title=title, system_prompt=system_prompt, video_ids=video_ids
    )
    history = await store.get_messages(conversation.id)
    user_message = await store.create_message(conversation.id, "user", content)
    return ChatTurn(conversation=conversation, user_message=user_message, history=history)


def build_coordinator(
    store: FakeConversationStore,
    model: ScriptedChatModel | None = None,
    vector_store: FakeVectorStore | None = None,
    embedder: FakeEmbedder | None = None,
    **kwargs,
) -> StreamingResponseCoordinator:
    embedder = embedder or FakeEmbedder()
    vector_store = vector_store or FakeVectorStore()
    assembler = RetrievalContextAssembler(
        SimilarityEngine(vector_store, embedder), embedder, max_candidates=20, score_threshold=0.5
    )
    kwargs.setdefault("retrieval_timeout", 1.0)
    kwargs.setdefault("model_timeout", 2.0)
    kwargs.setdefault("done_grace", 1.0)
    return StreamingResponseCoordinator(
        assembler=assembler,
        model=model or ScriptedChatModel(),
        store=store,
        **kwargs,
    )


def assistant_messages(store: FakeConversationStore) -> list:
    return [m for m in store.messages if m.role == "assistant"]


# ──────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────


class TestHelpers:
    def test_sse_event_format(self):
        assert sse_event({"type": "chunk", "content": "hi"}) == 'data: {"type": "chunk", "content": "hi"}\n\n'

    @pytest.mark.parametrize("relevance,expected", [(87.6, 88), (87.4, 87), (87.5, 88), (0.0, 0), (100.0, 100)])
    def test_round_relevance_half_up(self, relevance, expected):
        assert round_relevance(relevance) == expected

    def test_auto_title_truncates_long_messages(self):
        content = "What did we decide about pricing for the enterprise tier last quarter?"
        assert build_auto_title(content) == content[:50] + "..."

    def test_auto_title_keeps_short_messages(self):
        assert build_auto_title("Pricing?") == "Pricing?"

    def test_dedupe_keeps_highest_relevance(self):
        sources = [
            SourceCitation(type="decision", id="d1", relevance=60),
            SourceCitation(type="decision", id="d1", relevance=80),
            SourceCitation(type="topic", id="d1", relevance=50),
        ]
        deduped = dedupe_citations(sources)
        assert [(s.type, s.id, s.relevance) for s in deduped] == [("decision", "d1", 80), ("topic", "d1", 50)]


# ──────────────────────────────────────────────────────────────────────
# Streaming
# ──────────────────────────────────────────────────────────────────────


class TestStream:
    @pytest.mark.asyncio
    async def test_chunks_concatenate_to_persisted_content(self):
        store = FakeConversationStore()
        model = ScriptedChatModel(chunks=["We chose ", "usage-based ", "pricing."])
        coordinator = build_coordinator(store, model)
        turn = await new_turn(store)

        context = await coordinator.prepare(turn)
        events = await collect(coordinator.stream(turn, context))

        chunks = [e["content"] for e in events if e["type"] == "chunk"]
        assert "".join(chunks) == "We chose usage-based pricing."

        done = events[-1]
        assert done["type"] == "done"
        saved = assistant_messages(store)
        assert len(saved) == 1
        assert saved[0].content == "We chose usage-based pricing."
        assert done["messageId"] == saved[0].id
        assert done["usage"] == {"promptTokens": 10, "completionTokens": 5, "totalTokens": 15}
        assert turn.state == StreamState.CLOSED

    @pytest.mark.asyncio
    async def test_sources_precede_chunks(self):
        vector_store = FakeVectorStore()
        vector_store.scripted["decision"] = [make_candidate("d1", 0.9)]
        store = FakeConversationStore()
        coordinator = build_coordinator(store, vector_store=vector_store)
        turn = await new_turn(store)

        events = await collect(coordinator.stream(turn, await coordinator.prepare(turn)))

        types = [e["type"] for e in events]
        assert types == ["source", "chunk", "chunk", "done"]
        assert events[0]["source"]["id"] == "d1"
        assert events[0]["source"]["relevance"] == pytest.approx(90.0)

    @pytest.mark.asyncio
    async def test_failure_mid_stream_emits_error_and_persists_nothing(self):
        store = FakeConversationStore()
        model = ScriptedChatModel(chunks=["one", "two", "three"], fail_after=2)
        coordinator = build_coordinator(store, model)
        turn = await new_turn(store)

        events = await collect(coordinator.stream(turn, await coordinator.prepare(turn)))
        await asyncio.sleep(0.05)

        assert [e["type"] for e in events] == ["chunk", "chunk", "error"]
        assert events[-1]["error"] == STREAM_ERROR_MESSAGE
        assert assistant_messages(store) == []
        assert store.conversations[turn.conversation_id].title is None
        assert turn.state == StreamState.ERRORED

    @pytest.mark.asyncio
    async def test_stream_without_finish_is_an_error(self):
        store = FakeConversationStore()
        coordinator = build_coordinator(store, ScriptedChatModel(emit_finish=False))
        turn = await new_turn(store)

        events = await collect(coordinator.stream(turn, await coordinator.prepare(turn)))

        assert events[-1] == {"type": "error", "error": STREAM_ERROR_MESSAGE}
        assert not any(e["type"] == "done" for e in events)

    @pytest.mark.asyncio
    async def test_model_timeout_emits_timeout_error(self):
        store = FakeConversationStore()
        model = ScriptedChatModel(chunks=["slow"], chunk_delay=0.5)
        coordinator = build_coordinator(store, model, model_timeout=0.05)
        turn = await new_turn(store)

        events = await collect(coordinator.stream(turn, await coordinator.prepare(turn)))

        assert events == [{"type": "error", "error": STREAM_TIMEOUT_MESSAGE}]
        assert assistant_messages(store) == []

    @pytest.mark.asyncio
    async def test_done_without_message_id_when_persistence_is_slow(self):
        store = FakeConversationStore()
        store.assistant_delay = 0.2
        coordinator = build_coordinator(store, done_grace=0.01)
        turn = await new_turn(store)

        events = await collect(coordinator.stream(turn, await coordinator.prepare(turn)))

        assert events[-1]["type"] == "done"
        assert events[-1]["messageId"] is None

        # The detached write still completes
        await asyncio.sleep(0.3)
        assert len(assistant_messages(store)) == 1

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_break_stream(self):
        store = FakeConversationStore()
        store.fail_assistant_message = True
        coordinator = build_coordinator(store)
        turn = await new_turn(store)

        events = await collect(coordinator.stream(turn, await coordinator.prepare(turn)))

        assert events[-1]["type"] == "done"
        assert events[-1]["messageId"] is None

    @pytest.mark.asyncio
    async def test_client_disconnect_mid_stream_closes_model_and_persists_nothing(self):
        store = FakeConversationStore()
        model = ScriptedChatModel(chunks=["We picked ", "usage ", "pricing."])
        coordinator = build_coordinator(store, model)
        turn = await new_turn(store)

        frames = coordinator.stream(turn, await coordinator.prepare(turn))
        first = parse_frames([await anext(frames)])
        await frames.aclose()
        await asyncio.sleep(0)

        assert first == [{"type": "chunk", "content": "We picked "}]
        assert model.closed
        assert assistant_messages(store) == []

    @pytest.mark.asyncio
    async def test_client_disconnect_after_finish_keeps_persisting(self):
        store = FakeConversationStore()
        store.assistant_delay = 0.05
        coordinator = build_coordinator(store, ScriptedChatModel(chunks=["Done"]), done_grace=5.0)
        turn = await new_turn(store)
        frames = coordinator.stream(turn, await coordinator.prepare(turn))

        assert parse_frames([await anext(frames)]) == [{"type": "chunk", "content": "Done"}]

        async def next_frame():
            return await anext(frames)

        # Finish is handled and the stream is waiting out the grace period
        waiting = asyncio.create_task(next_frame())
        await asyncio.sleep(0.01)
        waiting.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiting
        await frames.aclose()

        assert await drain(timeout=1.0) == 0
        assert [m.content for m in assistant_messages(store)] == ["Done"]

    @pytest.mark.asyncio
    async def test_system_prompt_and_history_sent_to_model(self):
        store = FakeConversationStore()
        model = ScriptedChatModel()
        coordinator = build_coordinator(store, model)
        turn = await new_turn(store, system_prompt="Answer like a product manager.")

        await collect(coordinator.stream(turn, await coordinator.prepare(turn)))

        sent = model.calls[0]
        assert sent[0].role == "system"
        assert sent[0].content == "Answer like a product manager."
        assert sent[-1].id == turn.user_message.id


# ──────────────────────────────────────────────────────────────────────
# Retrieval degradation
# ──────────────────────────────────────────────────────────────────────


class TestPrepare:
    @pytest.mark.asyncio
    async def test_embedding_outage_degrades_to_empty_context(self):
        embedder = FakeEmbedder()
        embedder.fail = True
        store = FakeConversationStore()
        coordinator = build_coordinator(store, embedder=embedder)
        turn = await new_turn(store)

        context = await coordinator.prepare(turn)
        events = await collect(coordinator.stream(turn, context))

        assert context.degraded is True
        assert context.candidates == []
        assert not any(e["type"] == "source" for e in events)
        assert events[-1]["type"] == "done"

    @pytest.mark.asyncio
    async def test_retrieval_timeout_degrades_to_empty_context(self):
        embedder = FakeEmbedder()
        embedder.delay = 0.5
        store = FakeConversationStore()
        coordinator = build_coordinator(store, embedder=embedder, retrieval_timeout=0.05)
        turn = await new_turn(store)

        context = await coordinator.prepare(turn)

        assert context.degraded is True

    @pytest.mark.asyncio
    async def test_scope_violation_is_never_degraded(self):
        vector_store = FakeVectorStore()
        vector_store.scripted["topic"] = [make_candidate("leak", 0.9, entity_type="topic", organization_id=OTHER_ORG_ID)]
        store = FakeConversationStore()
        coordinator = build_coordinator(store, vector_store=vector_store)
        turn = await new_turn(store)

        with pytest.raises(ScopeViolation):
            await coordinator.prepare(turn)


# ──────────────────────────────────────────────────────────────────────
# Persistence
# ──────────────────────────────────────────────────────────────────────


class TestPersistExchange:
    @pytest.mark.asyncio
    async def test_first_exchange_sets_title(self):
        store = FakeConversationStore()
        coordinator = build_coordinator(store)
        content = "What did we decide about pricing for the enterprise tier last quarter?"
        turn = await new_turn(store, content=content)

        await collect(coordinator.stream(turn, await coordinator.prepare(turn)))

        assert store.conversations[turn.conversation_id].title == content[:50] + "..."

    @pytest.mark.asyncio
    async def test_existing_title_is_kept(self):
        store = FakeConversationStore()
        turn = await new_turn(store, title="Pricing sync")

        outcome = await persist_exchange(store, turn, "answer", [], Usage())

        assert outcome.title_set is False
        assert store.conversations[turn.conversation_id].title == "Pricing sync"

    @pytest.mark.asyncio
    async def test_later_exchanges_do_not_set_title(self):
        store = FakeConversationStore()
        turn = await new_turn(store)
        follow_up = turn.user_message.model_copy(update={"id": "m-2", "content": "And enterprise?"})
        later = ChatTurn(conversation=turn.conversation, user_message=follow_up, history=[turn.user_message])

        outcome = await persist_exchange(store, later, "answer", [], Usage())

        assert outcome.title_set is False
        assert store.conversations[turn.conversation_id].title is None

    @pytest.mark.asyncio
    async def test_concurrent_first_exchanges_set_title_once(self):
        store = FakeConversationStore()
        first = await new_turn(store, content="Pricing question")
        second = ChatTurn(
            conversation=first.conversation,
            user_message=first.user_message.model_copy(update={"id": "m-dup", "content": "Hiring question"}),
            history=[],
        )

        outcomes = await asyncio.gather(
            persist_exchange(store, first, "a", [], Usage()),
            persist_exchange(store, second, "b", [], Usage()),
        )

        assert store.title_writes == 1
        assert sum(o.title_set for o in outcomes) == 1

    @pytest.mark.asyncio
    async def test_citations_rounded_and_deduped(self):
        store = FakeConversationStore()
        turn = await new_turn(store)
        sources = [
            SourceCitation(type="decision", id="d1", relevance=87.6),
            SourceCitation(type="decision", id="d2", relevance=87.4),
            SourceCitation(type="transcript_chunk", id="t1", relevance=87.5),
            SourceCitation(type="decision", id="d1", relevance=40.0),
        ]

        outcome = await persist_exchange(store, turn, "answer", sources, Usage())

        saved = {(c.type, c.id): c.relevance for c in store.citations[outcome.message.id]}
        assert saved == {("decision", "d1"): 88, ("decision", "d2"): 87, ("transcript_chunk", "t1"): 88}
        assert outcome.citations_written == 3
        assert [s.relevance for s in outcome.message.sources] == [88, 87, 88]

    @pytest.mark.asyncio
    async def test_citation_failure_keeps_message(self):
        store = FakeConversationStore()
        store.fail_citations = True
        turn = await new_turn(store)

        outcome = await persist_exchange(
            store, turn, "answer", [SourceCitation(type="decision", id="d1", relevance=90)], Usage()
        )

        assert outcome.message is not None
        assert outcome.citations_written == 0
        assert store.citations == {}

    @pytest.mark.asyncio
    async def test_message_failure_skips_citations(self):
        store = FakeConversationStore()
        store.fail_assistant_message = True
        turn = await new_turn(store)

        outcome = await persist_exchange(
            store, turn, "answer", [SourceCitation(type="decision", id="d1", relevance=90)], Usage()
        )

        assert outcome.message is None
        assert store.citations == {}
        # The title still follows the first exchange
        assert outcome.title_set is True

    @pytest.mark.asyncio
    async def test_replay_upserts_same_generation(self):
        store = FakeConversationStore()
        turn = await new_turn(store)

        first = await persist_exchange(store, turn, "draft", [], Usage())
        second = await persist_exchange(store, turn, "final", [], Usage())

        saved = assistant_messages(store)
        assert len(saved) == 1
        assert first.message.id == second.message.id
        assert saved[0].content == "final"


# ──────────────────────────────────────────────────────────────────────
# Non-streaming
# ──────────────────────────────────────────────────────────────────────


class TestComplete:
    @pytest.mark.asyncio
    async def test_returns_persisted_exchange(self):
        vector_store = FakeVectorStore()
        vector_store.scripted["decision"] = [make_candidate("d1", 0.875)]
        store = FakeConversationStore()
        coordinator = build_coordinator(store, ScriptedChatModel(chunks=["All ", "done"]), vector_store=vector_store)
        turn = await new_turn(store)

        result = await coordinator.complete(turn, await coordinator.prepare(turn))

        assert result.assistant_message.content == "All done"
        assert result.user_message.id == turn.user_message.id
        assert [s.id for s in result.sources] == ["d1"]
        assert store.citations[result.assistant_message.id][0].relevance == 88

    @pytest.mark.asyncio
    async def test_model_failure_raises(self):
        store = FakeConversationStore()
        coordinator = build_coordinator(store, ScriptedChatModel(fail_after=0))
        turn = await new_turn(store)

        with pytest.raises(ModelCallError):
            await coordinator.complete(turn, RetrievalContext())

        assert assistant_messages(store) == []

    @pytest.mark.asyncio
    async def test_model_timeout_raises(self):
        store = FakeConversationStore()
        coordinator = build_coordinator(store, ScriptedChatModel(chunk_delay=0.5), model_timeout=0.05)
        turn = await new_turn(store)

        with pytest.raises(ModelCallError):
            await coordinator.complete(turn, RetrievalContext())

    @pytest.mark.asyncio
    async def test_unsaved_assistant_message_raises(self):
        store = FakeConversationStore()
        store.fail_assistant_message = True
        coordinator = build_coordinator(store, ScriptedChatModel(chunks=["All done"]))
        turn = await new_turn(store)

        with pytest.raises(PersistenceError):
            await coordinator.complete(turn, RetrievalContext())

        assert turn.state == StreamState.ERRORED
