import asyncio

import pytest

from advisor.core.errors import PersistenceFailure, SessionNotFound, UpstreamFailure, WriteFailure
from advisor.core.memory import SessionStore
from advisor.core.models import Part, Session, Turn
from advisor.core.prompt import INSURANCE_ADVISOR
from advisor.orchestrator import ConversationOrchestrator
from tests.fakes import FailingLLM, FakeLLM


class BrokenSaveStore(SessionStore):
    def save(self, session_id, data):
        raise WriteFailure("disk full") from OSError(28, "No space left on device")


def _user(text):
    return [Part(text=text)]


def test_interact_appends_user_and_model_turns(store):
    store.create("s1", Session(session_id="s1"))
    llm = FakeLLM(reply="What year is your car?")
    orchestrator = ConversationOrchestrator(store, llm)

    result = asyncio.run(orchestrator.interact("s1", [], _user("Hi"), INSURANCE_ADVISOR))

    assert result.ai_response == "What year is your car?"
    assert [t.role for t in result.updated_conversation_history] == ["user", "model"]
    assert store.load("s1").conversation_history == result.updated_conversation_history
    assert llm.calls[0]["system_instruction"] is INSURANCE_ADVISOR
    assert [t.role for t in llm.calls[0]["history"]] == ["user"]


def test_interact_sends_full_history(store):
    store.create("s1", Session(session_id="s1"))
    llm = FakeLLM()
    orchestrator = ConversationOrchestrator(store, llm)

    first = asyncio.run(orchestrator.interact("s1", [], _user("Hi"), INSURANCE_ADVISOR))
    second = asyncio.run(
        orchestrator.interact("s1", first.updated_conversation_history, _user("2015 Corolla"), INSURANCE_ADVISOR)
    )

    sent = llm.calls[1]["history"]
    assert sent[:2] == first.updated_conversation_history
    assert sent[2].parts[0].text == "2015 Corolla"
    assert len(second.updated_conversation_history) == 4


def test_interact_without_new_parts_only_appends_reply(store):
    store.create("s1", Session(session_id="s1"))
    orchestrator = ConversationOrchestrator(store, FakeLLM())
    history = [Turn(role="user", parts=_user("Hi"))]

    result = asyncio.run(orchestrator.interact("s1", history, [], INSURANCE_ADVISOR))

    assert [t.role for t in result.updated_conversation_history] == ["user", "model"]


def test_interact_unknown_session(store):
    llm = FakeLLM()
    orchestrator = ConversationOrchestrator(store, llm)
    with pytest.raises(SessionNotFound):
        asyncio.run(orchestrator.interact("missing", [], _user("Hi"), INSURANCE_ADVISOR))
    assert llm.calls == []


def test_upstream_failure_leaves_session_untouched(store):
    store.create("s1", Session(session_id="s1"))
    asyncio.run(ConversationOrchestrator(store, FakeLLM()).interact("s1", [], _user("Hi"), INSURANCE_ADVISOR))
    before = (store.root / "s1.json").read_bytes()

    orchestrator = ConversationOrchestrator(store, FailingLLM())
    with pytest.raises(UpstreamFailure):
        asyncio.run(orchestrator.interact("s1", store.load("s1").conversation_history, _user("More"), INSURANCE_ADVISOR))

    assert (store.root / "s1.json").read_bytes() == before


def test_unexpected_llm_error_is_wrapped(store):
    store.create("s1", Session(session_id="s1"))
    orchestrator = ConversationOrchestrator(store, FailingLLM(ValueError("bad payload")))
    with pytest.raises(UpstreamFailure) as exc_info:
        asyncio.run(orchestrator.interact("s1", [], _user("Hi"), INSURANCE_ADVISOR))
    assert isinstance(exc_info.value.__cause__, ValueError)


def test_save_failure_raises_persistence_failure_with_reply(tmp_path):
    store = BrokenSaveStore(tmp_path)
    store.create("s1", Session(session_id="s1"))
    orchestrator = ConversationOrchestrator(store, FakeLLM(reply="Consider MBI."))

    with pytest.raises(PersistenceFailure) as exc_info:
        asyncio.run(orchestrator.interact("s1", [], _user("Hi"), INSURANCE_ADVISOR))

    assert exc_info.value.ai_response == "Consider MBI."
    assert len(exc_info.value.conversation_history) == 2
    assert isinstance(exc_info.value.__cause__, WriteFailure)
    assert store.load("s1").conversation_history == []


def test_concurrent_exchanges_on_one_session_keep_both_pairs(store):
    store.create("s1", Session(session_id="s1"))
    llm = FakeLLM(delay=0.05)
    orchestrator = ConversationOrchestrator(store, llm)

    async def run_two():
        await asyncio.gather(
            orchestrator.interact("s1", [], _user("a"), INSURANCE_ADVISOR),
            orchestrator.interact("s1", [], _user("b"), INSURANCE_ADVISOR),
        )

    asyncio.run(run_two())

    history = store.load("s1").conversation_history
    assert [t.role for t in history] == ["user", "model", "user", "model"]
    assert {history[0].parts[0].text, history[2].parts[0].text} == {"a", "b"}
    assert llm.max_active == 1
    # The second exchange saw the first pair.
    assert len(llm.calls[1]["history"]) == 3


def test_stale_history_continues_from_stored(store):
    store.create("s1", Session(session_id="s1"))
    llm = FakeLLM()
    orchestrator = ConversationOrchestrator(store, llm)
    asyncio.run(orchestrator.interact("s1", [], _user("Hi"), INSURANCE_ADVISOR))

    stale = [Turn(role="user", parts=_user("something else"))]
    result = asyncio.run(orchestrator.interact("s1", stale, _user("Again"), INSURANCE_ADVISOR))

    texts = [t.parts[0].text for t in result.updated_conversation_history]
    assert texts == ["Hi", llm.reply, "Again", llm.reply]
    assert store.load("s1").conversation_history == result.updated_conversation_history


def test_lock_entries_are_released(store):
    store.create("s1", Session(session_id="s1"))
    orchestrator = ConversationOrchestrator(store, FakeLLM())

    for n in range(20):
        with pytest.raises(SessionNotFound):
            asyncio.run(orchestrator.interact(f"nope{n}", [], _user("Hi"), INSURANCE_ADVISOR))
    asyncio.run(orchestrator.interact("s1", [], _user("Hi"), INSURANCE_ADVISOR))

    assert orchestrator._locks == {}


def test_lock_released_after_upstream_failure(store):
    store.create("s1", Session(session_id="s1"))
    orchestrator = ConversationOrchestrator(store, FailingLLM())
    with pytest.raises(UpstreamFailure):
        asyncio.run(orchestrator.interact("s1", [], _user("Hi"), INSURANCE_ADVISOR))

    assert orchestrator._locks == {}


def test_different_sessions_run_concurrently(store):
    store.create("s1", Session(session_id="s1"))
    store.create("s2", Session(session_id="s2"))
    llm = FakeLLM(delay=0.05)
    orchestrator = ConversationOrchestrator(store, llm)

    async def run_two():
        await asyncio.gather(
            orchestrator.interact("s1", [], _user("a"), INSURANCE_ADVISOR),
            orchestrator.interact("s2", [], _user("b"), INSURANCE_ADVISOR),
        )

    asyncio.run(run_two())
    assert llm.max_active == 2


def test_create_session_persists_empty_history(store):
    orchestrator = ConversationOrchestrator(store, FakeLLM())
    session = asyncio.run(orchestrator.create_session())

    assert store.load(session.session_id).conversation_history == []
