from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from guidepost.manager import DONE, GuidelineChatAgent, GuidelineEngine, VALIDATION_ERROR_REASON
from guidepost.prompts import FALLBACK_INSTRUCTION, MATCHING_PROMPT, REWRITE_PROMPT, VALIDATION_PROMPT
from guidepost.storage import GuidelineDatabase

USER_TURN = [{"role": "user", "content": "This is way too expensive."}]


class ScriptedStream:
    """Iterator over scripted deltas; an Exception entry is raised in place."""

    def __init__(self, script: Sequence[Any]) -> None:
        self._items = list(script)
        self.closed = False

    def __iter__(self) -> "ScriptedStream":
        return self

    def __next__(self) -> str:
        if not self._items:
            raise StopIteration
        item = self._items.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        self.closed = True


class FakeLLMClient:
    def __init__(
        self,
        *,
        json_responses: Optional[Mapping[str, List[Any]]] = None,
        drafts: Optional[List[Sequence[Any]]] = None,
        rewrites: Optional[List[Sequence[Any]]] = None,
    ) -> None:
        self.json_responses = {key: list(queue) for key, queue in (json_responses or {}).items()}
        self.drafts = list(drafts or [])
        self.rewrites = list(rewrites or [])
        self.calls: List[Mapping[str, Any]] = []
        self.streams: List[ScriptedStream] = []

    def chat_json(
        self, messages: Sequence[Mapping[str, Any]], *, extra_body: Mapping[str, Any] | None = None
    ) -> str:
        system_prompt = messages[0]["content"]
        self.calls.append({"kind": "json", "system": system_prompt, "messages": list(messages)})
        queue = self.json_responses.get(system_prompt)
        if not queue:
            raise AssertionError(f"No response queued for system prompt: {system_prompt!r}")
        reply = queue.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def stream_chat(
        self, messages: Sequence[Mapping[str, Any]], *, extra_body: Mapping[str, Any] | None = None
    ) -> ScriptedStream:
        system_prompt = messages[0]["content"]
        self.calls.append({"kind": "stream", "system": system_prompt, "messages": list(messages)})
        queue = self.rewrites if system_prompt == REWRITE_PROMPT else self.drafts
        if not queue:
            raise AssertionError(f"No stream queued for system prompt: {system_prompt!r}")
        stream = ScriptedStream(queue.pop(0))
        self.streams.append(stream)
        return stream

    def json_calls(self, system_prompt: str) -> List[Mapping[str, Any]]:
        return [call for call in self.calls if call["kind"] == "json" and call["system"] == system_prompt]


class FakeEmbeddingClient:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error

    def embed(self, texts: Iterable[str]) -> List[List[float]]:
        if self.error is not None:
            raise self.error
        return [[1.0, 0.0] for _ in texts]


def _make_engine(
    llm: FakeLLMClient,
    *,
    mode: str = "validate",
    embedder: FakeEmbeddingClient | None = None,
) -> tuple[GuidelineEngine, GuidelineDatabase]:
    db = GuidelineDatabase(":memory:")
    engine = GuidelineEngine(
        db=db,
        llm_client=llm,  # type: ignore[arg-type]
        embedding_client=embedder or FakeEmbeddingClient(),  # type: ignore[arg-type]
        supervision_mode=mode,
        clock=lambda: datetime(2024, 5, 1, 9, 30, 0),
    )
    return engine, db


def _add_price_guideline(db: GuidelineDatabase) -> int:
    return db.add_guideline(
        title="Handling Price Objections",
        condition="The customer expresses concern about the price of a product.",
        action="Acknowledge the concern and suggest payment options.",
        priority=10,
        category="sales",
        embedding=[1.0, 0.0],
    )


def _judgment(guideline_id: int, applies: bool, score: int = 8) -> str:
    return json.dumps(
        {"results": [{"guideline_id": guideline_id, "applies": applies, "score": score, "reason": "price"}]}
    )


def _verdict(guideline_id: int, followed: bool) -> str:
    return json.dumps(
        {"validation_results": [{"guidelineId": guideline_id, "followed": followed, "reason": "checked"}]}
    )


def _contents(frames: Sequence[Any]) -> List[str]:
    return [frame["content"] for frame in frames if isinstance(frame, Mapping) and "content" in frame]


def _metadata(frames: Sequence[Any]) -> Dict[str, Any]:
    matches = [frame for frame in frames if isinstance(frame, Mapping) and "accomplishedGuidelines" in frame]
    assert len(matches) == 1
    return dict(matches[0])


def _draft_prompt(llm: FakeLLMClient) -> str:
    return next(call["system"] for call in llm.calls if call["kind"] == "stream" and call["system"] != REWRITE_PROMPT)


def test_validated_turn_streams_draft_and_records_followed_guideline() -> None:
    llm = FakeLLMClient(
        drafts=[["I hear you", " - we offer payment plans."]],
    )
    engine, db = _make_engine(llm)
    guideline_id = _add_price_guideline(db)
    llm.json_responses = {
        MATCHING_PROMPT: [_judgment(guideline_id, True)],
        VALIDATION_PROMPT: [_verdict(guideline_id, True)],
    }

    frames = list(engine.run_turn(USER_TURN))

    assert set(frames[0]) == {"sessionId"}
    assert frames[-1] == DONE
    assert _contents(frames) == ["I hear you", " - we offer payment plans."]
    metadata = _metadata(frames)
    assert metadata["accomplishedGuidelines"] == [guideline_id]
    assert metadata["activeGuidelines"][0]["id"] == guideline_id
    assert metadata["activeGuidelines"][0]["triggered_at"] == "09:30:00"
    assert metadata["guidelineMatchingResults"][0]["score"] == 8
    assert metadata["validationResults"] == [
        {"guidelineId": guideline_id, "followed": True, "reason": "checked"}
    ]
    assert "* Acknowledge the concern and suggest payment options." in _draft_prompt(llm)

    session = db.get_session(frames[0]["sessionId"])
    assert session.accomplished_guideline_ids == [guideline_id]


def test_accomplished_guideline_is_not_retrieved_again() -> None:
    llm = FakeLLMClient(drafts=[["Payment plans exist."], ["Sure thing."]])
    engine, db = _make_engine(llm)
    guideline_id = _add_price_guideline(db)
    llm.json_responses = {
        MATCHING_PROMPT: [_judgment(guideline_id, True)],
        VALIDATION_PROMPT: [_verdict(guideline_id, True)],
    }

    first = list(engine.run_turn(USER_TURN))
    session_id = first[0]["sessionId"]
    history = USER_TURN + [
        {"role": "assistant", "content": "Payment plans exist."},
        {"role": "user", "content": "Still pricey, honestly."},
    ]
    second = list(engine.run_turn(history, session_id))

    assert second[0] == {"sessionId": session_id}
    assert _metadata(second)["activeGuidelines"] == []
    assert _metadata(second)["accomplishedGuidelines"] == [guideline_id]
    assert len(llm.json_calls(MATCHING_PROMPT)) == 1
    assert FALLBACK_INSTRUCTION in [call for call in llm.calls if call["kind"] == "stream"][-1]["system"]


def test_not_applicable_guideline_falls_back_to_generic_prompt() -> None:
    llm = FakeLLMClient(drafts=[["Happy to help!"]])
    engine, db = _make_engine(llm)
    guideline_id = _add_price_guideline(db)
    llm.json_responses = {MATCHING_PROMPT: [_judgment(guideline_id, False, score=2)]}

    frames = list(engine.run_turn(USER_TURN))

    assert FALLBACK_INSTRUCTION in _draft_prompt(llm)
    metadata = _metadata(frames)
    assert metadata["activeGuidelines"] == []
    assert metadata["guidelineMatchingResults"][0]["applies"] is False
    assert metadata["validationResults"] == []
    assert metadata["supervision"]["status"] == "skipped"
    assert llm.json_calls(VALIDATION_PROMPT) == []


def test_classifier_failure_still_completes_turn() -> None:
    llm = FakeLLMClient(drafts=[["Let me help."]])
    engine, db = _make_engine(llm)
    _add_price_guideline(db)
    llm.json_responses = {MATCHING_PROMPT: [RuntimeError("quota exceeded")]}

    frames = list(engine.run_turn(USER_TURN))

    assert _contents(frames) == ["Let me help."]
    assert _metadata(frames)["activeGuidelines"] == []
    assert FALLBACK_INSTRUCTION in _draft_prompt(llm)
    assert frames[-1] == DONE


def test_malformed_classifier_output_means_no_active_guidelines() -> None:
    llm = FakeLLMClient(drafts=[["Okay."]])
    engine, db = _make_engine(llm)
    _add_price_guideline(db)
    llm.json_responses = {MATCHING_PROMPT: ['{"results": "yes please"}']}

    frames = list(engine.run_turn(USER_TURN))

    metadata = _metadata(frames)
    assert metadata["activeGuidelines"] == []
    assert metadata["guidelineMatchingResults"][0]["reason"].startswith("classification unavailable")


def test_classifier_accepts_fenced_array_with_legacy_keys() -> None:
    llm = FakeLLMClient(drafts=[["We have plans."]])
    engine, db = _make_engine(llm)
    guideline_id = _add_price_guideline(db)
    llm.json_responses = {
        MATCHING_PROMPT: [f'```json\n[{{"id": {guideline_id}, "is_met": true}}]\n```'],
        VALIDATION_PROMPT: [_verdict(guideline_id, False)],
    }

    frames = list(engine.run_turn(USER_TURN))

    metadata = _metadata(frames)
    assert [item["id"] for item in metadata["activeGuidelines"]] == [guideline_id]
    assert metadata["accomplishedGuidelines"] == []


def test_empty_candidate_list_skips_classifier() -> None:
    llm = FakeLLMClient(drafts=[["Hi!"]])
    engine, _ = _make_engine(llm)

    frames = list(engine.run_turn([{"role": "user", "content": "hello"}]))

    assert _contents(frames) == ["Hi!"]
    assert [call for call in llm.calls if call["kind"] == "json"] == []


def test_classifier_sees_only_recent_turns() -> None:
    llm = FakeLLMClient(drafts=[["Sure."]])
    engine, db = _make_engine(llm)
    guideline_id = _add_price_guideline(db)
    llm.json_responses = {MATCHING_PROMPT: [_judgment(guideline_id, False)]}
    history = [{"role": "user" if n % 2 == 0 else "assistant", "content": f"turn {n}"} for n in range(6)]
    history.append({"role": "user", "content": "too expensive"})

    list(engine.run_turn(history))

    payload = json.loads(llm.json_calls(MATCHING_PROMPT)[0]["messages"][1]["content"])
    assert payload["user_message"] == "too expensive"
    assert [turn["content"] for turn in payload["recent_turns"]] == ["turn 3", "turn 4", "turn 5"]


def test_validation_failure_marks_guidelines_unfollowed() -> None:
    llm = FakeLLMClient(drafts=[["Our prices are fair."]])
    engine, db = _make_engine(llm)
    guideline_id = _add_price_guideline(db)
    llm.json_responses = {
        MATCHING_PROMPT: [_judgment(guideline_id, True)],
        VALIDATION_PROMPT: ["not json at all"],
    }

    frames = list(engine.run_turn(USER_TURN))

    metadata = _metadata(frames)
    assert metadata["validationResults"] == [
        {"guidelineId": guideline_id, "followed": False, "reason": VALIDATION_ERROR_REASON}
    ]
    assert metadata["accomplishedGuidelines"] == []
    assert metadata["supervision"] == {"mode": "validate", "status": "failed"}


def test_rewrite_mode_streams_supervisor_output() -> None:
    llm = FakeLLMClient(
        drafts=[["Prices are prices."]],
        rewrites=[["I understand the concern.", " We offer payment plans."]],
    )
    engine, db = _make_engine(llm, mode="rewrite")
    guideline_id = _add_price_guideline(db)
    llm.json_responses = {MATCHING_PROMPT: [_judgment(guideline_id, True)]}

    frames = list(engine.run_turn(USER_TURN))

    assert _contents(frames) == ["I understand the concern.", " We offer payment plans."]
    metadata = _metadata(frames)
    assert metadata["supervision"] == {"mode": "rewrite", "status": "rewritten"}
    assert metadata["accomplishedGuidelines"] == [guideline_id]
    assert "validationResults" not in metadata
    rewrite_call = next(call for call in llm.calls if call["system"] == REWRITE_PROMPT)
    assert json.loads(rewrite_call["messages"][1]["content"])["draft"] == "Prices are prices."


def test_rewrite_failure_emits_draft_unchanged() -> None:
    draft = ["Prices ", "are ", "prices."]
    llm = FakeLLMClient(drafts=[draft], rewrites=[[RuntimeError("supervisor down")]])
    engine, db = _make_engine(llm, mode="rewrite")
    guideline_id = _add_price_guideline(db)
    llm.json_responses = {MATCHING_PROMPT: [_judgment(guideline_id, True)]}

    frames = list(engine.run_turn(USER_TURN))

    assert "".join(_contents(frames)) == "".join(draft)
    assert _metadata(frames)["supervision"]["status"] == "failed"
    assert llm.streams[-1].closed


def test_rewrite_mode_without_active_guidelines_streams_draft() -> None:
    llm = FakeLLMClient(drafts=[["Hello", "!"]])
    engine, _ = _make_engine(llm, mode="rewrite")

    frames = list(engine.run_turn([{"role": "user", "content": "hey"}]))

    assert _contents(frames) == ["Hello", "!"]
    assert not any(call["system"] == REWRITE_PROMPT for call in llm.calls)


def test_embedding_failure_aborts_with_error_frame() -> None:
    llm = FakeLLMClient()
    engine, _ = _make_engine(llm, embedder=FakeEmbeddingClient(RuntimeError("unreachable")))

    frames = list(engine.run_turn(USER_TURN))

    assert len(frames) == 3
    assert "sessionId" in frames[0]
    assert frames[1]["error"].startswith("embedding")
    assert frames[2] == DONE
    assert llm.calls == []


def test_generation_failure_aborts_without_state_update() -> None:
    llm = FakeLLMClient(drafts=[[RuntimeError("model overloaded")]])
    engine, db = _make_engine(llm)
    guideline_id = _add_price_guideline(db)
    llm.json_responses = {MATCHING_PROMPT: [_judgment(guideline_id, True)]}

    frames = list(engine.run_turn(USER_TURN))

    assert frames[1]["error"].startswith("generation failed")
    assert frames[-1] == DONE
    assert _contents(frames) == []
    assert db.get_session(frames[0]["sessionId"]).accomplished_guideline_ids == []


def test_unknown_session_id_starts_new_session() -> None:
    llm = FakeLLMClient(drafts=[["Hi."]])
    engine, db = _make_engine(llm)

    frames = list(engine.run_turn([{"role": "user", "content": "hi"}], "no-such-session"))

    session_id = frames[0]["sessionId"]
    assert session_id != "no-such-session"
    assert db.get_session(session_id) is not None


def test_client_disconnect_abandons_state_update() -> None:
    llm = FakeLLMClient(drafts=[["Payment", " plans", " exist."]])
    engine, db = _make_engine(llm)
    guideline_id = _add_price_guideline(db)
    llm.json_responses = {MATCHING_PROMPT: [_judgment(guideline_id, True)]}

    frames = engine.run_turn(USER_TURN)
    session_id = next(frames)["sessionId"]
    assert next(frames) == {"content": "Payment"}
    frames.close()

    assert llm.streams[0].closed
    assert llm.json_calls(VALIDATION_PROMPT) == []
    assert db.get_session(session_id).accomplished_guideline_ids == []


def test_agent_encodes_frames_as_server_sent_events() -> None:
    llm = FakeLLMClient(drafts=[["Hi ", "there"]])
    engine, _ = _make_engine(llm)
    agent = GuidelineChatAgent(engine=engine)

    events = list(agent.stream({"messages": [{"role": "user", "content": "hello"}]}))

    assert events[0].startswith('data: {"sessionId": ')
    assert events[1] == 'data: {"content": "Hi "}\n\n'
    assert events[2] == 'data: {"content": "there"}\n\n'
    assert json.loads(events[3][len("data: ") :])["accomplishedGuidelines"] == []
    assert events[-1] == "data: [DONE]\n\n"


def test_deeply_nested_classifier_reply_falls_back() -> None:
    llm = FakeLLMClient(drafts=[["Happy to help."]])
    engine, db = _make_engine(llm)
    _add_price_guideline(db)
    llm.json_responses = {MATCHING_PROMPT: ["[" * 200000 + "]" * 200000]}

    frames = list(engine.run_turn(USER_TURN))

    assert frames[-1] == DONE
    assert _contents(frames) == ["Happy to help."]
    metadata = _metadata(frames)
    assert metadata["activeGuidelines"] == []
    assert metadata["guidelineMatchingResults"][0]["reason"].startswith("classification unavailable")


def test_interrupted_rewrite_marks_nothing_accomplished() -> None:
    llm = FakeLLMClient(
        drafts=[["Prices are prices."]],
        rewrites=[["I understand", RuntimeError("connection dropped")]],
    )
    engine, db = _make_engine(llm, mode="rewrite")
    guideline_id = _add_price_guideline(db)
    llm.json_responses = {MATCHING_PROMPT: [_judgment(guideline_id, True)]}

    frames = list(engine.run_turn(USER_TURN))

    assert _contents(frames) == ["I understand"]
    metadata = _metadata(frames)
    assert metadata["supervision"] == {"mode": "rewrite", "status": "interrupted"}
    assert metadata["accomplishedGuidelines"] == []
    assert db.get_session(frames[0]["sessionId"]).accomplished_guideline_ids == []
    assert llm.streams[-1].closed


def test_rewrite_returning_the_draft_reports_passed() -> None:
    llm = FakeLLMClient(
        drafts=[["We offer", " payment plans."]],
        rewrites=[["We offer payment plans."]],
    )
    engine, db = _make_engine(llm, mode="rewrite")
    guideline_id = _add_price_guideline(db)
    llm.json_responses = {MATCHING_PROMPT: [_judgment(guideline_id, True)]}

    frames = list(engine.run_turn(USER_TURN))

    assert _contents(frames) == ["We offer payment plans."]
    assert _metadata(frames)["supervision"]["status"] == "passed"
    assert _metadata(frames)["accomplishedGuidelines"] == [guideline_id]


def test_empty_rewrite_replays_draft_unchanged() -> None:
    draft = ["Prices ", "are ", "prices."]
    llm = FakeLLMClient(drafts=[draft], rewrites=[[]])
    engine, db = _make_engine(llm, mode="rewrite")
    guideline_id = _add_price_guideline(db)
    llm.json_responses = {MATCHING_PROMPT: [_judgment(guideline_id, True)]}

    frames = list(engine.run_turn(USER_TURN))

    assert _contents(frames) == draft
    assert _metadata(frames)["supervision"]["status"] == "failed"


def test_empty_draft_aborts_with_generation_error() -> None:
    llm = FakeLLMClient(drafts=[[]])
    engine, db = _make_engine(llm)

    frames = list(engine.run_turn([{"role": "user", "content": "hello"}]))

    assert len(frames) == 3
    assert frames[1]["error"].startswith("generation")
    assert frames[2] == DONE


def test_retrieval_backend_failure_aborts_with_error_frame() -> None:
    llm = FakeLLMClient()
    engine, db = _make_engine(llm)

    def broken_search(**kwargs: Any) -> List[Any]:
        raise sqlite3.OperationalError("database is locked")

    db.search_guidelines = broken_search  # type: ignore[assignment]

    frames = list(engine.run_turn(USER_TURN))

    assert "sessionId" in frames[0]
    assert frames[1]["error"].startswith("retrieval failed")
    assert frames[2] == DONE
    assert llm.calls == []


def test_session_store_failure_aborts_with_error_frame() -> None:
    llm = FakeLLMClient()
    engine, db = _make_engine(llm)

    def unavailable(*args: Any, **kwargs: Any) -> Any:
        raise sqlite3.OperationalError("disk I/O error")

    db.get_session = unavailable  # type: ignore[assignment]
    db.create_session = unavailable  # type: ignore[assignment]

    with_id = list(engine.run_turn(USER_TURN, "abc-123"))
    without_id = list(engine.run_turn(USER_TURN, ""))

    assert with_id[0] == {"sessionId": "abc-123"}
    assert with_id[1]["error"].startswith("session")
    assert with_id[2] == DONE
    assert without_id[0] == {"sessionId": None}
    assert without_id[-1] == DONE
    assert llm.calls == []
