"""High-level orchestration for one guideline-supervised chat turn."""

from __future__ import annotations

import json
import logging
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    MutableMapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from .clients import LLMClient
from .errors import EmbeddingError, GenerationError, GuidepostError, SessionStoreError
from .prompts import (
    DEFAULT_PERSONA,
    MATCHING_PROMPT,
    REWRITE_PROMPT,
    VALIDATION_PROMPT,
    build_system_prompt,
)
from .schemas import (
    ChatMessage,
    ConversationSession,
    Guideline,
    MatchCandidate,
    MatchResult,
    StructuredReply,
    TurnRequest,
    ValidationResult,
    history_payload,
)
from .storage import GuidelineDatabase
from .tools import CandidateRetrievalTool, StateUpdateTool

logger = logging.getLogger(__name__)

DONE = "[DONE]"

SUPERVISION_MODES = ("validate", "rewrite")

VALIDATION_ERROR_REASON = "Could not validate due to a system error."

Frame = Union[Mapping[str, Any], str]


def _close(stream: Any) -> None:
    close = getattr(stream, "close", None)
    if callable(close):
        close()


def _coerce_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes"}
    return False


def _clamp_score(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(10.0, max(0.0, score))


@dataclass
class GuidelineEngine:
    """Run the retrieve -> classify -> generate -> supervise -> persist pipeline."""

    db: GuidelineDatabase
    llm_client: LLMClient
    embedding_client: LLMClient
    match_threshold: float = 0.3
    match_count: int = 5
    history_window: int = 3
    supervision_mode: str = "validate"
    persona: str = DEFAULT_PERSONA
    clock: Callable[[], datetime] = field(default=datetime.now)

    def __post_init__(self) -> None:
        if self.supervision_mode not in SUPERVISION_MODES:
            raise ValueError(f"Unsupported supervision mode '{self.supervision_mode}'")
        self.retrieval_tool = CandidateRetrievalTool(
            db=self.db,
            top_k=self.match_count,
            threshold=self.match_threshold,
        )
        self.state_tool = StateUpdateTool(db=self.db)

    # ------------------------------------------------------------------
    # Session & retrieval
    # ------------------------------------------------------------------
    def resolve_session(self, session_id: Optional[str]) -> ConversationSession:
        try:
            if session_id:
                session = self.db.get_session(session_id)
                if session is not None:
                    return session
                logger.info("Session %s not found; starting a new one", session_id)
            return self.db.create_session()
        except Exception as exc:
            raise SessionStoreError(f"session store unavailable: {exc}") from exc

    def embed_query(self, text: str) -> List[float]:
        try:
            vectors = self.embedding_client.embed([text])
        except Exception as exc:
            raise EmbeddingError(f"embedding service failed: {exc}") from exc
        if not vectors or not vectors[0]:
            raise EmbeddingError("embedding service returned no vector")
        return vectors[0]

    def retrieve(
        self, embedding: Sequence[float], accomplished_ids: Iterable[int]
    ) -> List[MatchCandidate]:
        return self.retrieval_tool(embedding, list(accomplished_ids))

    # ------------------------------------------------------------------
    # Structured LLM calls
    # ------------------------------------------------------------------
    def _invoke_json(self, system_prompt: str, payload: Mapping[str, object]) -> StructuredReply:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
        ]
        try:
            raw = self.llm_client.chat_json(messages)
        except Exception as exc:
            return StructuredReply.failed(f"request failed: {exc}")
        try:
            parsed = self._extract_json(raw)
        except (ValueError, RecursionError) as exc:
            return StructuredReply.failed(f"invalid JSON: {exc!r}", raw=raw)
        if parsed is None:
            return StructuredReply.failed("no JSON found in reply", raw=raw)
        return StructuredReply.ok(parsed, raw=raw)

    @staticmethod
    def _extract_json(message: str) -> Optional[Any]:
        sanitized = (message or "").strip()
        if sanitized.startswith("```"):
            sanitized = sanitized[3:]
            if sanitized.lower().startswith("json"):
                sanitized = sanitized[4:]
            sanitized = sanitized.lstrip("\n")
            if sanitized.endswith("```"):
                sanitized = sanitized[:-3]
        elif sanitized.lower().startswith("json"):
            sanitized = sanitized[4:].lstrip(": ")

        try:
            return json.loads(sanitized)
        except (ValueError, RecursionError):
            pass

        closers = {"{": "}", "[": "]"}
        start = None
        stack: List[str] = []
        in_string = False
        escape = False
        for idx, char in enumerate(sanitized):
            if start is None:
                if char in closers:
                    start = idx
                    stack.append(closers[char])
                continue
            if in_string:
                if escape:
                    escape = False
                elif char == "\\":
                    escape = True
                elif char == '"':
                    in_string = False
            elif char == '"':
                in_string = True
            elif char in closers:
                stack.append(closers[char])
            elif stack and char == stack[-1]:
                stack.pop()
                if not stack:
                    return json.loads(sanitized[start : idx + 1])
        return None

    # ------------------------------------------------------------------
    # Applicability classification
    # ------------------------------------------------------------------
    def classify(
        self, candidates: Sequence[MatchCandidate], messages: Sequence[ChatMessage]
    ) -> List[MatchResult]:
        """Judge every candidate in one batched request.

        Any failure yields ``applies=False`` for every candidate so the turn
        proceeds without guideline enforcement.
        """

        if not candidates:
            return []

        user_message, recent = self._split_history(messages)
        payload = {
            "user_message": user_message.content if user_message else "",
            "recent_turns": history_payload(recent),
            "guidelines": [
                {
                    "id": candidate.guideline.id,
                    "condition": candidate.guideline.condition,
                    "action": candidate.guideline.action,
                }
                for candidate in candidates
            ],
        }
        reply = self._invoke_json(MATCHING_PROMPT, payload)
        records = reply.records("results", "guidelines", "matches")
        if records is None:
            reason = reply.error or "reply was not a list of results"
            logger.warning("Guideline classification unusable (%s): %s", reason, reply.raw)
            return [
                MatchResult(
                    guideline_id=candidate.guideline.id,
                    applies=False,
                    reason=f"classification unavailable: {reason}",
                )
                for candidate in candidates
            ]

        judged: Dict[int, MatchResult] = {}
        for record in records:
            guideline_id = _coerce_id(record.get("guideline_id", record.get("id")))
            if guideline_id is None:
                continue
            judged[guideline_id] = MatchResult(
                guideline_id=guideline_id,
                applies=_coerce_bool(record.get("applies", record.get("is_met"))),
                score=_clamp_score(record.get("score")),
                reason=str(record.get("reason") or ""),
            )

        return [
            judged.get(candidate.guideline.id)
            or MatchResult(
                guideline_id=candidate.guideline.id,
                applies=False,
                reason="no judgment returned",
            )
            for candidate in candidates
        ]

    @staticmethod
    def select_active(
        candidates: Sequence[MatchCandidate], results: Sequence[MatchResult]
    ) -> List[MatchCandidate]:
        applies = {result.guideline_id for result in results if result.applies}
        return [candidate for candidate in candidates if candidate.guideline.id in applies]

    def _split_history(
        self, messages: Sequence[ChatMessage]
    ) -> Tuple[Optional[ChatMessage], List[ChatMessage]]:
        for index in range(len(messages) - 1, -1, -1):
            if messages[index].role == "user":
                window = max(0, self.history_window)
                earlier = list(messages[:index])
                return messages[index], earlier[len(earlier) - window :] if window else []
        return None, []

    # ------------------------------------------------------------------
    # Generation & supervision
    # ------------------------------------------------------------------
    def generate(self, system_prompt: str, messages: Sequence[ChatMessage]) -> Iterator[str]:
        """Stream the draft reply; must be consumed exactly once."""

        prompt_messages = [{"role": "system", "content": system_prompt}, *history_payload(messages)]
        produced = False
        stream: Any = None
        try:
            stream = self.llm_client.stream_chat(prompt_messages)
            for piece in stream:
                if not piece:
                    continue
                produced = True
                yield piece
        except Exception as exc:
            raise GenerationError(f"generation failed: {exc}") from exc
        finally:
            _close(stream)
        if not produced:
            raise GenerationError("generation returned no content")

    def validate(
        self, draft: str, active: Sequence[Guideline]
    ) -> List[ValidationResult]:
        return self._validate(draft, active)[0]

    def _validate(
        self, draft: str, active: Sequence[Guideline]
    ) -> Tuple[List[ValidationResult], bool]:
        if not active:
            return [], True

        payload = {
            "response": draft,
            "actions": [{"id": guideline.id, "action": guideline.action} for guideline in active],
        }
        reply = self._invoke_json(VALIDATION_PROMPT, payload)
        records = reply.records("validation_results", "results")
        if records is None:
            logger.warning(
                "Response validation unusable (%s): %s",
                reply.error or "reply was not a list of results",
                reply.raw,
            )
            return [
                ValidationResult(
                    guideline_id=guideline.id,
                    followed=False,
                    reason=VALIDATION_ERROR_REASON,
                )
                for guideline in active
            ], False

        verdicts: Dict[int, ValidationResult] = {}
        for record in records:
            guideline_id = _coerce_id(
                record.get("guidelineId", record.get("guideline_id", record.get("id")))
            )
            if guideline_id is None:
                continue
            verdicts[guideline_id] = ValidationResult(
                guideline_id=guideline_id,
                followed=_coerce_bool(record.get("followed")),
                reason=str(record.get("reason") or ""),
            )
        return [
            verdicts.get(guideline.id)
            or ValidationResult(guideline_id=guideline.id, followed=False, reason="no verdict returned")
            for guideline in active
        ], True

    def supervise_rewrite(
        self,
        draft_chunks: Sequence[str],
        active: Sequence[Guideline],
        report: Optional[MutableMapping[str, Any]] = None,
    ) -> Iterator[str]:
        """Stream the supervisor's final text, falling back to the draft.

        If the supervising call fails before producing anything the draft
        increments are replayed unchanged.  A failure after text has been
        forwarded ends the stream where it stopped.
        """

        report = report if report is not None else {}
        if not active:
            report["status"] = "skipped"
            yield from draft_chunks
            return

        draft = "".join(draft_chunks)
        payload = {
            "draft": draft,
            "instructions": [guideline.action for guideline in active],
        }
        messages = [
            {"role": "system", "content": REWRITE_PROMPT},
            {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
        ]
        emitted: List[str] = []
        stream: Any = None
        try:
            stream = self.llm_client.stream_chat(messages)
            for piece in stream:
                if not piece:
                    continue
                emitted.append(piece)
                yield piece
        except Exception as exc:
            if emitted:
                logger.warning("Supervisor stream interrupted after %s chunks: %s", len(emitted), exc)
                report["status"] = "interrupted"
                return
            logger.warning("Supervisor unavailable, emitting draft unchanged: %s", exc)
        else:
            if emitted:
                report["status"] = "passed" if "".join(emitted) == draft else "rewritten"
                return
            logger.warning("Supervisor returned no text, emitting draft unchanged")
        finally:
            _close(stream)

        report["status"] = "failed"
        yield from draft_chunks

    # ------------------------------------------------------------------
    # Turn orchestration
    # ------------------------------------------------------------------
    def run_turn(
        self, messages: Iterable[Any], session_id: Optional[str] = None
    ) -> Iterator[Frame]:
        """Yield the frames of one turn: session id, content, metadata, DONE.

        Closing the generator early stops generation and skips the state
        update.
        """

        history = [ChatMessage.coerce(message) for message in messages]
        try:
            session = self.resolve_session(session_id)
        except GuidepostError as exc:
            # echo what the caller sent (null when nothing was supplied)
            yield {"sessionId": session_id or None}
            yield from self._error_frames(exc)
            return
        yield {"sessionId": session.id}

        try:
            user_message, _ = self._split_history(history)
            if user_message is None or not user_message.content.strip():
                raise GuidepostError("request contains no user message")
            embedding = self.embed_query(user_message.content)
            candidates = self.retrieve(embedding, session.accomplished_guideline_ids)
        except GuidepostError as exc:
            yield from self._error_frames(exc)
            return

        results = self.classify(candidates, history)
        active = self.select_active(candidates, results)
        active_guidelines = [candidate.guideline for candidate in active]
        system_prompt = build_system_prompt(active_guidelines, self.persona)
        logger.info(
            "Session %s: %s candidates, %s active", session.id, len(candidates), len(active)
        )

        supervision: Dict[str, Any] = {"mode": self.supervision_mode, "status": "skipped"}
        validations: Optional[List[ValidationResult]] = None
        try:
            with closing(self.generate(system_prompt, history)) as draft_stream:
                if active and self.supervision_mode == "rewrite":
                    draft_chunks = list(draft_stream)
                    with closing(
                        self.supervise_rewrite(draft_chunks, active_guidelines, supervision)
                    ) as final_stream:
                        for piece in final_stream:
                            yield {"content": piece}
                else:
                    draft_chunks = []
                    for piece in draft_stream:
                        draft_chunks.append(piece)
                        yield {"content": piece}
        except GuidepostError as exc:
            yield from self._error_frames(exc)
            return

        if active and self.supervision_mode == "validate":
            validations, ok = self._validate("".join(draft_chunks), active_guidelines)
            supervision["status"] = "validated" if ok else "failed"
        elif supervision["status"] == "interrupted":
            # the user saw an unverified fragment; nothing counts as satisfied
            validations = []

        try:
            updated = self.state_tool(session, active_guidelines, validations)
        except GuidepostError as exc:
            yield from self._error_frames(exc)
            return

        triggered_at = self.clock().strftime("%H:%M:%S")
        metadata: Dict[str, Any] = {
            "activeGuidelines": [
                {**candidate.to_payload(), "triggered_at": triggered_at} for candidate in active
            ],
            "guidelineMatchingResults": [result.to_payload() for result in results],
            "accomplishedGuidelines": list(updated.accomplished_guideline_ids),
            "supervision": supervision,
        }
        if self.supervision_mode == "validate":
            metadata["validationResults"] = [result.to_payload() for result in validations or []]
        yield metadata
        yield DONE

    def _error_frames(self, exc: GuidepostError) -> Iterator[Frame]:
        logger.error("Turn aborted during %s: %s", exc.stage, exc, exc_info=exc)
        message = str(exc)
        if not message.startswith(exc.stage):
            message = f"{exc.stage} failed: {message}"
        yield {"error": message}
        yield DONE


def encode_sse(frame: Frame) -> str:
    if frame == DONE:
        return f"data: {DONE}\n\n"
    return f"data: {json.dumps(frame, ensure_ascii=False)}\n\n"


@dataclass
class GuidelineChatAgent:
    """Agent facade that renders engine frames as server-sent events."""

    engine: GuidelineEngine

    def stream(self, request: Union[TurnRequest, Mapping[str, Any]]) -> Iterator[str]:
        if not isinstance(request, TurnRequest):
            request = TurnRequest.from_payload(request)
        with closing(self.engine.run_turn(request.messages, request.session_id)) as frames:
            for frame in frames:
                yield encode_sse(frame)


__all__ = [
    "DONE",
    "GuidelineChatAgent",
    "GuidelineEngine",
    "SUPERVISION_MODES",
    "VALIDATION_ERROR_REASON",
    "encode_sse",
]
