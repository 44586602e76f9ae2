"""Typed data structures used by the guideline matching pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, MutableMapping, Optional, Sequence


@dataclass(frozen=True)
class Guideline:
    """A condition -> action business rule.

    The pipeline only reads guidelines; authoring happens elsewhere.  A
    guideline without an ``embedding`` is never eligible for retrieval.
    """

    id: int
    title: str
    condition: str
    action: str
    priority: int = 0
    category: Optional[str] = None
    embedding: Optional[List[float]] = None

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "condition": self.condition,
            "action": self.action,
            "priority": self.priority,
            "category": self.category,
        }


@dataclass
class MatchCandidate:
    """A guideline retrieved for the current turn, not yet judged."""

    guideline: Guideline
    similarity: float

    def to_payload(self) -> Mapping[str, Any]:
        payload = dict(self.guideline.to_payload())
        payload["similarity"] = self.similarity
        return payload


@dataclass
class MatchResult:
    guideline_id: int
    applies: bool
    score: float = 0.0
    reason: str = ""

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "guideline_id": self.guideline_id,
            "applies": self.applies,
            "score": self.score,
            "reason": self.reason,
        }


@dataclass
class ValidationResult:
    guideline_id: int
    followed: bool
    reason: str = ""

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "guidelineId": self.guideline_id,
            "followed": self.followed,
            "reason": self.reason,
        }


@dataclass
class ConversationSession:
    """Durable per-conversation state.

    ``accomplished_guideline_ids`` only ever grows; ``version`` is bumped on
    every successful write and used for compare-and-swap updates.
    """

    id: str
    accomplished_guideline_ids: List[int] = field(default_factory=list)
    state: MutableMapping[str, Any] = field(default_factory=dict)
    version: int = 0

    def to_state(self) -> Mapping[str, Any]:
        data = dict(self.state)
        data["accomplished_guidelines"] = list(self.accomplished_guideline_ids)
        return data

    @classmethod
    def from_state(
        cls, session_id: str, state: Optional[Mapping[str, Any]], version: int = 0
    ) -> "ConversationSession":
        data = dict(state or {})
        raw_ids = data.pop("accomplished_guidelines", None) or []
        accomplished: List[int] = []
        for value in raw_ids:
            try:
                accomplished.append(int(value))
            except (TypeError, ValueError):
                continue
        return cls(
            id=session_id,
            accomplished_guideline_ids=sorted(set(accomplished)),
            state=data,
            version=version,
        )


@dataclass
class ChatMessage:
    role: str
    content: str

    def to_payload(self) -> Mapping[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def coerce(cls, raw: Any) -> "ChatMessage":
        if isinstance(raw, ChatMessage):
            return raw
        if isinstance(raw, Mapping):
            return cls(role=str(raw.get("role") or "user"), content=str(raw.get("content") or ""))
        raise TypeError(f"Unsupported message type: {type(raw)!r}")


@dataclass
class StructuredReply:
    """Outcome of parsing a structured LLM response.

    Either ``payload`` holds the decoded JSON, or ``error`` describes why the
    reply was unusable.  Callers must check :attr:`malformed` first.
    """

    payload: Any = None
    error: Optional[str] = None
    raw: str = ""

    @property
    def malformed(self) -> bool:
        return self.error is not None

    @classmethod
    def ok(cls, payload: Any, raw: str = "") -> "StructuredReply":
        return cls(payload=payload, raw=raw)

    @classmethod
    def failed(cls, error: str, raw: str = "") -> "StructuredReply":
        return cls(error=error, raw=raw)

    def records(self, *keys: str) -> Optional[List[Mapping[str, Any]]]:
        """Return the list of objects in the reply, or ``None`` on a bad shape.

        Accepts a bare array or an object wrapping the array under one of
        ``keys``.
        """

        if self.malformed:
            return None
        data = self.payload
        if isinstance(data, Mapping):
            for key in keys:
                if isinstance(data.get(key), list):
                    data = data[key]
                    break
        if not isinstance(data, list):
            return None
        return [item for item in data if isinstance(item, Mapping)]


@dataclass
class TurnRequest:
    """One inbound user turn."""

    messages: List[ChatMessage]
    session_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TurnRequest":
        messages = [ChatMessage.coerce(item) for item in payload.get("messages") or []]
        session_id = payload.get("sessionId") or payload.get("session_id")
        return cls(messages=messages, session_id=str(session_id) if session_id else None)


def history_payload(messages: Sequence[ChatMessage]) -> List[Dict[str, str]]:
    return [dict(message.to_payload()) for message in messages]


__all__ = [
    "ChatMessage",
    "ConversationSession",
    "Guideline",
    "MatchCandidate",
    "MatchResult",
    "StructuredReply",
    "TurnRequest",
    "ValidationResult",
    "history_payload",
]
