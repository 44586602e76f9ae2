"""Persistent storage for guidelines and conversation sessions."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime
from typing import Any, Collection, List, Mapping, Optional, Sequence

from .schemas import ConversationSession, Guideline, MatchCandidate

logger = logging.getLogger(__name__)


SEED_GUIDELINES: Sequence[Mapping[str, Any]] = (
    {
        "title": "Initial Greeting",
        "condition": "The user starts a new conversation or sends a greeting.",
        "action": "Greet the customer warmly, introduce yourself as a sales assistant, and ask how you can help them today.",
        "category": "communication",
        "priority": 0,
    },
    {
        "title": "Handling Price Objections",
        "condition": "The customer expresses concern about the price of a product.",
        "action": "Acknowledge the concern, focus on the product's value and benefits, and if possible, suggest alternatives or payment options.",
        "category": "sales",
        "priority": 10,
    },
    {
        "title": "Return Policy Inquiry",
        "condition": "The customer asks about the return policy.",
        "action": "Clearly state the 30-day return policy and the requirement that items must be in their original, unused condition.",
        "category": "policies",
        "priority": 0,
    },
    {
        "title": "Shipping Information Inquiry",
        "condition": "The customer asks about shipping costs, times, or options.",
        "action": "Inform the customer about the free shipping threshold ($50) and the standard 3-5 business day delivery window.",
        "category": "logistics",
        "priority": 0,
    },
    {
        "title": "Request for Recommendation",
        "condition": "The customer asks for a product recommendation without specifying their needs.",
        "action": "Ask clarifying questions about their requirements, preferences, and use case to provide a tailored recommendation.",
        "category": "sales",
        "priority": 5,
    },
    {
        "title": "Complaint Handling",
        "condition": "The customer expresses dissatisfaction or reports a problem with a product or service.",
        "action": "Listen actively, express sincere empathy, apologize for the inconvenience, and offer a concrete solution or next step to resolve the issue.",
        "category": "customer_service",
        "priority": 20,
    },
)


class GuidelineDatabase:
    """Small SQLite wrapper that stores guidelines and conversation sessions.

    Vector search is a linear cosine scan over stored embeddings, which is
    adequate for the few dozen guidelines a deployment typically carries.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self.connection = sqlite3.connect(db_path, check_same_thread=False)
        self.connection.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._create_schema()

    def _create_schema(self) -> None:
        with self._lock:
            cur = self.connection.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS guidelines (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    condition TEXT NOT NULL,
                    action TEXT NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 0,
                    category TEXT,
                    embedding BLOB,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS conversation_sessions (
                    id TEXT PRIMARY KEY,
                    state TEXT NOT NULL DEFAULT '{}',
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self.connection.commit()

    @staticmethod
    def _serialize_vector(vector: Optional[Sequence[float]]) -> Optional[bytes]:
        if vector is None:
            return None
        return json.dumps([float(x) for x in vector]).encode("utf-8")

    @staticmethod
    def _deserialize_vector(blob: Optional[bytes]) -> Optional[List[float]]:
        if blob is None:
            return None
        return [float(x) for x in json.loads(blob.decode("utf-8"))]

    def _row_to_guideline(self, row: sqlite3.Row) -> Guideline:
        return Guideline(
            id=int(row["id"]),
            title=row["title"],
            condition=row["condition"],
            action=row["action"],
            priority=int(row["priority"] or 0),
            category=row["category"],
            embedding=self._deserialize_vector(row["embedding"]),
        )

    # ------------------------------------------------------------------
    # Guidelines
    # ------------------------------------------------------------------
    def add_guideline(
        self,
        *,
        title: str,
        condition: str,
        action: str,
        priority: int = 0,
        category: Optional[str] = None,
        embedding: Optional[Sequence[float]] = None,
    ) -> int:
        """Insert a guideline and return its identifier."""

        now = datetime.utcnow().isoformat()
        with self._lock:
            cur = self.connection.execute(
                """
                INSERT INTO guidelines(
                    title, condition, action, priority, category, embedding, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    title,
                    condition,
                    action,
                    int(priority),
                    category,
                    self._serialize_vector(embedding),
                    now,
                    now,
                ),
            )
            self.connection.commit()
            return int(cur.lastrowid)

    def update_guideline(self, guideline_id: int, **fields: Any) -> bool:
        """Update editable fields; a changed condition drops the stale embedding."""

        allowed = {"title", "condition", "action", "priority", "category"}
        updates = {key: value for key, value in fields.items() if key in allowed}
        if not updates:
            return False
        existing = self.fetch_guideline(guideline_id)
        if existing is None:
            return False

        assignments = [f"{key} = ?" for key in updates]
        values: List[Any] = list(updates.values())
        if "condition" in updates and updates["condition"] != existing.condition:
            assignments.append("embedding = NULL")
        assignments.append("updated_at = ?")
        values.append(datetime.utcnow().isoformat())
        values.append(guideline_id)
        with self._lock:
            self.connection.execute(
                f"UPDATE guidelines SET {', '.join(assignments)} WHERE id = ?",
                values,
            )
            self.connection.commit()
        return True

    def set_guideline_embedding(self, guideline_id: int, embedding: Sequence[float]) -> None:
        with self._lock:
            self.connection.execute(
                "UPDATE guidelines SET embedding = ?, updated_at = ? WHERE id = ?",
                (
                    self._serialize_vector(embedding),
                    datetime.utcnow().isoformat(),
                    guideline_id,
                ),
            )
            self.connection.commit()

    def fetch_guideline(self, guideline_id: int) -> Optional[Guideline]:
        cur = self.connection.execute("SELECT * FROM guidelines WHERE id = ?", (guideline_id,))
        row = cur.fetchone()
        return self._row_to_guideline(row) if row else None

    def list_guidelines(self, *, missing_embedding: bool = False) -> List[Guideline]:
        query = "SELECT * FROM guidelines"
        if missing_embedding:
            query += " WHERE embedding IS NULL"
        query += " ORDER BY priority DESC, id DESC"
        return [self._row_to_guideline(row) for row in self.connection.execute(query).fetchall()]

    @staticmethod
    def _cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
        if not vec1 or not vec2:
            return 0.0
        dot = sum(a * b for a, b in zip(vec1, vec2))
        norm1 = sum(a * a for a in vec1) ** 0.5
        norm2 = sum(b * b for b in vec2) ** 0.5
        if norm1 == 0 or norm2 == 0:
            return 0.0
        return dot / (norm1 * norm2)

    def search_guidelines(
        self,
        *,
        embedding: Sequence[float],
        exclude_ids: Collection[int] = (),
        threshold: float = 0.0,
        limit: int = 5,
    ) -> List[MatchCandidate]:
        """Rank guidelines by priority, then similarity, skipping excluded ids."""

        excluded = {int(value) for value in exclude_ids}
        scored: List[MatchCandidate] = []
        for guideline in self.list_guidelines():
            if guideline.embedding is None or guideline.id in excluded:
                continue
            cosine = self._cosine_similarity(embedding, guideline.embedding)
            if cosine < threshold or cosine < 0.0:
                continue
            scored.append(MatchCandidate(guideline=guideline, similarity=min(1.0, cosine)))
        scored.sort(key=lambda item: (item.guideline.priority, item.similarity), reverse=True)
        return scored[: max(0, limit)]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def create_session(self, state: Optional[Mapping[str, Any]] = None) -> ConversationSession:
        now = datetime.utcnow().isoformat()
        session_id = str(uuid.uuid4())
        with self._lock:
            self.connection.execute(
                """
                INSERT INTO conversation_sessions(id, state, version, created_at, updated_at)
                VALUES (?, ?, 0, ?, ?)
                """,
                (session_id, json.dumps(dict(state or {}), ensure_ascii=False), now, now),
            )
            self.connection.commit()
        logger.info("Created conversation session %s", session_id)
        return ConversationSession.from_state(session_id, state, version=0)

    def get_session(self, session_id: str) -> Optional[ConversationSession]:
        cur = self.connection.execute(
            "SELECT id, state, version FROM conversation_sessions WHERE id = ?",
            (session_id,),
        )
        row = cur.fetchone()
        if not row:
            return None
        try:
            state = json.loads(row["state"]) if row["state"] else {}
        except json.JSONDecodeError:
            logger.warning("Session %s has unreadable state; starting from empty", session_id)
            state = {}
        if not isinstance(state, Mapping):
            state = {}
        return ConversationSession.from_state(row["id"], state, version=int(row["version"]))

    def update_session(
        self,
        session_id: str,
        state: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> bool:
        """Write ``state``; with ``expected_version`` only if nobody wrote since.

        Returns ``False`` when the version check fails or the session is gone.
        """

        now = datetime.utcnow().isoformat()
        payload = json.dumps(dict(state), ensure_ascii=False)
        with self._lock:
            if expected_version is None:
                cur = self.connection.execute(
                    """
                    UPDATE conversation_sessions
                    SET state = ?, version = version + 1, updated_at = ?
                    WHERE id = ?
                    """,
                    (payload, now, session_id),
                )
            else:
                cur = self.connection.execute(
                    """
                    UPDATE conversation_sessions
                    SET state = ?, version = version + 1, updated_at = ?
                    WHERE id = ? AND version = ?
                    """,
                    (payload, now, session_id, expected_version),
                )
            self.connection.commit()
            return cur.rowcount == 1


__all__ = ["GuidelineDatabase", "SEED_GUIDELINES"]
