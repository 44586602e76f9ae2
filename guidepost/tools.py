from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Collection, Iterable, List, Mapping, Optional, Sequence

from .errors import RetrievalError, SessionConflictError, SessionStoreError
from .schemas import ConversationSession, Guideline, MatchCandidate, ValidationResult
from .storage import GuidelineDatabase

logger = logging.getLogger(__name__)


@dataclass
class CandidateRetrievalTool:
    """Similarity search that skips guidelines the session already satisfied."""

    db: GuidelineDatabase
    top_k: int = 5
    threshold: float = 0.3

    def __call__(
        self, embedding: Sequence[float], accomplished_ids: Collection[int] = ()
    ) -> List[MatchCandidate]:
        excluded = {int(value) for value in accomplished_ids}
        try:
            results = self.db.search_guidelines(
                embedding=embedding,
                exclude_ids=excluded,
                threshold=self.threshold,
                limit=self.top_k,
            )
        except Exception as exc:
            raise RetrievalError(f"guideline search failed: {exc}") from exc

        candidates = [
            result
            for result in results
            if result.guideline.embedding is not None
            and result.guideline.id not in excluded
            and result.similarity >= self.threshold
        ]
        candidates.sort(key=lambda item: (item.guideline.priority, item.similarity), reverse=True)
        return candidates[: self.top_k]


def merge_accomplished(
    accomplished: Iterable[int],
    active: Iterable[Guideline],
    validations: Optional[Iterable[ValidationResult]] = None,
) -> List[int]:
    """Union the old accomplished ids with this turn's satisfied guidelines.

    Without validations every active guideline counts as satisfied; with
    them only the ones marked ``followed``.
    """

    merged = {int(value) for value in accomplished}
    active_ids = {guideline.id for guideline in active}
    if validations is None:
        merged.update(active_ids)
    else:
        merged.update(
            result.guideline_id
            for result in validations
            if result.followed and result.guideline_id in active_ids
        )
    return sorted(merged)


@dataclass
class StateUpdateTool:
    """Persist the accomplished set with compare-and-swap on the session version."""

    db: GuidelineDatabase
    max_attempts: int = 3

    def __call__(
        self,
        session: ConversationSession,
        active: Sequence[Guideline],
        validations: Optional[Sequence[ValidationResult]] = None,
    ) -> ConversationSession:
        current = session
        for attempt in range(1, self.max_attempts + 1):
            merged = merge_accomplished(current.accomplished_guideline_ids, active, validations)
            if merged == sorted(current.accomplished_guideline_ids):
                return current

            updated = ConversationSession(
                id=current.id,
                accomplished_guideline_ids=merged,
                state=dict(current.state),
                version=current.version + 1,
            )
            try:
                written = self.db.update_session(
                    current.id, updated.to_state(), expected_version=current.version
                )
            except Exception as exc:
                raise SessionStoreError(f"could not persist session {current.id}: {exc}") from exc
            if written:
                return updated

            logger.info(
                "Session %s changed during the turn (attempt %s); merging with latest state",
                current.id,
                attempt,
            )
            try:
                latest = self.db.get_session(current.id)
            except Exception as exc:
                raise SessionStoreError(f"could not reload session {current.id}: {exc}") from exc
            if latest is None:
                raise SessionStoreError(f"session {current.id} disappeared during update")
            current = latest

        raise SessionConflictError(
            f"session {session.id} kept changing; gave up after {self.max_attempts} attempts"
        )


@dataclass
class GuidelineIndexTool:
    """Embed the condition of every guideline that has no embedding yet."""

    db: GuidelineDatabase
    embed_texts: Callable[[Iterable[str]], List[List[float]]]

    def __call__(self) -> Mapping[str, Any]:
        pending = self.db.list_guidelines(missing_embedding=True)
        if not pending:
            logger.info("All guidelines already have embeddings")
            return {"processed": 0, "errors": 0}

        processed = 0
        errors = 0
        for guideline in pending:
            try:
                vectors = self.embed_texts([guideline.condition])
                if not vectors:
                    raise ValueError("embedding service returned no vector")
                self.db.set_guideline_embedding(guideline.id, vectors[0])
            except Exception as exc:
                logger.error("Error processing guideline %s: %s", guideline.id, exc)
                errors += 1
                continue
            processed += 1
        logger.info("Reindexed %s guidelines (%s errors)", processed, errors)
        return {"processed": processed, "errors": errors}


__all__ = [
    "CandidateRetrievalTool",
    "GuidelineIndexTool",
    "StateUpdateTool",
    "merge_accomplished",
]
