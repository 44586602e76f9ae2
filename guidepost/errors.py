"""Exceptions raised by the guideline pipeline.

Only the fatal stages (embedding, retrieval, generation, session storage)
raise these; classification and supervision fall back instead.
"""

from __future__ import annotations


class GuidepostError(Exception):
    """Base class for pipeline failures."""

    stage = "pipeline"


class EmbeddingError(GuidepostError):
    stage = "embedding"


class RetrievalError(GuidepostError):
    stage = "retrieval"


class GenerationError(GuidepostError):
    stage = "generation"


class SessionStoreError(GuidepostError):
    stage = "session"


class SessionConflictError(SessionStoreError):
    """Raised when a session kept changing underneath a state update."""


__all__ = [
    "EmbeddingError",
    "GenerationError",
    "GuidepostError",
    "RetrievalError",
    "SessionConflictError",
    "SessionStoreError",
]
