"""Guideline-supervised response engine.

This package exposes a high-level engine that answers one chat turn at a
time.  It wires together

* a SQLite guideline store with state-aware vector retrieval,
* an LLM applicability classifier that decides which guidelines apply,
* deterministic prompt assembly plus a streaming draft generator, and
* a supervisor that validates or rewrites the draft before state is saved.
"""

from .clients import LLMClient
from .errors import (
    EmbeddingError,
    GenerationError,
    GuidepostError,
    RetrievalError,
    SessionConflictError,
    SessionStoreError,
)
from .manager import DONE, GuidelineChatAgent, GuidelineEngine, encode_sse
from .prompts import FALLBACK_INSTRUCTION, assemble_instructions, build_system_prompt
from .runtime import GuidelineRuntime, main as runtime_main
from .schemas import (
    ChatMessage,
    ConversationSession,
    Guideline,
    MatchCandidate,
    MatchResult,
    StructuredReply,
    TurnRequest,
    ValidationResult,
)
from .storage import GuidelineDatabase
from .tools import CandidateRetrievalTool, GuidelineIndexTool, StateUpdateTool, merge_accomplished

__all__ = [
    "CandidateRetrievalTool",
    "ChatMessage",
    "ConversationSession",
    "DONE",
    "EmbeddingError",
    "FALLBACK_INSTRUCTION",
    "GenerationError",
    "Guideline",
    "GuidelineChatAgent",
    "GuidelineDatabase",
    "GuidelineEngine",
    "GuidelineIndexTool",
    "GuidelineRuntime",
    "GuidepostError",
    "LLMClient",
    "MatchCandidate",
    "MatchResult",
    "RetrievalError",
    "SessionConflictError",
    "SessionStoreError",
    "StateUpdateTool",
    "StructuredReply",
    "TurnRequest",
    "ValidationResult",
    "assemble_instructions",
    "build_system_prompt",
    "encode_sse",
    "merge_accomplished",
    "runtime_main",
]
