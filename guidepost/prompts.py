"""System prompts and instruction assembly for the guideline pipeline."""

from __future__ import annotations

from typing import Iterable

from .schemas import Guideline

DEFAULT_PERSONA = "You are Alex, a friendly sales assistant."

FALLBACK_INSTRUCTION = "No specific actions found, respond naturally."


MATCHING_PROMPT = """
You are a rule-checker for a customer-facing assistant. The input is JSON with:
- user_message: the latest message from the user;
- recent_turns: the few turns that preceded it, for context only;
- guidelines: candidate rules, each with id, condition and action.

For each guideline decide whether its condition holds right now AND its action is
relevant to the assistant's immediate next reply. Judge all guidelines against the
same context so that scores are comparable.

Respond ONLY with a JSON object:
{
  "results": [
    {"guideline_id": 1, "applies": true, "score": 0-10, "reason": "short justification"}
  ]
}
""".strip()


VALIDATION_PROMPT = """
You are a QA analyst. The input is JSON with the assistant's response and the actions
it was instructed to follow. Check, for each action, whether the response follows it.

Respond ONLY with a JSON object:
{
  "validation_results": [
    {"guidelineId": 1, "followed": true, "reason": "short justification"}
  ]
}
""".strip()


REWRITE_PROMPT = """
You are a response supervisor. The input is JSON with a draft reply written by an
assistant and the instructions the reply must satisfy.

If the draft already satisfies every instruction, output the draft exactly as given.
Otherwise output a corrected reply that satisfies every instruction while keeping the
draft's tone and any correct information. Output only the final reply text, with no
commentary, labels or quotation marks.
""".strip()


def assemble_instructions(guidelines: Iterable[Guideline]) -> str:
    """Render active guidelines as imperative bullet lines.

    Order is preserved as given (priority order from retrieval) and no
    deduplication is attempted.  With nothing active the generic fallback is
    returned, never an empty string.
    """

    lines = [f"* {guideline.action.strip()}" for guideline in guidelines if guideline.action.strip()]
    if not lines:
        return FALLBACK_INSTRUCTION
    return "\n".join(lines)


def build_system_prompt(guidelines: Iterable[Guideline], persona: str = DEFAULT_PERSONA) -> str:
    return "\n".join(
        [
            persona.strip() or DEFAULT_PERSONA,
            "--- CURRENT TASK ---",
            "Based on the user's message, follow these instructions precisely:",
            assemble_instructions(guidelines),
            "--- END OF TASK ---",
        ]
    )


__all__ = [
    "DEFAULT_PERSONA",
    "FALLBACK_INSTRUCTION",
    "MATCHING_PROMPT",
    "REWRITE_PROMPT",
    "VALIDATION_PROMPT",
    "assemble_instructions",
    "build_system_prompt",
]
