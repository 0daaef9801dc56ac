"""Token budgeting between conversation history and retrieved knowledge.

Token counts are estimates (about four characters per token). The budget
never grows the inputs: history is trimmed from its oldest lines, retrieved
knowledge from its lowest-ranked sections.
"""

import math
from dataclasses import dataclass

TOKENS_PER_CHAR = 0.25
DEFAULT_MAX_CONTEXT_TOKENS = 12000
MAX_CONVERSATION_TOKENS = 4000
MIN_CONVERSATION_TOKENS = 300
CONVERSATION_SHARE = 0.2
RAG_FLOOR_TOKENS = 2000
OVERFLOW_MARGIN = 1.2

HISTORY_LABEL = "CONVERSATION HISTORY:\n"
RAG_LABEL = "RELEVANT INFORMATION:\n"
HISTORY_SEPARATOR = "\n\n"
SECTION_SEPARATOR = "\n\n---\n\n"


def estimate_tokens(text: str | None) -> int:
    if not text:
        return 0
    return math.ceil(len(text) * TOKENS_PER_CHAR)


LABEL_TOKENS = estimate_tokens(HISTORY_LABEL) + estimate_tokens(HISTORY_SEPARATOR + RAG_LABEL)


@dataclass
class ContextBudget:
    context: str
    conversation_tokens: int
    rag_tokens: int
    total_tokens: int
    trimmed: bool = False

    def as_dict(self) -> dict:
        return {
            "conversation": self.conversation_tokens,
            "rag": self.rag_tokens,
            "total": self.total_tokens,
            "trimmed": self.trimmed,
        }


def join_context(history: str, rag: str) -> str:
    parts = []
    if history:
        parts.append(f"{HISTORY_LABEL}{history}")
    if rag:
        parts.append(f"{RAG_LABEL}{rag}")
    return HISTORY_SEPARATOR.join(parts)


def trim_history(history: str, max_tokens: int) -> str:
    """Keep the newest history lines that fit into max_tokens."""
    if estimate_tokens(history) <= max_tokens:
        return history
    kept: list[str] = []
    for line in reversed(history.split(HISTORY_SEPARATOR)):
        candidate = [line] + kept
        if estimate_tokens(HISTORY_SEPARATOR.join(candidate)) > max_tokens:
            break
        kept = candidate
    return HISTORY_SEPARATOR.join(kept)


def trim_sections(rag: str, max_tokens: int) -> str:
    """Keep the first-ranked knowledge sections that fit into max_tokens."""
    if estimate_tokens(rag) <= max_tokens:
        return rag
    if max_tokens <= 0:
        return ""
    sections = rag.split(SECTION_SEPARATOR)
    kept: list[str] = []
    for section in sections:
        candidate = kept + [section]
        if estimate_tokens(SECTION_SEPARATOR.join(candidate)) > max_tokens:
            break
        kept = candidate
    if not kept:
        # Top section alone is too large: keep its head.
        return sections[0][: int(max_tokens / TOKENS_PER_CHAR)]
    return SECTION_SEPARATOR.join(kept)


def balance_context_tokens(
    history: str,
    rag: str,
    max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS,
) -> ContextBudget:
    """Fit history and knowledge into one labelled context string.

    When both fit, the result is the untouched concatenation. Otherwise history
    is shrunk toward max(300, 20% of the budget), leaving room for a 2000 token
    knowledge floor, and knowledge sections are dropped from the tail only if
    the result still overflows the budget by more than 20%.
    """
    history = history or ""
    rag = rag or ""
    conversation_tokens = estimate_tokens(history)
    rag_tokens = estimate_tokens(rag)

    if conversation_tokens + rag_tokens <= max_context_tokens:
        return ContextBudget(
            context=join_context(history, rag),
            conversation_tokens=conversation_tokens,
            rag_tokens=rag_tokens,
            total_tokens=conversation_tokens + rag_tokens,
        )

    history_target = max(MIN_CONVERSATION_TOKENS, int(max_context_tokens * CONVERSATION_SHARE))
    if rag_tokens < RAG_FLOOR_TOKENS:
        history_target = min(history_target, max_context_tokens - RAG_FLOOR_TOKENS)
    history_target = max(0, min(history_target, max_context_tokens - LABEL_TOKENS))

    trimmed_history = trim_history(history, history_target)
    trimmed_rag = rag

    overflow_limit = max_context_tokens * OVERFLOW_MARGIN
    if estimate_tokens(join_context(trimmed_history, trimmed_rag)) > overflow_limit:
        rag_target = max_context_tokens - estimate_tokens(trimmed_history) - LABEL_TOKENS
        trimmed_rag = trim_sections(rag, rag_target)

    final_conversation = estimate_tokens(trimmed_history)
    final_rag = estimate_tokens(trimmed_rag)
    return ContextBudget(
        context=join_context(trimmed_history, trimmed_rag),
        conversation_tokens=final_conversation,
        rag_tokens=final_rag,
        total_tokens=final_conversation + final_rag,
        trimmed=True,
    )
