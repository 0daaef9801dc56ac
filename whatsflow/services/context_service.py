from dataclasses import dataclass, field
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from whatsflow.logging_config import get_logger
from whatsflow.services.conversation_service import HISTORY_LIMIT, get_recent_messages
from whatsflow.services.knowledge_service import format_knowledge_context
from whatsflow.services.token_budget import (
    DEFAULT_MAX_CONTEXT_TOKENS,
    HISTORY_SEPARATOR,
    MAX_CONVERSATION_TOKENS,
    balance_context_tokens,
    trim_history,
)

logger = get_logger("context_service")

SHORT_MESSAGE_WORDS = 3
LAST_MESSAGE_MARKER = "[LAST MESSAGE]"
PREVIOUS_MARKER = "[PREVIOUS]"
SHORT_REPLY_HINT = (
    "NOTE: The user's new message is very short. It is most likely a direct reply to the "
    f"{LAST_MESSAGE_MARKER} above, so interpret it in that context."
)


@dataclass
class AssembledContext:
    context: str
    conversation_tokens: int
    rag_tokens: int
    total_tokens: int
    search_result_count: int = 0
    history_lines: List[str] = field(default_factory=list)

    def token_counts(self) -> dict:
        return {
            "conversation": self.conversation_tokens,
            "rag": self.rag_tokens,
            "total": self.total_tokens,
        }


def is_short_message(text: str | None) -> bool:
    return len((text or "").split()) <= SHORT_MESSAGE_WORDS


def format_history_lines(messages: Iterable) -> List[str]:
    """Render chronological messages as ROLE: content lines, marking the last two."""
    lines = [f"{(m.role or 'user').upper()}: {m.content}" for m in messages if m.content]
    if len(lines) >= 2:
        lines[-2] = f"{PREVIOUS_MARKER} {lines[-2]}"
    if lines:
        lines[-1] = f"{LAST_MESSAGE_MARKER} {lines[-1]}"
    return lines


def build_conversation_history(
    db: Session,
    conversation_id: Optional[UUID],
    query: str,
    exclude_message_ids: Optional[Iterable[str]] = None,
    max_tokens: int = MAX_CONVERSATION_TOKENS,
) -> List[str]:
    if not conversation_id:
        return []

    excluded = set(exclude_message_ids or [])
    try:
        recent = get_recent_messages(db, conversation_id, limit=HISTORY_LIMIT + len(excluded))
    except Exception as exc:
        logger.warning(
            "History fetch failed, continuing without history",
            extra={"context": {"conversation_id": str(conversation_id), "error": str(exc)}},
        )
        return []

    # Messages of the batch being answered are the question, not history.
    recent = [m for m in recent if not (m.message_id and m.message_id in excluded)][:HISTORY_LIMIT]
    lines = format_history_lines(reversed(recent))
    if lines and is_short_message(query):
        lines.append(SHORT_REPLY_HINT)

    history = trim_history(HISTORY_SEPARATOR.join(lines), max_tokens)
    return history.split(HISTORY_SEPARATOR) if history else []


def assemble_context(
    db: Session,
    conversation_id: Optional[UUID],
    query: str,
    search_results: List[dict],
    max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS,
    exclude_message_ids: Optional[Iterable[str]] = None,
) -> AssembledContext:
    """Build the budgeted prompt context from history and retrieved passages."""
    history_lines = build_conversation_history(db, conversation_id, query, exclude_message_ids)
    rag_content = format_knowledge_context(search_results)

    budget = balance_context_tokens(HISTORY_SEPARATOR.join(history_lines), rag_content, max_context_tokens)

    logger.info(
        "Context assembled",
        extra={
            "context": {
                "conversation_id": str(conversation_id) if conversation_id else None,
                "history_lines": len(history_lines),
                "search_results": len(search_results),
                **budget.as_dict(),
            }
        },
    )

    return AssembledContext(
        context=budget.context,
        conversation_tokens=budget.conversation_tokens,
        rag_tokens=budget.rag_tokens,
        total_tokens=budget.total_tokens,
        search_result_count=len(search_results),
        history_lines=history_lines,
    )
