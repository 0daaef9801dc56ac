from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from whatsflow.config import settings
from whatsflow.logging_config import bind_logger, get_logger
from whatsflow.models import AIConfig, BufferedMessage, Conversation
from whatsflow.services.buffer_state import BufferStatus, transition
from whatsflow.services.debug_log_service import log_debug

logger = get_logger("batch_service")

BATCH_JOINER = "\n\n"
DEBUG_CATEGORY = "batch_processing"


@dataclass
class BatchPayload:
    """One claimed batch, forwarded to the response pipeline."""

    batch_id: uuid.UUID
    conversation_id: uuid.UUID
    instance_id: uuid.UUID
    user_phone: str
    message_content: str
    message_type: str
    media_url: Optional[str]
    messages: list[dict] = field(default_factory=list)

    @property
    def is_single(self) -> bool:
        return len(self.messages) == 1

    @property
    def message_ids(self) -> list[str]:
        return [m["message_id"] for m in self.messages if m.get("message_id")]

    def to_dict(self) -> dict[str, Any]:
        base = {
            "batch_id": str(self.batch_id),
            "conversation_id": str(self.conversation_id),
            "instance_id": str(self.instance_id),
            "user_phone": self.user_phone,
            "message_content": self.message_content,
            "message_type": self.message_type,
            "media_url": self.media_url,
        }
        if self.is_single:
            return {**base, "single_message": True, "message_id": self.messages[0].get("message_id")}
        return {
            **base,
            "batched_messages": True,
            "message_ids": [str(m["id"]) for m in self.messages],
            "individual_messages": [
                {
                    "id": str(m["id"]),
                    "message_id": m.get("message_id"),
                    "content": m["content"],
                    "type": m["type"],
                    "media_url": m.get("media_url"),
                    "received_at": m["received_at"].isoformat() if m.get("received_at") else None,
                }
                for m in self.messages
            ],
        }


@dataclass
class SweepResult:
    batches: int = 0
    messages: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"batches": self.batches, "messages": self.messages, "skipped": self.skipped, "failed": self.failed}


BatchProcessor = Callable[[Session, BatchPayload], Awaitable[Any]]


def enqueue_buffered_message(
    db: Session,
    *,
    conversation: Conversation,
    user_phone: str,
    message_text: str,
    message_type: str = "text",
    media_url: Optional[str] = None,
    message_id: Optional[str] = None,
) -> BufferedMessage:
    buffered = BufferedMessage(
        conversation_id=conversation.id,
        instance_id=conversation.instance_id,
        user_phone=user_phone,
        message_text=message_text,
        message_type=message_type,
        media_url=media_url,
        message_id=message_id,
        received_at=datetime.now(timezone.utc),
        status=BufferStatus.PENDING.value,
    )
    db.add(buffered)
    db.flush()
    return buffered


def list_pending_groups(db: Session) -> list[dict[str, Any]]:
    """Unclaimed pending messages grouped by conversation, oldest group first."""
    return (
        db.execute(
            text(
                """
                SELECT conversation_id, user_phone, instance_id, MIN(received_at) AS oldest
                FROM whatsapp_message_buffer
                WHERE status = 'pending'
                  AND batch_id IS NULL
                GROUP BY conversation_id, user_phone, instance_id
                ORDER BY oldest
                """
            )
        )
        .mappings()
        .all()
    )


def claim_batch(
    db: Session,
    *,
    conversation_id,
    user_phone: str,
    instance_id,
    batch_id: uuid.UUID,
    limit: int,
) -> list[dict[str, Any]]:
    """Tag up to `limit` oldest pending rows with batch_id.

    The UPDATE only touches rows still unclaimed at update time, so two
    concurrent sweeps can never both own a row. Returns the rows this call won.
    """
    rows = (
        db.execute(
            text(
                """
                WITH cte AS (
                    SELECT id
                    FROM whatsapp_message_buffer
                    WHERE conversation_id = :conversation_id
                      AND user_phone = :user_phone
                      AND instance_id = :instance_id
                      AND status = 'pending'
                      AND batch_id IS NULL
                    ORDER BY received_at, id
                    LIMIT :limit
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE whatsapp_message_buffer
                SET batch_id = :batch_id
                FROM cte
                WHERE whatsapp_message_buffer.id = cte.id
                  AND whatsapp_message_buffer.batch_id IS NULL
                  AND whatsapp_message_buffer.status = 'pending'
                RETURNING whatsapp_message_buffer.id,
                          whatsapp_message_buffer.message_text,
                          whatsapp_message_buffer.message_type,
                          whatsapp_message_buffer.media_url,
                          whatsapp_message_buffer.message_id,
                          whatsapp_message_buffer.received_at
                """
            ),
            {
                "conversation_id": conversation_id,
                "user_phone": user_phone,
                "instance_id": instance_id,
                "batch_id": batch_id,
                "limit": limit,
            },
        )
        .mappings()
        .all()
    )
    db.commit()
    return sorted(rows, key=lambda r: (r["received_at"], str(r["id"])))


def finish_batch(db: Session, batch_id: uuid.UUID, target: BufferStatus) -> int:
    """Move every row of a batch from pending to a terminal status."""
    status = transition(BufferStatus.PENDING, target)
    result = db.execute(
        text(
            """
            UPDATE whatsapp_message_buffer
            SET status = :status,
                processed_at = NOW()
            WHERE batch_id = :batch_id
              AND status = 'pending'
            """
        ),
        {"batch_id": batch_id, "status": status.value},
    )
    db.commit()
    return result.rowcount


def has_active_ai_config(db: Session, instance_id) -> bool:
    config = (
        db.query(AIConfig)
        .filter(AIConfig.whatsapp_instance_id == instance_id, AIConfig.is_active.is_(True))
        .first()
    )
    return config is not None


def build_batch_payload(batch_id: uuid.UUID, group: dict[str, Any], rows: list[dict[str, Any]]) -> BatchPayload:
    messages = [
        {
            "id": row["id"],
            "message_id": row["message_id"],
            "content": row["message_text"],
            "type": row["message_type"] or "text",
            "media_url": row["media_url"],
            "received_at": row["received_at"],
        }
        for row in rows
    ]
    if len(messages) == 1:
        content = messages[0]["content"]
        message_type = messages[0]["type"]
        media_url = messages[0]["media_url"]
    else:
        content = BATCH_JOINER.join(m["content"] for m in messages if m["content"])
        message_type = "batched_text"
        media_url = next((m["media_url"] for m in messages if m["media_url"]), None)

    return BatchPayload(
        batch_id=batch_id,
        conversation_id=group["conversation_id"],
        instance_id=group["instance_id"],
        user_phone=group["user_phone"],
        message_content=content,
        message_type=message_type,
        media_url=media_url,
        messages=messages,
    )


async def process_message_batches(
    db: Session,
    processor: BatchProcessor,
    *,
    max_batch_size: Optional[int] = None,
) -> SweepResult:
    """One sweep: claim, forward and close every pending conversation batch."""
    limit = max_batch_size or settings.max_batch_size
    result = SweepResult()

    groups = list_pending_groups(db)
    log_debug(DEBUG_CATEGORY, "Batch sweep started", {"groups": len(groups)})

    for group in groups:
        batch_id = uuid.uuid4()
        batch_logger = bind_logger("batch_service", batch_id=str(batch_id), conversation_id=str(group["conversation_id"]))

        rows = claim_batch(
            db,
            conversation_id=group["conversation_id"],
            user_phone=group["user_phone"],
            instance_id=group["instance_id"],
            batch_id=batch_id,
            limit=limit,
        )
        if not rows:
            # Another sweep won every row of this group.
            continue

        if not has_active_ai_config(db, group["instance_id"]):
            finish_batch(db, batch_id, BufferStatus.SKIPPED)
            result.skipped += len(rows)
            batch_logger.info("Batch skipped: no active AI config", context={"messages": len(rows)})
            log_debug(DEBUG_CATEGORY, "Batch skipped: no active AI config", {"batch_id": batch_id, "messages": len(rows)})
            continue

        payload = build_batch_payload(batch_id, group, rows)
        result.batches += 1
        result.messages += len(rows)
        batch_logger.info("Batch claimed", context={"messages": len(rows), "single": payload.is_single})
        log_debug(DEBUG_CATEGORY, "Batch claimed", payload.to_dict())

        try:
            await processor(db, payload)
        except Exception as exc:
            result.failed += 1
            db.rollback()
            batch_logger.error("Batch processing failed", context={"error": str(exc)}, exc_info=True)
            log_debug(DEBUG_CATEGORY, "Batch processing failed", {"batch_id": batch_id, "error": str(exc)})
        finally:
            # Terminal either way: a failed attempt is not re-queued.
            finish_batch(db, batch_id, BufferStatus.PROCESSED)

    log_debug(DEBUG_CATEGORY, "Batch sweep finished", result.as_dict())
    return result
