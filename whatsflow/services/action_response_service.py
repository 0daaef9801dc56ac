import json
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from whatsflow.logging_config import get_logger
from whatsflow.models import Conversation, ExternalAction, ExternalActionResponse
from whatsflow.services.conversation_service import save_message
from whatsflow.services.whatsapp_service import send_whatsapp_message

logger = get_logger("action_response_service")

DEFAULT_RESPONSE_MESSAGE = "تم استلام الرد على طلبك ✅"
DEFAULT_TIMEOUT_MESSAGE = "We're still working on your request. We'll get back to you as soon as possible."
TIMEOUT_BATCH_LIMIT = 50

STATUS_PENDING = "PENDING"
STATUS_RECEIVED = "RECEIVED"
STATUS_TIMEOUT_EXPIRED = "TIMEOUT_EXPIRED"

MESSAGE_KEYS = ("response_message", "message", "text", "response")


class ActionResponseError(Exception):
    def __init__(self, message: str, status_code: int):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def derive_response_message(response_message: Optional[str], response_data: Any) -> str:
    """Pick the text to relay: explicit message, then a message-like key, then the default."""
    if response_message and response_message.strip():
        return response_message.strip()
    if isinstance(response_data, str) and response_data.strip():
        return response_data.strip()
    if isinstance(response_data, dict):
        for key in MESSAGE_KEYS:
            value = response_data.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return DEFAULT_RESPONSE_MESSAGE


def _claim_pending_response(db: Session, execution_id, message: str, response_data: Any) -> Optional[dict]:
    """Flip a live pending response to RECEIVED; only one caller can win."""
    return (
        db.execute(
            text(
                """
                UPDATE external_action_responses
                SET response_received = TRUE,
                    status = :status,
                    response_message = :message,
                    response_data = CAST(:response_data AS JSONB),
                    received_at = NOW()
                WHERE execution_log_id = :execution_id
                  AND response_received = FALSE
                  AND expires_at > NOW()
                RETURNING id, conversation_id, instance_name, user_phone, external_action_id
                """
            ),
            {
                "execution_id": execution_id,
                "status": STATUS_RECEIVED,
                "message": message,
                "response_data": json.dumps(response_data, default=str) if response_data is not None else None,
            },
        )
        .mappings()
        .first()
    )


def _rejection_for(db: Session, execution_id) -> ActionResponseError:
    pending = (
        db.query(ExternalActionResponse).filter(ExternalActionResponse.execution_log_id == execution_id).first()
    )
    if pending is None:
        return ActionResponseError("No pending response for this execution", 404)
    if pending.response_received:
        return ActionResponseError("Response already received", 409)
    return ActionResponseError("Response window has expired", 408)


def _record_assistant_message(db: Session, conversation_id, content: str, metadata: dict) -> None:
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if conversation is None:
        logger.warning(
            "Conversation missing for action response",
            extra={"context": {"conversation_id": str(conversation_id)}},
        )
        return
    save_message(db, conversation, role="assistant", content=content, message_metadata=metadata, processed=True)


async def handle_action_response(
    db: Session,
    execution_id,
    *,
    response_message: Optional[str] = None,
    response_data: Any = None,
    status: Optional[str] = None,
) -> dict:
    """Relay an asynchronous business answer to the customer.

    Raises ActionResponseError with 404 (unknown execution), 409 (already
    answered) or 408 (window expired).
    """
    message = derive_response_message(response_message, response_data)
    claimed = _claim_pending_response(db, execution_id, message, response_data)
    if claimed is None:
        db.rollback()
        raise _rejection_for(db, execution_id)

    send = await send_whatsapp_message(claimed["instance_name"], claimed["user_phone"], message)
    _record_assistant_message(
        db,
        claimed["conversation_id"],
        message,
        {
            "source": "external_action_response",
            "execution_id": str(execution_id),
            "status": status or "success",
            "delivered": send.ok,
        },
    )
    db.commit()

    logger.info(
        "Action response relayed",
        extra={"context": {"execution_id": str(execution_id), **send.log_context()}},
    )
    return {
        "success": True,
        "execution_id": str(execution_id),
        "message_sent": send.ok,
        "error": send.error,
    }


def claim_expired_responses(db: Session, limit: int = TIMEOUT_BATCH_LIMIT) -> list[dict]:
    rows = (
        db.execute(
            text(
                """
                WITH cte AS (
                    SELECT id
                    FROM external_action_responses
                    WHERE response_received = FALSE
                      AND status = 'PENDING'
                      AND expires_at <= NOW()
                    ORDER BY expires_at
                    LIMIT :limit
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE external_action_responses
                SET response_received = TRUE,
                    status = :status,
                    received_at = NOW()
                FROM cte
                WHERE external_action_responses.id = cte.id
                RETURNING external_action_responses.id,
                          external_action_responses.execution_log_id,
                          external_action_responses.external_action_id,
                          external_action_responses.conversation_id,
                          external_action_responses.instance_name,
                          external_action_responses.user_phone
                """
            ),
            {"limit": limit, "status": STATUS_TIMEOUT_EXPIRED},
        )
        .mappings()
        .all()
    )
    db.commit()
    return rows


async def process_expired_responses(db: Session, limit: int = TIMEOUT_BATCH_LIMIT) -> dict:
    """Expire overdue pending responses and send each customer the action's timeout message."""
    rows = claim_expired_responses(db, limit=limit)
    succeeded = 0
    failed = 0

    for row in rows:
        try:
            action = db.query(ExternalAction).filter(ExternalAction.id == row["external_action_id"]).first()
            message = (action.timeout_message if action is not None else None) or DEFAULT_TIMEOUT_MESSAGE
            send = await send_whatsapp_message(row["instance_name"], row["user_phone"], message)
            _record_assistant_message(
                db,
                row["conversation_id"],
                message,
                {
                    "source": "external_action_timeout",
                    "execution_id": str(row["execution_log_id"]),
                    "delivered": send.ok,
                },
            )
            db.commit()
            if send.ok:
                succeeded += 1
            else:
                failed += 1
                logger.warning(
                    "Timeout message not delivered",
                    extra={"context": {"execution_id": str(row["execution_log_id"]), **send.log_context()}},
                )
        except Exception as exc:
            db.rollback()
            failed += 1
            logger.error(
                "Timeout handling failed",
                extra={"context": {"execution_id": str(row["execution_log_id"]), "error": str(exc)}},
                exc_info=True,
            )

    if rows:
        logger.info(
            "Expired action responses processed",
            extra={"context": {"processed": len(rows), "succeeded": succeeded, "failed": failed}},
        )
    return {"processed": len(rows), "succeeded": succeeded, "failed": failed}
