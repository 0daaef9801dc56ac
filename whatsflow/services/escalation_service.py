from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from whatsflow.logging_config import get_logger
from whatsflow.models import Conversation, EscalatedConversation, Message, WhatsAppInstance
from whatsflow.services.conversation_service import get_recent_messages, mark_escalated, save_message
from whatsflow.services.whatsapp_service import send_whatsapp_message

logger = get_logger("escalation_service")

DEFAULT_ESCALATION_MESSAGE = (
    "Your conversation has been transferred to our specialized support team. "
    "One of our representatives will contact you shortly."
)
DEFAULT_ESCALATED_CONVERSATION_MESSAGE = (
    "Your conversation is under review by our support team. We will contact you soon."
)
ESCALATED_REPLY_COOLDOWN = timedelta(minutes=5)
NOTIFICATION_CONTEXT_MESSAGES = 5

REASON_LABELS = {
    "keyword": "Escalation keyword",
    "ai_detected_intent": "Customer asked for a human",
    "low_quality": "Low answer confidence",
}


def format_escalation_notification(
    user_phone: str,
    reason: str,
    message: str,
    recent: List[Message],
    quality_score: Optional[float] = None,
) -> str:
    """Format the alert sent to the tenant's escalation number."""
    lines = [
        "🔔 New escalated conversation",
        f"Customer: +{user_phone}" if user_phone and not user_phone.startswith("+") else f"Customer: {user_phone}",
        f"Reason: {REASON_LABELS.get(reason, reason)}",
    ]
    if quality_score is not None:
        lines.append(f"Quality score: {quality_score:.2f}")
    lines.extend(["", "Message:", message or "-"])
    if recent:
        lines.extend(["", "Recent conversation:"])
        for item in reversed(recent):
            who = "Customer" if item.role == "user" else "Assistant"
            lines.append(f"{who}: {(item.content or '')[:200]}")
    return "\n".join(lines)


def create_escalation_record(
    db: Session,
    conversation: Conversation,
    instance: WhatsAppInstance,
    reason: str,
    quality_score: Optional[float] = None,
) -> EscalatedConversation:
    record = EscalatedConversation(
        conversation_id=conversation.id,
        whatsapp_instance_id=instance.id,
        user_phone=conversation.user_phone,
        reason=reason,
        quality_score=quality_score,
        escalated_at=datetime.now(timezone.utc),
    )
    db.add(record)
    mark_escalated(conversation, reason)
    db.flush()
    return record


async def notify_escalation_number(
    db: Session,
    instance: WhatsAppInstance,
    conversation: Conversation,
    reason: str,
    message: str,
    quality_score: Optional[float] = None,
) -> bool:
    if not instance.escalation_number:
        logger.warning(
            "No escalation number configured",
            extra={"context": {"instance": instance.instance_name}},
        )
        return False
    recent = get_recent_messages(db, conversation.id, limit=NOTIFICATION_CONTEXT_MESSAGES)
    text = format_escalation_notification(conversation.user_phone, reason, message, recent, quality_score)
    result = await send_whatsapp_message(instance.instance_name, instance.escalation_number, text)
    return result.ok


async def escalate_conversation(
    db: Session,
    instance: WhatsAppInstance,
    conversation: Conversation,
    reason: str,
    user_message: str,
    quality_score: Optional[float] = None,
) -> bool:
    """
    Full escalation flow:
    1. Record the escalation and flag the conversation
    2. Tell the customer they were handed over
    3. Alert the tenant's escalation number

    Returns whether the customer message was delivered. Never raises.
    """
    try:
        create_escalation_record(db, conversation, instance, reason, quality_score)
        reply = instance.escalation_message or DEFAULT_ESCALATION_MESSAGE
        save_message(
            db,
            conversation,
            role="assistant",
            content=reply,
            message_metadata={"source": "escalation", "reason": reason},
            processed=True,
        )
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.error(
            "Failed to record escalation",
            extra={"context": {"conversation_id": str(conversation.id), "reason": reason, "error": str(exc)}},
            exc_info=True,
        )
        return False

    sent = await send_whatsapp_message(instance.instance_name, conversation.user_phone, reply)

    try:
        notified = await notify_escalation_number(db, instance, conversation, reason, user_message, quality_score)
    except Exception as exc:
        notified = False
        logger.error(
            "Escalation notification failed",
            extra={"context": {"conversation_id": str(conversation.id), "error": str(exc)}},
        )

    logger.info(
        "Conversation escalated",
        extra={
            "context": {
                "conversation_id": str(conversation.id),
                "reason": reason,
                "quality_score": quality_score,
                "customer_notified": sent.ok,
                "escalation_number_notified": notified,
            }
        },
    )
    return sent.ok


def _recently_sent(db: Session, conversation_id, content: str, now: datetime) -> bool:
    for item in get_recent_messages(db, conversation_id, limit=NOTIFICATION_CONTEXT_MESSAGES):
        if item.role != "assistant" or item.content != content:
            continue
        if item.timestamp and now - item.timestamp < ESCALATED_REPLY_COOLDOWN:
            return True
    return False


async def reply_to_escalated_conversation(
    db: Session,
    instance: WhatsAppInstance,
    conversation: Conversation,
) -> bool:
    """Send the holding message to an already escalated conversation, at most once per cooldown."""
    reply = instance.escalated_conversation_message or DEFAULT_ESCALATED_CONVERSATION_MESSAGE
    now = datetime.now(timezone.utc)
    if _recently_sent(db, conversation.id, reply, now):
        logger.info(
            "Escalated reply suppressed, sent recently",
            extra={"context": {"conversation_id": str(conversation.id)}},
        )
        return False

    save_message(
        db,
        conversation,
        role="assistant",
        content=reply,
        message_metadata={"source": "escalated_conversation"},
        processed=True,
    )
    db.commit()
    sent = await send_whatsapp_message(instance.instance_name, conversation.user_phone, reply)
    return sent.ok
