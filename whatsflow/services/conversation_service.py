from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from whatsflow.config import settings
from whatsflow.logging_config import get_logger
from whatsflow.models import Conversation, Message, WhatsAppInstance

logger = get_logger("conversation_service")

HISTORY_LIMIT = 10


def normalize_phone(remote_jid: str | None) -> str:
    """Strip the WhatsApp JID suffix: 15551234567@s.whatsapp.net -> 15551234567."""
    if not remote_jid:
        return ""
    return remote_jid.split("@", 1)[0].strip()


def get_instance_by_name(db: Session, instance_name: str) -> Optional[WhatsAppInstance]:
    if not instance_name:
        return None
    return db.query(WhatsAppInstance).filter(WhatsAppInstance.instance_name == instance_name).first()


def _is_expired(conversation: Conversation, now: datetime) -> bool:
    if not conversation.last_message_at:
        return False
    return now - conversation.last_message_at > timedelta(hours=settings.conversation_inactivity_hours)


def get_or_create_conversation(db: Session, instance_id: UUID, user_phone: str) -> Conversation:
    """Find the active conversation for (instance, phone) or start a new one.

    A conversation idle past the inactivity window is closed first.
    """
    now = datetime.now(timezone.utc)
    conversation = (
        db.query(Conversation)
        .filter(
            Conversation.instance_id == instance_id,
            Conversation.user_phone == user_phone,
            Conversation.status == "active",
        )
        .first()
    )

    if conversation and _is_expired(conversation, now):
        logger.info(
            "Conversation expired after inactivity",
            extra={"context": {"conversation_id": str(conversation.id), "user_phone": user_phone}},
        )
        conversation.status = "closed"
        conversation = None

    if not conversation:
        conversation = Conversation(
            instance_id=instance_id,
            user_phone=user_phone,
            status="active",
            started_at=now,
            last_message_at=now,
            conversation_data={},
        )
        db.add(conversation)
        db.flush()

    return conversation


def save_message(
    db: Session,
    conversation: Conversation,
    role: str,
    content: str,
    message_id: Optional[str] = None,
    message_metadata: Optional[dict] = None,
    processed: bool = False,
) -> Message:
    """Append a message and bump the conversation's activity timestamp."""
    now = datetime.now(timezone.utc)
    message = Message(
        conversation_id=conversation.id,
        role=role,
        content=content,
        message_id=message_id,
        message_metadata=message_metadata or {},
        processed=processed,
        timestamp=now,
    )
    db.add(message)
    conversation.last_message_at = now
    db.flush()
    return message


def is_duplicate_message(db: Session, conversation_id: UUID, message_id: Optional[str]) -> bool:
    if not message_id:
        return False
    return find_message_by_provider_id(db, conversation_id, message_id) is not None


def get_recent_messages(db: Session, conversation_id: UUID, limit: int = HISTORY_LIMIT) -> List[Message]:
    """Newest messages first."""
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.timestamp.desc(), Message.sequence.desc())
        .limit(limit)
        .all()
    )


def find_message_by_provider_id(db: Session, conversation_id: UUID, message_id: str) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id, Message.message_id == message_id)
        .first()
    )


def mark_messages_processed(db: Session, conversation_id: UUID, message_ids: List[str]) -> int:
    if not message_ids:
        return 0
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id, Message.message_id.in_(message_ids))
        .update({Message.processed: True}, synchronize_session=False)
    )


def is_escalated(conversation: Conversation) -> bool:
    return bool((conversation.conversation_data or {}).get("escalated"))


def mark_escalated(conversation: Conversation, reason: str) -> None:
    data = dict(conversation.conversation_data or {})
    data["escalated"] = True
    data["escalation_reason"] = reason
    data["escalated_at"] = datetime.now(timezone.utc).isoformat()
    conversation.conversation_data = data
