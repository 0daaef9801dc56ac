import uuid

from sqlalchemy import Column, ForeignKey, Numeric, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from whatsflow.database import Base


class EscalatedConversation(Base):
    __tablename__ = "escalated_conversations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("whatsapp_conversations.id"), nullable=False)
    whatsapp_instance_id = Column(UUID(as_uuid=True), ForeignKey("whatsapp_instances.id"), nullable=False)
    user_phone = Column(Text, nullable=False)
    reason = Column(Text, nullable=False)  # keyword, ai_detected_intent, low_quality
    quality_score = Column(Numeric(5, 3))
    escalated_at = Column(TIMESTAMP(timezone=True), nullable=False)
    resolved_at = Column(TIMESTAMP(timezone=True))
