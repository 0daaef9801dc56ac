import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from whatsflow.database import Base


class BufferedMessage(Base):
    __tablename__ = "whatsapp_message_buffer"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("whatsapp_conversations.id"), nullable=False)
    instance_id = Column(UUID(as_uuid=True), ForeignKey("whatsapp_instances.id"), nullable=False)
    user_phone = Column(Text, nullable=False)
    message_text = Column(Text, nullable=False)
    message_type = Column(Text, nullable=False, default="text")
    media_url = Column(Text)
    message_id = Column(Text)
    received_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    batch_id = Column(UUID(as_uuid=True))  # claim token, set once
    status = Column(Text, nullable=False, default="pending")  # pending, processed, skipped
    processed_at = Column(TIMESTAMP(timezone=True))
