import uuid

from sqlalchemy import BigInteger, Boolean, Column, ForeignKey, Identity, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from whatsflow.database import Base


class Message(Base):
    __tablename__ = "whatsapp_conversation_messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("whatsapp_conversations.id"), nullable=False)
    role = Column(Text, nullable=False)  # user, assistant
    content = Column(Text, nullable=False)
    message_id = Column(Text)  # provider message id
    message_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    processed = Column(Boolean, nullable=False, default=False)
    timestamp = Column(TIMESTAMP(timezone=True), nullable=False)
    # Insertion order; breaks ties between equal timestamps.
    sequence = Column(BigInteger, Identity(), nullable=False, unique=True)

    conversation = relationship("Conversation", back_populates="messages")
