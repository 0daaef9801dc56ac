import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Numeric, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from whatsflow.database import Base


class WhatsAppInstance(Base):
    __tablename__ = "whatsapp_instances"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    instance_name = Column(Text, nullable=False, unique=True)
    status = Column(Text, nullable=False, default="connected")
    escalation_enabled = Column(Boolean, nullable=False, default=False)
    keyword_escalation_enabled = Column(Boolean, nullable=False, default=True)
    smart_escalation_enabled = Column(Boolean, nullable=False, default=True)
    escalation_keywords = Column(JSONB, nullable=False, default=list)
    escalation_number = Column(Text)
    escalation_message = Column(Text)
    escalated_conversation_message = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    ai_config = relationship("AIConfig", back_populates="instance", uselist=False)


class AIConfig(Base):
    __tablename__ = "whatsapp_ai_config"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    whatsapp_instance_id = Column(UUID(as_uuid=True), ForeignKey("whatsapp_instances.id"), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    system_prompt = Column(Text)
    model = Column(Text)
    temperature = Column(Numeric(3, 2))
    industry = Column(Text)  # tech, sales, medical, education, entertainment, finance
    business_terms = Column(JSONB, nullable=False, default=list)
    data_collection_fields = Column(JSONB, nullable=False, default=list)
    no_knowledge_message = Column(Text)
    quota_exceeded_message = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    instance = relationship("WhatsAppInstance", back_populates="ai_config")


class KnowledgeFile(Base):
    __tablename__ = "whatsapp_file_mappings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    whatsapp_instance_id = Column(UUID(as_uuid=True), ForeignKey("whatsapp_instances.id"), nullable=False)
    file_id = Column(UUID(as_uuid=True), nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
