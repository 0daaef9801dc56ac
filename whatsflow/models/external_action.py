import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Numeric, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from whatsflow.database import Base


class ExternalAction(Base):
    __tablename__ = "external_actions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    whatsapp_instance_id = Column(UUID(as_uuid=True), ForeignKey("whatsapp_instances.id"), nullable=False)
    action_name = Column(Text, nullable=False)
    display_name = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    trigger_phrases = Column(JSONB, nullable=False, default=list)
    variable_patterns = Column(JSONB, nullable=False, default=dict)  # name -> regex
    confidence_threshold = Column(Numeric(3, 2), nullable=False, default=0.7)
    webhook_url = Column(Text, nullable=False)
    http_method = Column(Text, nullable=False, default="POST")
    headers = Column(JSONB, nullable=False, default=dict)
    payload_template = Column(JSONB, nullable=False, default=dict)
    retry_attempts = Column(Integer, nullable=False, default=3)
    timeout_seconds = Column(Integer, nullable=False, default=30)
    response_type = Column(Text, nullable=False, default="none")  # none, simple_confirmation, custom_message, wait_for_webhook
    response_timeout_seconds = Column(Integer, nullable=False, default=300)
    confirmation_message = Column(Text)
    timeout_message = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())


class ExternalActionLog(Base):
    __tablename__ = "external_action_logs"

    id = Column(UUID(as_uuid=True), primary_key=True)  # execution id, generated before dispatch
    external_action_id = Column(UUID(as_uuid=True), ForeignKey("external_actions.id"), nullable=False)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("whatsapp_conversations.id"))
    message_id = Column(UUID(as_uuid=True), ForeignKey("whatsapp_conversation_messages.id"))
    intent_confidence = Column(Numeric(5, 3))
    extracted_variables = Column(JSONB, nullable=False, default=dict)
    webhook_payload = Column(JSONB)
    webhook_response = Column(JSONB)
    http_status_code = Column(Integer)
    execution_status = Column(Text, nullable=False)  # success, failed
    error_message = Column(Text)
    execution_time_ms = Column(Integer)
    retry_count = Column(Integer, nullable=False, default=0)
    executed_at = Column(TIMESTAMP(timezone=True), nullable=False)


class ExternalActionResponse(Base):
    __tablename__ = "external_action_responses"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    execution_log_id = Column(UUID(as_uuid=True), ForeignKey("external_action_logs.id"), nullable=False, unique=True)
    external_action_id = Column(UUID(as_uuid=True), ForeignKey("external_actions.id"), nullable=False)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("whatsapp_conversations.id"), nullable=False)
    instance_name = Column(Text, nullable=False)
    user_phone = Column(Text, nullable=False)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=False)
    response_received = Column(Boolean, nullable=False, default=False)
    response_message = Column(Text)
    response_data = Column(JSONB)
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, RECEIVED, TIMEOUT_EXPIRED
    received_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
