from sqlalchemy import BigInteger, Column, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.sql import func

from whatsflow.database import Base


class WebhookDebugLog(Base):
    __tablename__ = "webhook_debug_logs"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    category = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSONB)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
