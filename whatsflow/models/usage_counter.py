from sqlalchemy import Column, Integer
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from whatsflow.database import Base


class UsageCounter(Base):
    __tablename__ = "usage_counters"

    tenant_id = Column(UUID(as_uuid=True), primary_key=True)
    monthly_limit = Column(Integer, nullable=False, default=100)
    used = Column(Integer, nullable=False, default=0)
    resets_on = Column(TIMESTAMP(timezone=True), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
