from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    success: bool
    message: str
    aiProcessed: Optional[bool] = None
    conversation_id: Optional[UUID] = None


class BatchSweepResponse(BaseModel):
    status: str
    message: str
    batches: int = 0
    messages: int = 0
    skipped: int = 0
    failed: int = 0
