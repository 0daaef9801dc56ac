from typing import Any, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field


class ActionResponseRequest(BaseModel):
    execution_id: UUID = Field(validation_alias=AliasChoices("execution_id", "execution_log_id", "executionId"))
    result: Optional[Any] = Field(
        default=None,
        validation_alias=AliasChoices("result", "response_data", "responseData"),
    )
    response_message: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("response_message", "responseMessage"),
    )
    status: Optional[str] = None


class ActionResponseResult(BaseModel):
    success: bool
    execution_id: UUID
    message_sent: bool
    error: Optional[str] = None


class TimeoutSweepResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
