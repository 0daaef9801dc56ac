from whatsflow.schemas.external_action import (
    ActionResponseRequest,
    ActionResponseResult,
    TimeoutSweepResponse,
)
from whatsflow.schemas.webhook import BatchSweepResponse, WebhookResponse

__all__ = [
    "WebhookResponse",
    "BatchSweepResponse",
    "ActionResponseRequest",
    "ActionResponseResult",
    "TimeoutSweepResponse",
]
