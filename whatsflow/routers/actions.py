from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from whatsflow.database import get_db
from whatsflow.logging_config import get_logger
from whatsflow.schemas.external_action import ActionResponseRequest, ActionResponseResult, TimeoutSweepResponse
from whatsflow.services.action_response_service import (
    ActionResponseError,
    handle_action_response,
    process_expired_responses,
)

logger = get_logger("actions")

router = APIRouter(prefix="/external-actions")


@router.post("/response", response_model=ActionResponseResult)
async def receive_action_response(request: ActionResponseRequest, db: Session = Depends(get_db)):
    """Asynchronous answer from a business system for a wait_for_webhook action."""
    try:
        result = await handle_action_response(
            db,
            request.execution_id,
            response_message=request.response_message,
            response_data=request.result,
            status=request.status,
        )
    except ActionResponseError as e:
        logger.info(
            "Action response rejected",
            extra={"context": {"execution_id": str(request.execution_id), "status": e.status_code}},
        )
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return ActionResponseResult(**result)


@router.post("/timeouts", response_model=TimeoutSweepResponse)
async def sweep_action_timeouts(db: Session = Depends(get_db)):
    return TimeoutSweepResponse(**await process_expired_responses(db))
