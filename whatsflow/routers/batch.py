from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from whatsflow.database import get_db
from whatsflow.logging_config import get_logger
from whatsflow.schemas.webhook import BatchSweepResponse
from whatsflow.services.batch_service import process_message_batches
from whatsflow.services.pipeline_service import process_batch

logger = get_logger("batch")

router = APIRouter()


@router.post("/batches/process", response_model=BatchSweepResponse)
async def run_batch_sweep(db: Session = Depends(get_db)):
    """Claim and answer every pending conversation batch once."""
    try:
        result = await process_message_batches(db, process_batch)
    except Exception as exc:
        db.rollback()
        logger.error("Batch sweep failed", extra={"context": {"error": str(exc)}}, exc_info=True)
        return BatchSweepResponse(status="error", message=str(exc))
    if result.batches == 0 and result.skipped == 0:
        message = "No pending messages"
    else:
        message = f"Processed {result.batches} batches ({result.messages} messages)"
    logger.info("Batch sweep completed", extra={"context": result.as_dict()})
    return BatchSweepResponse(status="success", message=message, **result.as_dict())
