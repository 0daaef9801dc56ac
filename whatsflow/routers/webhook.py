from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from starlette.requests import ClientDisconnect

from whatsflow.config import settings
from whatsflow.database import get_db
from whatsflow.logging_config import get_logger
from whatsflow.schemas.webhook import WebhookResponse
from whatsflow.services.batch_service import enqueue_buffered_message
from whatsflow.services.conversation_service import (
    get_instance_by_name,
    get_or_create_conversation,
    is_duplicate_message,
    normalize_phone,
    save_message,
)
from whatsflow.services.debug_log_service import log_debug
from whatsflow.services.webhook_normalizer import MESSAGES_UPSERT, extract_inbound_message, normalize_webhook_body

logger = get_logger("webhook")

router = APIRouter()

DEBUG_CATEGORY = "webhook"


def _get_request_webhook_secret(request: Request) -> str | None:
    header_secret = request.headers.get("X-Webhook-Secret")
    if header_secret:
        return header_secret.strip()
    query_secret = request.query_params.get("webhook_secret")
    if query_secret:
        return query_secret.strip()
    return None


def _check_webhook_secret(request: Request) -> None:
    if not settings.webhook_secret:
        return
    if _get_request_webhook_secret(request) != settings.webhook_secret:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid webhook secret")


async def _read_body(request: Request) -> Optional[bytes]:
    try:
        return await request.body()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during body read")
        return None


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(request: Request, db: Session = Depends(get_db)):
    """Evolution webhook with the instance named inside the payload."""
    _check_webhook_secret(request)
    return await _handle_webhook_body(request, db, instance_name=None)


@router.post("/webhook/{instance_name}", response_model=WebhookResponse)
async def handle_webhook_for_instance(instance_name: str, request: Request, db: Session = Depends(get_db)):
    """Evolution webhook with the instance named in the path."""
    _check_webhook_secret(request)
    return await _handle_webhook_body(request, db, instance_name=instance_name)


async def _handle_webhook_body(request: Request, db: Session, *, instance_name: Optional[str]) -> WebhookResponse:
    """Every outcome past the secret check is a 200 with a WebhookResponse."""
    try:
        return await _ingest_webhook_body(request, db, instance_name=instance_name)
    except Exception as exc:
        db.rollback()
        logger.error(
            "Webhook handling failed",
            extra={"context": {"instance": instance_name, "error": str(exc)}},
            exc_info=True,
        )
        return WebhookResponse(success=False, message="Failed to process webhook")


async def _ingest_webhook_body(request: Request, db: Session, *, instance_name: Optional[str]) -> WebhookResponse:
    raw = await _read_body(request)
    if raw is None:
        return WebhookResponse(success=True, message="Client disconnected")

    event = normalize_webhook_body(raw)
    log_debug(
        DEBUG_CATEGORY,
        "Webhook received",
        {
            "event": event.event,
            "instance": event.instance,
            "decoder": event.decoder,
            "shape": event.shape,
            "content_type": request.headers.get("content-type"),
        },
    )

    if event.is_parse_error:
        logger.warning(
            "Webhook payload could not be parsed",
            extra={"context": {"body_preview": raw[:200].decode("utf-8", "ignore")}},
        )
        return WebhookResponse(success=False, message="Invalid payload")

    if event.event != MESSAGES_UPSERT:
        return WebhookResponse(success=True, message="Event ignored")

    inbound = extract_inbound_message(event.data)
    if inbound is None or inbound.from_me or not inbound.text:
        return WebhookResponse(success=True, message="Event ignored")

    name = instance_name or event.instance
    instance = get_instance_by_name(db, name)
    if not instance:
        logger.warning("Webhook for unknown instance", extra={"context": {"instance": name}})
        log_debug(DEBUG_CATEGORY, "Instance not found", {"instance": name})
        return WebhookResponse(success=False, message="Instance not found")

    user_phone = normalize_phone(inbound.remote_jid)
    try:
        conversation = get_or_create_conversation(db, instance.id, user_phone)
        if is_duplicate_message(db, conversation.id, inbound.message_id):
            db.rollback()
            logger.info(
                "Duplicate message ignored",
                extra={"context": {"instance": name, "message_id": inbound.message_id}},
            )
            return WebhookResponse(success=True, message="Duplicate message", aiProcessed=False)

        save_message(
            db,
            conversation,
            role="user",
            content=inbound.text,
            message_id=inbound.message_id,
            message_metadata={
                "message_type": inbound.message_type,
                "media_url": inbound.media_url,
                "push_name": inbound.push_name,
            },
        )
        enqueue_buffered_message(
            db,
            conversation=conversation,
            user_phone=user_phone,
            message_text=inbound.text,
            message_type=inbound.message_type,
            media_url=inbound.media_url,
            message_id=inbound.message_id,
        )
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.error(
            "Failed to ingest webhook message",
            extra={"context": {"instance": name, "message_id": inbound.message_id, "error": str(exc)}},
            exc_info=True,
        )
        log_debug(DEBUG_CATEGORY, "Ingestion failed", {"instance": name, "error": str(exc)})
        return WebhookResponse(success=False, message="Failed to store message")

    logger.info(
        "Message buffered",
        extra={"context": {"instance": name, "conversation_id": str(conversation.id), "type": inbound.message_type}},
    )
    return WebhookResponse(
        success=True,
        message="Message received",
        aiProcessed=False,
        conversation_id=conversation.id,
    )
