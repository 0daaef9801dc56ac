"""Dispatch of tenant-configured business webhooks (external actions).

Each execution gets its id before dispatch, is retried with capped
exponential backoff and leaves exactly one log row behind, whatever the
outcome. Actions with `wait_for_webhook` responses also open a pending
response that the business system answers through the callback endpoint.
"""

import asyncio
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx
from sqlalchemy.orm import Session

from whatsflow.config import settings
from whatsflow.logging_config import bind_logger, get_logger
from whatsflow.models import Conversation, ExternalAction, ExternalActionLog, ExternalActionResponse
from whatsflow.services.conversation_service import find_message_by_provider_id
from whatsflow.services.template_service import find_placeholders, interpolate_string, interpolate_template

logger = get_logger("action_service")

SleepFunc = Callable[[float], Awaitable[Any]]

RESPONSE_NONE = "none"
RESPONSE_SIMPLE_CONFIRMATION = "simple_confirmation"
RESPONSE_CUSTOM_MESSAGE = "custom_message"
RESPONSE_WAIT_FOR_WEBHOOK = "wait_for_webhook"

BASE_BACKOFF_MS = 1000
MAX_BACKOFF_MS = 10000
BODY_METHODS = {"POST", "PUT", "PATCH"}

SUCCESS_TEXT_TOKENS = {
    "accepted",
    "ok",
    "success",
    "received",
    "processed",
    "done",
    "complete",
    "completed",
    "acknowledged",
    "ack",
}

DEFAULT_CONFIRMATION_MESSAGE = "تم تنفيذ طلبك بنجاح ✅"


class ActionConfigError(Exception):
    """Action is missing, inactive or not dispatchable."""


@dataclass
class ExecutionResult:
    execution_id: uuid.UUID
    success: bool
    http_status_code: Optional[int] = None
    response_data: Any = None
    error_message: Optional[str] = None
    execution_time_ms: int = 0
    retry_count: int = 0
    payload: Any = None
    awaiting_response: bool = False

    def as_dict(self) -> dict:
        return {
            "execution_id": str(self.execution_id),
            "success": self.success,
            "http_status_code": self.http_status_code,
            "response_data": self.response_data,
            "error_message": self.error_message,
            "execution_time_ms": self.execution_time_ms,
            "retry_count": self.retry_count,
            "awaiting_response": self.awaiting_response,
        }


def backoff_seconds(attempt: int) -> float:
    """Delay after a failed attempt: 1s, 2s, 4s, 8s, then 10s flat."""
    return min(BASE_BACKOFF_MS * (2**attempt), MAX_BACKOFF_MS) / 1000


def build_request_headers(action: ExternalAction) -> dict[str, str]:
    headers = {"Content-Type": "application/json", "User-Agent": settings.action_user_agent}
    for name, value in (action.headers or {}).items():
        headers[str(name)] = str(value)
    return headers


def build_response_url() -> str:
    return f"{settings.public_base_url.rstrip('/')}/external-actions/response"


def prepare_payload(action: ExternalAction, variables: dict, execution_id: uuid.UUID) -> Any:
    payload = interpolate_template(action.payload_template or {}, variables)
    unresolved = find_placeholders(payload)
    if unresolved:
        # Sent as-is; the business system sees the literal {{name}} tokens.
        logger.warning(
            "Action payload has unresolved placeholders",
            extra={"context": {"action": action.action_name, "placeholders": sorted(unresolved)}},
        )
    if action.response_type == RESPONSE_WAIT_FOR_WEBHOOK and isinstance(payload, dict):
        payload["_response_url"] = build_response_url()
        payload["_execution_id"] = str(execution_id)
    return payload


def interpret_response_body(body: str, status_code: int) -> Any:
    """JSON when possible; known plain-text acknowledgements count as success."""
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        pass

    token = body.strip().strip(".!\"'").lower()
    if 200 <= status_code < 300 and token in SUCCESS_TEXT_TOKENS:
        return {"message": body.strip(), "type": "plain_text_success"}
    return {"rawResponse": body[:1000], "parseError": "Response is not valid JSON", "type": "json_parse_error"}


async def dispatch_webhook(
    action: ExternalAction,
    payload: Any,
    *,
    execution_id: uuid.UUID,
    sleep_func: SleepFunc = asyncio.sleep,
) -> ExecutionResult:
    """Send the request, retrying non-2xx answers and transport errors."""
    method = (action.http_method or "POST").upper()
    max_retries = max(int(action.retry_attempts or 0), 0)
    timeout = float(action.timeout_seconds or 30)
    headers = build_request_headers(action)
    request_kwargs: dict[str, Any] = {"headers": headers, "timeout": timeout}
    if method in BODY_METHODS:
        request_kwargs["json"] = payload

    log = bind_logger("action_service", execution_id=str(execution_id), action=action.action_name)
    started = time.monotonic()
    status_code: Optional[int] = None
    response_data: Any = None
    error_message: Optional[str] = None
    attempt = 0

    async with httpx.AsyncClient() as client:
        for attempt in range(max_retries + 1):
            try:
                response = await client.request(method, action.webhook_url, **request_kwargs)
                status_code = response.status_code
                response_data = interpret_response_body(response.text, status_code)
                if 200 <= status_code < 300:
                    error_message = None
                    break
                error_message = f"HTTP {status_code}"
                log.warning("Action webhook returned error status", context={"attempt": attempt, "status": status_code})
            except httpx.TimeoutException:
                status_code = None
                error_message = f"Request timed out after {timeout}s"
                log.warning("Action webhook timed out", context={"attempt": attempt})
            except httpx.HTTPError as exc:
                status_code = None
                error_message = str(exc) or exc.__class__.__name__
                log.warning("Action webhook request failed", context={"attempt": attempt, "error": error_message})

            if attempt < max_retries:
                await sleep_func(backoff_seconds(attempt))

    success = status_code is not None and 200 <= status_code < 300
    return ExecutionResult(
        execution_id=execution_id,
        success=success,
        http_status_code=status_code,
        response_data=response_data,
        error_message=None if success else error_message,
        execution_time_ms=int((time.monotonic() - started) * 1000),
        retry_count=attempt,
        payload=payload,
    )


def _resolve_message_uuid(db: Session, conversation: Conversation, provider_message_id: Optional[str]):
    if not provider_message_id:
        return None
    message = None
    try:
        with db.begin_nested():
            message = find_message_by_provider_id(db, conversation.id, provider_message_id)
    except Exception as exc:
        logger.warning(
            "Could not resolve message for action log",
            extra={"context": {"message_id": provider_message_id, "error": str(exc)}},
        )
        return None
    return message.id if message is not None else None


def log_execution(
    db: Session,
    action: ExternalAction,
    result: ExecutionResult,
    *,
    conversation: Conversation,
    provider_message_id: Optional[str],
    intent_confidence: Optional[float],
    variables: dict,
) -> ExternalActionLog:
    row = ExternalActionLog(
        id=result.execution_id,
        external_action_id=action.id,
        conversation_id=conversation.id,
        message_id=_resolve_message_uuid(db, conversation, provider_message_id),
        intent_confidence=intent_confidence,
        extracted_variables=variables,
        webhook_payload=result.payload,
        webhook_response=result.response_data,
        http_status_code=result.http_status_code,
        execution_status="success" if result.success else "failed",
        error_message=result.error_message,
        execution_time_ms=result.execution_time_ms,
        retry_count=result.retry_count,
        executed_at=datetime.now(timezone.utc),
    )
    db.add(row)
    db.flush()
    return row


def open_pending_response(
    db: Session,
    action: ExternalAction,
    execution_id: uuid.UUID,
    *,
    conversation: Conversation,
    instance_name: str,
) -> ExternalActionResponse:
    pending = ExternalActionResponse(
        execution_log_id=execution_id,
        external_action_id=action.id,
        conversation_id=conversation.id,
        instance_name=instance_name,
        user_phone=conversation.user_phone,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=int(action.response_timeout_seconds or 300)),
        response_received=False,
        status="PENDING",
    )
    db.add(pending)
    db.flush()
    return pending


def confirmation_text(action: ExternalAction, variables: dict) -> Optional[str]:
    """Reply to send right after a successful execution, if any."""
    if action.response_type == RESPONSE_SIMPLE_CONFIRMATION:
        return action.confirmation_message or DEFAULT_CONFIRMATION_MESSAGE
    if action.response_type == RESPONSE_CUSTOM_MESSAGE:
        return interpolate_string(action.confirmation_message or DEFAULT_CONFIRMATION_MESSAGE, variables)
    return None


async def execute_external_action(
    db: Session,
    action: Optional[ExternalAction],
    variables: dict,
    *,
    conversation: Conversation,
    instance_name: str,
    provider_message_id: Optional[str] = None,
    intent_confidence: Optional[float] = None,
    sleep_func: SleepFunc = asyncio.sleep,
) -> ExecutionResult:
    """Run one action end to end and commit its log row.

    Raises ActionConfigError for a missing or inactive action. Delivery
    failures never raise; they are reported in the returned result.
    """
    if action is None or not action.is_active:
        raise ActionConfigError("External action not found or inactive")
    if not action.webhook_url:
        raise ActionConfigError(f"External action '{action.action_name}' has no webhook URL")

    execution_id = uuid.uuid4()
    payload = prepare_payload(action, variables or {}, execution_id)
    result = await dispatch_webhook(action, payload, execution_id=execution_id, sleep_func=sleep_func)

    try:
        log_execution(
            db,
            action,
            result,
            conversation=conversation,
            provider_message_id=provider_message_id,
            intent_confidence=intent_confidence,
            variables=variables or {},
        )
        if result.success and action.response_type == RESPONSE_WAIT_FOR_WEBHOOK:
            open_pending_response(db, action, execution_id, conversation=conversation, instance_name=instance_name)
            result.awaiting_response = True
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "External action executed",
        extra={"context": {"action": action.action_name, **result.as_dict()}},
    )
    return result
