from typing import Optional

import httpx

from whatsflow.config import settings
from whatsflow.logging_config import get_logger
from whatsflow.services.result import Result

logger = get_logger("whatsapp_service")


async def send_whatsapp_message(
    instance_name: str,
    number: str,
    text: str,
    *,
    timeout_seconds: Optional[float] = None,
) -> Result[int]:
    """Send a text message through the Evolution API. Never raises."""
    if not settings.evolution_api_url or not settings.evolution_api_key:
        logger.error("Evolution API is not configured (EVOLUTION_API_URL / EVOLUTION_API_KEY)")
        return Result.failure("Evolution API is not configured", code="not_configured")

    if not instance_name or not number or not text:
        logger.warning(f"send_whatsapp_message: missing instance={instance_name!r} number={number!r} or text")
        return Result.failure("Missing instance, number or text", code="invalid_request")

    url = f"{settings.evolution_api_url.rstrip('/')}/message/sendText/{instance_name}"
    timeout = timeout_seconds if timeout_seconds is not None else settings.send_timeout_seconds
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(
                url,
                headers={"Content-Type": "application/json", "apikey": settings.evolution_api_key},
                json={"number": number, "text": text},
            )
    except httpx.TimeoutException:
        logger.error("WhatsApp send timed out", extra={"context": {"instance": instance_name, "number": number}})
        return Result.failure(f"Send timed out after {timeout}s", code="timeout")
    except Exception as exc:
        logger.error(
            "WhatsApp send failed",
            extra={"context": {"instance": instance_name, "number": number, "error": str(exc)}},
        )
        return Result.failure(str(exc), code="transport_error")

    logger.info(
        "WhatsApp send response",
        extra={"context": {"instance": instance_name, "number": number, "status": response.status_code}},
    )
    if 200 <= response.status_code < 300:
        return Result.success(response.status_code)
    return Result.failure(
        f"Evolution API error: {response.status_code} - {response.text[:200]}",
        code="http_error",
        status_code=response.status_code,
    )
