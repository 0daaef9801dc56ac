from typing import Any, Optional

from whatsflow.config import settings
from whatsflow.database import SessionLocal
from whatsflow.logging_config import get_logger
from whatsflow.models import WebhookDebugLog

logger = get_logger("debug_log")


def _json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def log_debug(category: str, message: str, data: Optional[dict] = None) -> bool:
    """Append an operator debug row. Never raises.

    Runs in its own session so a failed write cannot roll back the caller.
    """
    if not settings.enable_debug_logs:
        return False

    db = None
    try:
        db = SessionLocal()
        db.add(WebhookDebugLog(category=category, message=message, data=_json_safe(data or {})))
        db.commit()
        return True
    except Exception as exc:
        logger.warning(
            "Debug log write failed",
            extra={"context": {"category": category, "log_message": message, "error": str(exc)}},
        )
        if db is not None:
            try:
                db.rollback()
            except Exception:
                pass
        return False
    finally:
        if db is not None:
            db.close()
