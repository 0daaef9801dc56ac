"""Normalize provider webhook bodies into one {event, instance, data} shape.

Decoding and shape detection are ordered strategy chains: each strategy
either returns a result or None, and the first result wins. Adding a new
provider quirk means adding one function to a chain.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple
from urllib.parse import parse_qs

from whatsflow.logging_config import get_logger

logger = get_logger("webhook_normalizer")

MESSAGES_UPSERT = "messages.upsert"
PARSE_ERROR_EVENT = "error"
PARSE_ERROR_INSTANCE = "parsing-error"

_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


@dataclass
class NormalizedEvent:
    event: str
    instance: str
    data: Any
    decoder: str
    shape: str
    extras: dict = field(default_factory=dict)

    @property
    def is_parse_error(self) -> bool:
        return self.event == PARSE_ERROR_EVENT and self.instance == PARSE_ERROR_INSTANCE

    def as_dict(self) -> dict:
        return {"event": self.event, "instance": self.instance, "data": self.data}


# Decoders: raw text -> parsed JSON value


def decode_json(raw: str) -> Optional[Any]:
    try:
        return json.loads(raw)
    except (ValueError, RecursionError):
        return None


def decode_form(raw: str) -> Optional[Any]:
    if "=" not in raw or raw.lstrip().startswith(("{", "[")):
        return None
    fields = parse_qs(raw, keep_blank_values=True)
    if not fields:
        return None
    flat = {key: values[-1] if len(values) == 1 else values for key, values in fields.items()}
    # Form posts often carry the real JSON in one field.
    for key in ("payload", "data", "body", "json"):
        value = flat.get(key)
        if isinstance(value, str):
            nested = decode_json(value)
            if isinstance(nested, (dict, list)):
                return nested
    return flat


def decode_repaired(raw: str) -> Optional[Any]:
    repaired = _CONTROL_CHARS.sub("", raw)
    repaired = _TRAILING_COMMA.sub(r"\1", repaired)
    if repaired == raw:
        return None
    return decode_json(repaired)


def find_balanced_json(raw: str) -> Optional[str]:
    """Return the first balanced {...} or [...] substring, honoring strings."""
    start = None
    for index, char in enumerate(raw):
        if char in "{[":
            start = index
            break
    if start is None:
        return None

    closers = {"{": "}", "[": "]"}
    stack: List[str] = []
    in_string = False
    escaped = False
    for index in range(start, len(raw)):
        char = raw[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in closers:
            stack.append(closers[char])
        elif char in "}]":
            if not stack or stack.pop() != char:
                return None
            if not stack:
                return raw[start : index + 1]
    return None


def decode_embedded(raw: str) -> Optional[Any]:
    candidate = find_balanced_json(raw)
    if candidate is None:
        return None
    parsed = decode_json(candidate)
    if parsed is None:
        parsed = decode_repaired(candidate)
    return parsed


DECODERS: List[Tuple[str, Callable[[str], Optional[Any]]]] = [
    ("json", decode_json),
    ("form", decode_form),
    ("repaired", decode_repaired),
    ("embedded", decode_embedded),
]


# Shape detectors: parsed value -> (event, instance, data) or None


def _instance_of(*candidates: Any) -> str:
    for candidate in candidates:
        if isinstance(candidate, dict):
            for key in ("instance", "instanceName", "instance_name"):
                value = candidate.get(key)
                if isinstance(value, str) and value:
                    return value
                if isinstance(value, dict):
                    name = value.get("instanceName") or value.get("name")
                    if isinstance(name, str) and name:
                        return name
    return ""


def _has_remote_jid(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    key = value.get("key")
    return isinstance(key, dict) and bool(key.get("remoteJid"))


def detect_wrapped_body(payload: Any) -> Optional[Tuple[str, str, Any]]:
    if isinstance(payload, dict) and isinstance(payload.get("body"), dict):
        event, instance, data, _ = detect_shape(payload["body"])
        return event, instance or _instance_of(payload), data
    return None


def detect_message_event(payload: Any) -> Optional[Tuple[str, str, Any]]:
    """Provider message objects carry data.key.remoteJid (or key.remoteJid at top level)."""
    if not isinstance(payload, dict):
        return None
    if _has_remote_jid(payload.get("data")):
        return MESSAGES_UPSERT, _instance_of(payload, payload.get("data")), payload["data"]
    if _has_remote_jid(payload):
        return MESSAGES_UPSERT, _instance_of(payload), payload
    return None


def detect_canonical(payload: Any) -> Optional[Tuple[str, str, Any]]:
    if isinstance(payload, dict) and isinstance(payload.get("event"), str) and "data" in payload:
        event = payload["event"].strip().lower().replace("_", ".")
        return event, _instance_of(payload, payload.get("data")), payload["data"]
    return None


def detect_list(payload: Any) -> Optional[Tuple[str, str, Any]]:
    if isinstance(payload, list) and payload and isinstance(payload[0], (dict, list)):
        event, instance, data, _ = detect_shape(payload[0])
        return event, instance, data
    return None


def detect_unknown(payload: Any) -> Optional[Tuple[str, str, Any]]:
    event = payload.get("event") if isinstance(payload, dict) else None
    return (event if isinstance(event, str) else "unknown"), _instance_of(payload), payload


SHAPE_DETECTORS: List[Tuple[str, Callable[[Any], Optional[Tuple[str, str, Any]]]]] = [
    ("wrapped_body", detect_wrapped_body),
    ("canonical", detect_canonical),
    ("message", detect_message_event),
    ("list", detect_list),
    ("unknown", detect_unknown),
]


def detect_shape(payload: Any) -> Tuple[str, str, Any, str]:
    for name, detector in SHAPE_DETECTORS:
        detected = detector(payload)
        if detected is not None:
            event, instance, data = detected
            return event, instance, data, name
    return "unknown", "", payload, "unknown"


def decode_body(raw: str) -> Tuple[Optional[Any], str]:
    for name, decoder in DECODERS:
        parsed = decoder(raw)
        if parsed is not None:
            return parsed, name
    return None, "none"


def _parse_error_event(raw: str, decoder: str) -> NormalizedEvent:
    return NormalizedEvent(
        event=PARSE_ERROR_EVENT,
        instance=PARSE_ERROR_INSTANCE,
        data={"raw": raw},
        decoder=decoder,
        shape="raw",
    )


def normalize_webhook_body(body: bytes | str | None) -> NormalizedEvent:
    """Turn any request body into a NormalizedEvent. Never raises."""
    if isinstance(body, bytes):
        raw = body.decode("utf-8", "replace")
    else:
        raw = body or ""

    try:
        return _normalize(raw)
    except Exception as exc:
        logger.warning(
            "Webhook body normalization failed",
            extra={"context": {"error": exc.__class__.__name__, "length": len(raw)}},
        )
        return _parse_error_event(raw, "failed")


def _normalize(raw: str) -> NormalizedEvent:
    stripped = raw.strip()
    parsed, decoder = decode_body(stripped) if stripped else (None, "none")
    if parsed is None:
        return _parse_error_event(raw, decoder)

    event, instance, data, shape = detect_shape(parsed)
    extras = {}
    if isinstance(parsed, dict):
        for key in ("apikey", "server_url", "sender", "destination"):
            if key in parsed:
                extras[key] = parsed[key]
    return NormalizedEvent(event=event, instance=instance, data=data, decoder=decoder, shape=shape, extras=extras)


@dataclass
class InboundMessage:
    remote_jid: str
    message_id: Optional[str]
    text: str
    message_type: str
    from_me: bool
    media_url: Optional[str] = None
    push_name: Optional[str] = None


def extract_inbound_message(data: Any) -> Optional[InboundMessage]:
    """Pull sender, id and text out of a provider message object."""
    if not _has_remote_jid(data):
        return None
    key = data["key"]
    message = data.get("message") if isinstance(data.get("message"), dict) else {}

    text = ""
    message_type = "text"
    media_url = None
    if isinstance(message.get("conversation"), str):
        text = message["conversation"]
    elif isinstance(message.get("extendedTextMessage"), dict):
        text = message["extendedTextMessage"].get("text") or ""
    else:
        for media_key, media_type in (
            ("imageMessage", "image"),
            ("videoMessage", "video"),
            ("documentMessage", "document"),
        ):
            media = message.get(media_key)
            if isinstance(media, dict):
                text = media.get("caption") or ""
                message_type = media_type
                media_url = media.get("url")
                break

    return InboundMessage(
        remote_jid=key.get("remoteJid"),
        message_id=key.get("id"),
        text=text.strip(),
        message_type=message_type,
        from_me=bool(key.get("fromMe")),
        media_url=media_url,
        push_name=data.get("pushName"),
    )
