import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from whatsflow.logging_config import get_logger
from whatsflow.models import ExternalAction

logger = get_logger("intent_service")


class Intent(str, Enum):
    HUMAN_REQUEST = "human_request"
    EXTERNAL_ACTION = "external_action"
    GENERAL_QUESTION = "general_question"


HUMAN_REQUEST_CONFIDENCE = 0.9

HUMAN_REQUEST_PATTERNS = (
    re.compile(r"\b(human|agent|representative|operator|real person|customer service|support team|manager)\b"),
    re.compile(r"\b(talk|speak|connect|transfer)\w*\b.*\b(someone|person|human|agent|staff)\b"),
    re.compile(r"(موظف|ممثل|خدمة العملاء|الدعم الفني|شخص حقيقي|مدير)"),
    re.compile(r"(أريد التحدث|اريد التحدث|ابغى اكلم|عايز اكلم|حولني)"),
)


@dataclass
class IntentResult:
    intent: str = Intent.GENERAL_QUESTION.value
    confidence: float = 0.5
    action: Optional[ExternalAction] = None
    extracted_variables: dict = field(default_factory=dict)

    @property
    def needs_human_support(self) -> bool:
        return self.intent == Intent.HUMAN_REQUEST.value


def normalize_for_matching(text: str) -> str:
    """Normalize text for phrase matching (casefold, collapse spaces, trim punctuation)."""
    if not text:
        return ""
    normalized = text.strip().casefold()
    normalized = re.sub(r"\s+", " ", normalized)
    normalized = re.sub(r"^[^\w]+|[^\w]+$", "", normalized)
    return normalized


def _tokens(text: str) -> set[str]:
    return set(re.findall(r"\w+", text))


def is_human_request_message(message: str) -> bool:
    normalized = normalize_for_matching(message)
    if not normalized:
        return False
    return any(pattern.search(normalized) for pattern in HUMAN_REQUEST_PATTERNS)


def matches_escalation_keywords(message: str, keywords: Optional[Iterable[str]]) -> Optional[str]:
    normalized = normalize_for_matching(message)
    for keyword in keywords or []:
        needle = normalize_for_matching(keyword)
        if needle and needle in normalized:
            return keyword
    return None


def score_trigger_phrases(message: str, phrases: Iterable[str]) -> float:
    """1.0 for a verbatim phrase hit, otherwise the best token-coverage share."""
    normalized = normalize_for_matching(message)
    if not normalized:
        return 0.0
    message_tokens = _tokens(normalized)
    best = 0.0
    for phrase in phrases or []:
        needle = normalize_for_matching(phrase)
        if not needle:
            continue
        if needle in normalized:
            return 1.0
        phrase_tokens = _tokens(needle)
        if phrase_tokens:
            best = max(best, len(phrase_tokens & message_tokens) / len(phrase_tokens))
    return best


def extract_variables(message: str, patterns: Optional[dict]) -> dict:
    """Apply each named regex; the first group (or whole match) becomes the value."""
    variables = {}
    for name, pattern in (patterns or {}).items():
        try:
            match = re.search(pattern, message, re.IGNORECASE)
        except re.error as exc:
            logger.warning(
                "Invalid variable pattern",
                extra={"context": {"variable": name, "pattern": pattern, "error": str(exc)}},
            )
            continue
        if match:
            variables[name] = (match.group(1) if match.groups() else match.group(0)).strip()
    return variables


def get_active_actions(db: Session, instance_id: UUID) -> List[ExternalAction]:
    return (
        db.query(ExternalAction)
        .filter(ExternalAction.whatsapp_instance_id == instance_id, ExternalAction.is_active.is_(True))
        .all()
    )


def match_external_action(actions: Iterable[ExternalAction], message: str) -> Optional[IntentResult]:
    best: Optional[IntentResult] = None
    for action in actions:
        confidence = score_trigger_phrases(message, action.trigger_phrases or [])
        threshold = float(action.confidence_threshold if action.confidence_threshold is not None else 0.7)
        if confidence < threshold:
            continue
        if best is None or confidence > best.confidence:
            best = IntentResult(
                intent=Intent.EXTERNAL_ACTION.value,
                confidence=confidence,
                action=action,
                extracted_variables=extract_variables(message, action.variable_patterns),
            )
    return best


def detect_intent(db: Session, instance_id: UUID, message: str) -> IntentResult:
    """Classify one inbound message: human request, business action or plain question."""
    if is_human_request_message(message):
        return IntentResult(intent=Intent.HUMAN_REQUEST.value, confidence=HUMAN_REQUEST_CONFIDENCE)

    action_match = match_external_action(get_active_actions(db, instance_id), message)
    if action_match is not None:
        logger.info(
            "External action matched",
            extra={
                "context": {
                    "action": action_match.action.action_name,
                    "confidence": action_match.confidence,
                    "variables": list(action_match.extracted_variables),
                }
            },
        )
        return action_match

    return IntentResult()
