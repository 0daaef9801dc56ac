"""Adaptive quality assessment used to decide human escalation.

Three sub-scores (question clarity, context availability, intent relevance)
are combined with industry-specific weights and compared against an
industry-specific threshold. Escalation is strictly `score < threshold`.
"""

from dataclasses import dataclass, field
from typing import List

from whatsflow.config import settings
from whatsflow.logging_config import get_logger
from whatsflow.services.analysis_service import BusinessContext, LanguageDetection
from whatsflow.services.intent_service import IntentResult

logger = get_logger("quality_service")

DEFAULT_WEIGHTS = {"clarity": 0.3, "context": 0.5, "intent": 0.2}
DEFAULT_THRESHOLD = 0.4
NEUTRAL_SCORE = 0.5

GENERIC_INDUSTRIES = {"", "general", "عام"}

VAGUE_PATTERNS_AR = ("ما هذا", "لا أفهم", "أريد شيئاً", "مش عارف", "إيه ده")
VAGUE_PATTERNS_EN = ("what is this", "i dont understand", "i want something", "help me", "what")

# (substrings, weights); first match wins
INDUSTRY_WEIGHTS = [
    (("tech", "تقني"), {"clarity": 0.4, "context": 0.4, "intent": 0.2}),
    (("sales", "مبيعات"), {"clarity": 0.2, "context": 0.6, "intent": 0.2}),
    (("medical", "طبي"), {"clarity": 0.4, "context": 0.5, "intent": 0.1}),
]

INDUSTRY_THRESHOLDS = [
    (("medical", "طبي"), 0.6),
    (("education", "تعليم"), 0.5),
    (("entertainment", "ترفيه"), 0.3),
    (("finance", "مالي"), 0.6),
]


@dataclass
class QualityAssessment:
    response_quality: float
    should_escalate: bool
    reasoning: str
    assessment_type: str = "adaptive_dynamic"
    factors: dict = field(default_factory=dict)

    def as_metadata(self) -> dict:
        return {
            "response_quality": round(self.response_quality, 4),
            "should_escalate": self.should_escalate,
            "reasoning": self.reasoning,
            "assessment_type": self.assessment_type,
            "factors": self.factors,
        }


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _similarity(result: dict) -> float:
    return float(result.get("score") or result.get("similarity") or 0.0)


def assess_question_clarity(message: str, business: BusinessContext, language: LanguageDetection) -> float:
    word_count = len(message.split())
    is_arabic = language.primary_language == "ar"
    detailed_words = 8 if language.is_rtl else 6

    score = 0.5
    if word_count >= detailed_words:
        score += 0.3
    elif word_count < 3:
        score -= 0.4

    if len(business.detected_terms) >= 3:
        score += 0.2
    if business.communication_style in ("formal", "professional"):
        score += 0.1

    normalized = message.lower().strip()
    patterns = VAGUE_PATTERNS_AR if is_arabic else VAGUE_PATTERNS_EN
    if any(pattern in normalized for pattern in patterns):
        score -= 0.3

    return _clamp(score, 0.1, 0.9)


def assess_context_availability(search_results: List[dict], business: BusinessContext, file_count: int) -> float:
    score = 0.0
    if search_results:
        best = _similarity(search_results[0])
        if best >= 0.8:
            score = 0.9
        elif best >= 0.6:
            score = 0.7
        elif best >= 0.4:
            score = 0.5
        else:
            score = 0.2
        if sum(1 for r in search_results if _similarity(r) >= 0.6) > 1:
            score += 0.1

    if file_count == 0:
        score = min(score, 0.3)
    elif file_count >= 5:
        score += 0.1

    business_confidence = business.confidence or 0.5
    score = score * 0.8 + business_confidence * 0.2
    return _clamp(score, 0.0, 1.0)


def assess_intent_relevance(intent: IntentResult, business: BusinessContext, search_results: List[dict]) -> float:
    score = (0.5 + (intent.confidence or 0.5)) / 2

    if (business.industry or "").strip().lower() not in GENERIC_INDUSTRIES:
        score += 0.1

    if any(_similarity(r) >= 0.6 and len(r.get("text") or "") > 100 for r in search_results):
        score += 0.2

    return _clamp(score, 0.1, 0.9)


def weights_for_industry(industry: str) -> dict:
    for needles, weights in INDUSTRY_WEIGHTS:
        if any(needle in industry for needle in needles):
            return dict(weights)
    return dict(DEFAULT_WEIGHTS)


def threshold_for_industry(industry: str) -> float:
    for needles, threshold in INDUSTRY_THRESHOLDS:
        if any(needle in industry for needle in needles):
            return threshold
    return DEFAULT_THRESHOLD


def should_escalate(score: float, threshold: float) -> bool:
    return score < threshold


def assess_response_quality(
    message: str,
    intent: IntentResult,
    business: BusinessContext,
    search_results: List[dict],
    language: LanguageDetection,
    file_count: int,
) -> QualityAssessment:
    """Score the exchange and decide escalation.

    Internal errors return a neutral 0.5. Whether that fallback escalates is
    the `quality_fail_open` setting (default: it does not).
    """
    try:
        industry = (business.industry or "").lower()
        clarity = assess_question_clarity(message or "", business, language)
        context = assess_context_availability(search_results or [], business, file_count)
        relevance = assess_intent_relevance(intent, business, search_results or [])

        weights = weights_for_industry(industry)
        threshold = threshold_for_industry(industry)
        quality = clarity * weights["clarity"] + context * weights["context"] + relevance * weights["intent"]
        escalate = should_escalate(quality, threshold)

        reasoning = (
            f"Quality: {quality:.2f} | Threshold: {threshold} | "
            f"Clarity: {clarity:.2f} | Context: {context:.2f} | "
            f"Intent: {relevance:.2f} | Industry: {industry or 'general'}"
        )
        return QualityAssessment(
            response_quality=quality,
            should_escalate=escalate,
            reasoning=reasoning,
            factors={
                "question_clarity": clarity,
                "context_availability": context,
                "intent_relevance": relevance,
                "escalation_threshold": threshold,
                "weights": weights,
                "language": language.primary_language,
            },
        )
    except Exception as exc:
        logger.error("Quality assessment failed", extra={"context": {"error": str(exc)}}, exc_info=True)
        return QualityAssessment(
            response_quality=NEUTRAL_SCORE,
            should_escalate=not settings.quality_fail_open,
            reasoning=f"Assessment failed: {exc}",
            assessment_type="fallback",
        )
