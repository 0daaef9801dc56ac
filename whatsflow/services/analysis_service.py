import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

ARABIC_SCRIPT = re.compile(r"[\u0600-\u06FF\u0750-\u077F\u08A0-\u08FF\uFB50-\uFDFF\uFE70-\uFEFF]")
ARABIC_SHARE_THRESHOLD = 0.3

INDUSTRY_KEYWORDS = {
    "tech": ("software", "app", "bug", "install", "server", "api", "login", "password", "تطبيق", "برنامج"),
    "sales": ("price", "buy", "order", "discount", "offer", "stock", "سعر", "شراء", "طلب", "خصم"),
    "medical": ("doctor", "appointment", "clinic", "pain", "prescription", "طبيب", "موعد", "عيادة"),
    "education": ("course", "class", "exam", "lesson", "enroll", "دورة", "امتحان", "درس"),
    "finance": ("loan", "account", "transfer", "invoice", "payment", "قرض", "حساب", "تحويل", "فاتورة"),
    "entertainment": ("movie", "game", "ticket", "concert", "فيلم", "لعبة", "تذكرة"),
}

FORMAL_MARKERS = (
    "please",
    "kindly",
    "dear",
    "regards",
    "would you",
    "could you",
    "من فضلك",
    "لو سمحت",
    "حضرتك",
    "تحية",
)


@dataclass
class LanguageDetection:
    primary_language: str
    direction: str
    arabic_share: float = 0.0

    @property
    def is_rtl(self) -> bool:
        return self.direction == "rtl"


@dataclass
class BusinessContext:
    industry: str = "general"
    communication_style: str = "casual"
    detected_terms: List[str] = field(default_factory=list)
    confidence: float = 0.5


def detect_language(text: Optional[str]) -> LanguageDetection:
    letters = [c for c in (text or "") if not c.isspace()]
    if not letters:
        return LanguageDetection(primary_language="und", direction="ltr")
    share = sum(1 for c in letters if ARABIC_SCRIPT.match(c)) / len(letters)
    if share > ARABIC_SHARE_THRESHOLD:
        return LanguageDetection(primary_language="ar", direction="rtl", arabic_share=share)
    return LanguageDetection(primary_language="en", direction="ltr", arabic_share=share)


def _detect_industry(normalized: str) -> Optional[str]:
    best, best_hits = None, 0
    for industry, keywords in INDUSTRY_KEYWORDS.items():
        hits = sum(1 for keyword in keywords if re.search(rf"\b{re.escape(keyword)}\b", normalized))
        if hits > best_hits:
            best, best_hits = industry, hits
    return best


def detect_business_context(
    message: str,
    configured_industry: Optional[str] = None,
    business_terms: Optional[Iterable[str]] = None,
) -> BusinessContext:
    """Industry, tone and known business terms of one inbound message."""
    normalized = (message or "").casefold()
    terms = [term for term in (business_terms or []) if term and term.casefold() in normalized]

    industry = (configured_industry or "").strip().lower() or _detect_industry(normalized) or "general"
    style = "formal" if any(marker in normalized for marker in FORMAL_MARKERS) else "casual"

    confidence = 0.5
    if configured_industry:
        confidence += 0.2
    confidence += 0.1 * (len(terms) // 2)
    return BusinessContext(
        industry=industry,
        communication_style=style,
        detected_terms=terms,
        confidence=min(confidence, 0.9),
    )
