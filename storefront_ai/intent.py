import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .categories import CATEGORY_ALIASES, CATEGORY_KEYWORDS, detect_category, normalize_category
from .llm_client import LLMClient, LLMError, parse_json_reply
from .models import Budget, Intent


logger = logging.getLogger(__name__)

# Confidence reported by the deterministic extractor
FALLBACK_CONFIDENCE = 0.6

INTENT_TYPES = {"product_search", "comparison", "recommendation", "build_help", "general_question", "greeting"}

# Phrases that need real language understanding; these always go to the LLM.
COMPLEX_TRIGGERS = [
    "compare", " vs ", " vs.", "versus", "difference between", "better than", "which is better",
    "recommend", "suggest", "build", "best for", "should i", "worth it",
]
SIMPLE_PREFIX_RE = re.compile(r"^\s*(show|do you have|any|available)\b", re.IGNORECASE)
GREETING_RE = re.compile(r"^\s*(hi|hello|hey|good (morning|afternoon|evening)|kumusta)\b[\s!.,]*$", re.IGNORECASE)
AFFORDABLE_RE = re.compile(r"\b(affordable|budget)\b", re.IGNORECASE)

KNOWN_BRANDS = [
    "intel", "amd", "nvidia", "asus", "msi", "gigabyte", "asrock", "evga", "zotac", "sapphire",
    "corsair", "g.skill", "kingston", "samsung", "western digital", "seagate", "crucial",
    "logitech", "razer", "steelseries", "hyperx", "cooler master", "nzxt", "deepcool",
    "thermaltake", "lenovo", "acer", "hp", "dell", "aoc", "viewsonic", "fantech", "redragon",
]

_NUMBER = r"(?:₱|php|p)?\s*(\d{1,3}(?:,\d{3})+|\d+(?:\.\d+)?)\s*(k)?\b"
_UNDER_ONLY_RE = re.compile(r"\b(?:under|below)\s*" + _NUMBER, re.IGNORECASE)
_BETWEEN_RE = re.compile(r"\bbetween\s*" + _NUMBER + r"\s*(?:and|to|-)\s*" + _NUMBER, re.IGNORECASE)
# Lookbehind keeps model numbers like "i7-13700K" from reading as a range
_DASH_RANGE_RE = re.compile(r"(?<![\w.])" + _NUMBER + r"\s*(?:-|to)\s*" + _NUMBER, re.IGNORECASE)
_AROUND_RE = re.compile(r"(?:\b(?:around|about|approximately|approx\.?|roughly)\s*|~\s*)" + _NUMBER, re.IGNORECASE)
_UNDER_RE = re.compile(r"\b(?:under|below|less than|up to|max(?:imum)?|no more than)\s*" + _NUMBER, re.IGNORECASE)
_ABOVE_RE = re.compile(r"\b(?:above|over|more than|at least|min(?:imum)?)\s*" + _NUMBER, re.IGNORECASE)
_EXACT_RE = re.compile(r"\bbudget\s*(?:is|of|:)?\s*" + _NUMBER, re.IGNORECASE)


def _amount(num: str, k_suffix: Optional[str]) -> float:
    value = float(num.replace(",", ""))
    return value * 1000 if k_suffix else value


def parse_budget(text: str) -> Budget:
    """Full budget-phrase parser.

    around X -> symmetric +/-10%, under/below X -> max only, above/over X ->
    min only, between X and Y -> min/max, "k" multiplies by 1000. Bare
    "affordable"/"budget" without a figure yields an empty budget.
    """
    t = text or ""
    m = _BETWEEN_RE.search(t) or _DASH_RANGE_RE.search(t)
    if m:
        a = _amount(m.group(1), m.group(2))
        b = _amount(m.group(3), m.group(4) or m.group(2))
        return Budget(min=min(a, b), max=max(a, b), type="range")
    m = _AROUND_RE.search(t)
    if m:
        return Budget.around(_amount(m.group(1), m.group(2)))
    m = _UNDER_RE.search(t)
    if m:
        return Budget(max=_amount(m.group(1), m.group(2)), type="under")
    m = _ABOVE_RE.search(t)
    if m:
        return Budget(min=_amount(m.group(1), m.group(2)), type="above")
    m = _EXACT_RE.search(t)
    if m:
        return Budget(max=_amount(m.group(1), m.group(2)), type="exact")
    return Budget()


def detect_brands(text: str) -> List[str]:
    t = (text or "").lower()
    return [b for b in KNOWN_BRANDS if re.search(r"\b" + re.escape(b) + r"\b", t)]


def is_complex_query(message: str) -> bool:
    t = f" {(message or '').lower()} "
    return any(trigger in t for trigger in COMPLEX_TRIGGERS)


def _starts_with_category(message: str) -> bool:
    t = (message or "").strip().lower()
    nouns = set(CATEGORY_ALIASES) | {kw for kws in CATEGORY_KEYWORDS.values() for kw in kws}
    return any(re.match(re.escape(n) + r"\b", t) for n in nouns)


def is_simple_query(message: str) -> bool:
    """Simple-search shapes that skip the LLM entirely."""
    if is_complex_query(message):
        return False
    return bool(SIMPLE_PREFIX_RE.match(message or "")) or _starts_with_category(message)


def extract_intent_fallback(message: str) -> Intent:
    """Keyword-table extractor used for simple queries and whenever the LLM
    path fails."""
    t = (message or "").lower()
    category = detect_category(t)

    budget = Budget()
    m = _UNDER_ONLY_RE.search(t)
    if m:
        budget = Budget(max=_amount(m.group(1), m.group(2)), type="under")

    features = ["affordable"] if AFFORDABLE_RE.search(t) else []
    brands = detect_brands(t)

    if GREETING_RE.match(t):
        intent_type = "greeting"
    elif category:
        intent_type = "product_search"
    else:
        intent_type = "general_question"

    return Intent(
        intent_type=intent_type,
        category=category,
        budget=budget,
        brands=brands,
        features=features,
        keywords=[category] if category else [],
        confidence=FALLBACK_CONFIDENCE,
    )


INTENT_PROMPT = """You analyze shopping messages for a computer hardware store.
Return ONLY a JSON object with these keys:
{{
  "intentType": one of "product_search", "comparison", "recommendation", "build_help", "general_question", "greeting",
  "category": singular product category (e.g. "laptop", "processor", "gpu", "ram", "keyboard") or null,
  "budget": {{"min": number, "max": number, "type": "exact" | "range" | "under" | "around" | "above"}} or {{}},
  "brands": [brand names],
  "features": [requested features],
  "keywords": [product attribute words useful for text search],
  "useCase": short use case (e.g. "gaming", "video editing") or null,
  "confidence": 0.0-1.0
}}

Budget rules (currency is PHP, "k" means x1000):
- "around 30k" -> {{"min": 27000, "max": 33000, "type": "around"}}  (always +/-10%)
- "under 50k" / "below 50000" -> {{"max": 50000, "type": "under"}}
- "above 20k" / "over 20000" -> {{"min": 20000, "type": "above"}}
- "between 40k and 60k" -> {{"min": 40000, "max": 60000, "type": "range"}}
- "affordable" or "budget" with no number -> {{}} and add "affordable" to features

Typos and slang are common ("vid card" is a gpu, "mobo" is a motherboard, "processer" is a processor).

Message: "{message}"
"""


def _coerce_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [str(v) for v in value if v is not None and str(v).strip()]
    return []


def _first_text(value: Any) -> Optional[str]:
    """A string field the model sometimes returns as a list (one per compared item)."""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return next((v for v in value if isinstance(v, str) and v.strip()), None)
    return None


def intent_from_llm(data: Dict[str, Any], message: str) -> Intent:
    """Build an Intent from the model's JSON, repairing what it got wrong."""
    category = normalize_category(_first_text(data.get("category")))
    intent_type = data.get("intentType") or data.get("intent_type")
    if intent_type not in INTENT_TYPES:
        intent_type = "product_search" if category else "general_question"

    raw_budget = data.get("budget") or {}
    try:
        budget = Budget(**{k: v for k, v in raw_budget.items() if k in ("min", "max", "type")}) \
            if isinstance(raw_budget, dict) else Budget()
    except ValidationError:
        budget = Budget()
    if budget.is_empty():
        budget = parse_budget(message)

    try:
        confidence = float(data.get("confidence", 0.8))
    except (TypeError, ValueError):
        confidence = 0.8

    return Intent(
        intent_type=intent_type,
        category=category,
        budget=budget,
        brands=_coerce_list(data.get("brands")),
        features=_coerce_list(data.get("features")),
        keywords=[k.lower() for k in _coerce_list(data.get("keywords"))],
        use_case=_first_text(data.get("useCase") or data.get("use_case")),
        confidence=min(max(confidence, 0.0), 1.0),
    )


class IntentDetector:
    def __init__(self, llm: Optional[LLMClient] = None):
        self.llm = llm

    async def detect(self, message: str) -> Intent:
        """Best-effort Intent for a user message. Never raises."""
        if is_simple_query(message) or self.llm is None or not self.llm.configured:
            return extract_intent_fallback(message)
        try:
            completion = await self.llm.complete(
                [{"role": "user", "content": INTENT_PROMPT.format(message=(message or "").replace('"', "'"))}],
                temperature=0.1,
                max_tokens=400,
            )
            data = parse_json_reply(completion.content)
            if not isinstance(data, dict):
                raise ValueError("intent reply is not an object")
            return intent_from_llm(data, message)
        except (LLMError, ValueError, TypeError, AttributeError, ValidationError) as e:
            logger.warning("[intent] LLM intent detection failed, using keyword table: %s", e)
            return extract_intent_fallback(message)
