import json
import logging
import os
import re
from functools import lru_cache
from typing import List, Optional

from rapidfuzz import fuzz, process, utils

from .models import FAQItem, StoreInfo


logger = logging.getLogger(__name__)

FAQ_FILE = "store_faq.json"
FUZZY_THRESHOLD = 70
# Shorter messages are too easily a token subset of some FAQ question
FUZZY_MIN_TOKENS = 3

BROKEN_RE = re.compile(
    r"\b(broken|defective|faulty|not working|stopped working|won'?t (turn on|boot|power on)|dead on arrival|doa|sira)\b",
    re.IGNORECASE,
)

DEFAULT_FAQS: List[FAQItem] = [
    FAQItem(
        id="shipping",
        category="shipping",
        question="How much is shipping and how long does delivery take?",
        keywords=["shipping", "shipping fee", "delivery fee", "how long to deliver", "ship to", "courier"],
        answer=(
            "We ship nationwide across the Philippines.\n"
            "- Standard Delivery (5-7 business days): PHP 50-150 depending on location\n"
            "- Express Delivery (2-3 business days): PHP 200-300 depending on location\n"
            "- Store Pickup: FREE\n"
            "Orders are processed within 1-2 business days and you get a tracking number once shipped."
        ),
    ),
    FAQItem(
        id="returns",
        category="returns",
        question="What is your return policy?",
        keywords=["return", "return policy", "exchange", "send back"],
        answer=(
            "You may return items within 30 days of delivery for a refund or exchange. Items must be "
            "unused, in original packaging and with proof of purchase. Return shipping is FREE for "
            "defective or incorrect items; other returns may have a PHP 100 shipping fee."
        ),
    ),
    FAQItem(
        id="refunds",
        category="refunds",
        question="How long do refunds take?",
        keywords=["refund", "money back"],
        answer=(
            "Refunds are processed within 5-7 business days after we receive the returned item and go "
            "back to your original payment method (cards 7-14 business days, GCash/PayMaya 3-5 business "
            "days, bank transfer 5-7 business days)."
        ),
    ),
    FAQItem(
        id="warranty",
        category="warranty",
        question="How do I claim warranty for a defective item?",
        keywords=["warranty", "guarantee", "warranty claim", "rma", "defect", "defective", "broken", "faulty",
                  "not working", "stopped working", "dead on arrival", "doa", "sira", "repair", "replacement"],
        answer=(
            "All products carry the manufacturer's warranty; the period is listed on each product page. "
            "Covered: manufacturing defects and malfunctions under normal use. Not covered: accidental "
            "damage, misuse or unauthorized repairs.\n"
            "To claim: send us your order number, a description of the issue and photos or a video of the "
            "defect. We will arrange repair, replacement or refund. Keep your receipt and warranty card."
        ),
    ),
    FAQItem(
        id="payment",
        category="payment_methods",
        question="What payment methods do you accept?",
        keywords=["payment", "pay with", "gcash", "paymaya", "credit card", "cod", "cash on delivery", "installment"],
        answer=(
            "We accept credit/debit cards (Visa, Mastercard, JCB, American Express), GCash, PayMaya and "
            "bank transfer. Cash on Delivery is available for orders under PHP 5,000, and cash is accepted "
            "at store pickup. Card installment plans may be available for purchases over PHP 3,000."
        ),
    ),
    FAQItem(
        id="hours",
        category="store_hours",
        question="What are your store hours?",
        keywords=["store hours", "opening hours", "business hours", "what time do you open", "are you open"],
        answer="Our showroom is open Monday to Saturday, 9:00 AM to 6:00 PM.",
    ),
    FAQItem(
        id="location",
        category="store_location",
        question="Where is your store located?",
        keywords=["location", "address", "where are you located", "showroom", "visit your store"],
        answer="You can visit our showroom during business hours; message us for directions.",
    ),
    FAQItem(
        id="contact",
        category="contact",
        question="How can I contact customer service?",
        keywords=["contact", "phone number", "email", "customer service", "live agent", "talk to a person"],
        answer="You can reach our support team by email or phone. We typically respond within 24 hours on business days.",
    ),
]


def _faq_path() -> str:
    return os.path.join(os.environ.get("DATA_DIR", "data"), FAQ_FILE)


@lru_cache(maxsize=4)
def load_faq(path: Optional[str] = None) -> List[FAQItem]:
    """FAQ items from JSON, or the built-in defaults when the file is missing or invalid."""
    path = path or _faq_path()
    if not os.path.exists(path):
        return list(DEFAULT_FAQS)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return [FAQItem(**item) for item in data]
    except Exception as e:
        logger.warning("[service_faq] Failed to load FAQ from %s: %s", path, e)
        return list(DEFAULT_FAQS)


def apply_store_settings(items: List[FAQItem], info: Optional[StoreInfo]) -> List[FAQItem]:
    """Swap the store's real hours, address and contact details into the generic answers."""
    if info is None:
        return items
    out: List[FAQItem] = []
    for item in items:
        answer = item.answer
        if item.category == "store_hours" and info.showroom_hours:
            answer = f"Our showroom hours: {info.showroom_hours}"
        elif item.category == "store_location" and info.contact_address:
            answer = f"Visit us at {info.contact_address}" + (
                f" ({info.showroom_hours})." if info.showroom_hours else "."
            )
        elif item.category == "contact":
            parts = [f"Email: {info.contact_email}" if info.contact_email else "",
                     f"Phone: {info.contact_phone}" if info.contact_phone else ""]
            parts = [p for p in parts if p]
            if parts:
                answer = "\n".join(parts) + "\nWe typically respond within 24 hours on business days."
        out.append(item if answer == item.answer else item.model_copy(update={"answer": answer}))
    return out


def _keyword_hit(keyword: str, text: str) -> bool:
    return re.search(r"\b" + re.escape(keyword.lower()) + r"\b", text) is not None


def find_relevant_faq(user_text: str, items: Optional[List[FAQItem]] = None) -> List[FAQItem]:
    """FAQ items whose keywords appear in the text, plus the closest question
    by fuzzy match when it clears the threshold."""
    t = (user_text or "").lower()
    items = load_faq() if items is None else items
    hits: List[FAQItem] = []
    for item in items:
        if any(_keyword_hit(kw, t) for kw in item.keywords):
            hits.append(item)

    if len(t.split()) >= FUZZY_MIN_TOKENS and items:
        questions = [item.question for item in items]
        best = process.extractOne(t, questions, scorer=fuzz.token_set_ratio, processor=utils.default_process)
        if best and best[1] >= FUZZY_THRESHOLD:
            item = items[best[2]]
            if item not in hits:
                hits.append(item)
    return hits


def warranty_shortcut(user_text: str, items: Optional[List[FAQItem]] = None) -> Optional[str]:
    """Warranty answer when a store-policy question is also a broken/defective
    product report, else None."""
    if not BROKEN_RE.search(user_text or ""):
        return None
    for item in find_relevant_faq(user_text, items):
        if item.category == "warranty":
            return item.answer
    return None
