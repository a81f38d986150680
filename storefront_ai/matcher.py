import asyncio
import logging
import re
from typing import Iterable, List, Optional

from pydantic import ValidationError

from .catalog import CatalogStore
from .categories import (
    LAPTOP_NAME_PREFIXES,
    PERIPHERAL_TERMS,
    STRICT_CATEGORIES,
    category_terms,
    component_category,
    normalize_category,
)
from .llm_client import LLMClient, LLMError, parse_json_reply
from .models import Budget, Intent, Product, ReviewStats
from .utils import fetch_with_fallback


logger = logging.getLogger(__name__)

# Category words stripped from a product name before looking for the
# distinctive parts (series, model number) a reply would mention
GENERIC_NAME_WORDS_RE = re.compile(
    r"\b(processor|cpu|gpu|graphics|card|motherboard|ram|memory|storage|ssd|hdd|power|supply|psu|"
    r"case|cooling|cooler|gaming|keyboard|mouse|headset|monitor|laptop)\b"
)

# Products shown to the LLM ranker
LLM_LISTING_LIMIT = 50

# Words that describe what the shopper wants, not what the product is
INTENT_ONLY_KEYWORDS = {
    "affordable", "budget", "cheap", "cheaper", "cheapest", "inexpensive", "best", "good", "great",
    "available", "quality", "latest", "new", "recommend", "recommended", "popular", "show", "need",
    "want", "looking", "buy", "price", "prices", "deal", "deals", "value",
}
AFFORDABLE_SIGNALS = {"affordable", "budget", "cheap", "cheaper", "cheapest", "inexpensive"}


def matches_category(product: Product, category: Optional[str]) -> bool:
    c = normalize_category(category)
    if not c:
        return True
    ctype = (product.component_type or "").strip().lower()
    name = (product.name or "").lower()

    if c == "laptop":
        # Laptops and peripherals must never cross over either way
        is_laptop = "laptop" in ctype or "notebook" in ctype or name.startswith(LAPTOP_NAME_PREFIXES)
        is_peripheral = any(t in name or t in ctype for t in PERIPHERAL_TERMS)
        return is_laptop and not is_peripheral

    if c in STRICT_CATEGORIES:
        if not ctype:
            return False
        resolved = component_category(ctype)
        if resolved is not None:
            return resolved == c
        return any(term in ctype or ctype in term for term in category_terms(c))

    haystack = " ".join([name, product.description or "", product.brand or "", ctype]).lower()
    return any(term in haystack for term in category_terms(c))


def filter_by_category(products: Iterable[Product], category: Optional[str]) -> List[Product]:
    return [p for p in products if matches_category(p, category)]


def search_terms(intent: Intent) -> List[str]:
    """Intent keywords usable as product text-match terms."""
    excluded = set(INTENT_ONLY_KEYWORDS)
    if intent.category:
        excluded.add(intent.category.lower())
        excluded.update(category_terms(intent.category))
    out: List[str] = []
    for kw in intent.keywords:
        k = kw.strip().lower()
        if k and k not in excluded and normalize_category(k) != normalize_category(intent.category) and k not in out:
            out.append(k)
    return out


def _product_text(p: Product) -> str:
    specs = " ".join(str(v) for v in (p.specifications or {}).values())
    return " ".join([p.name, p.description or "", p.brand or "", p.component_type or "", specs]).lower()


def filter_by_keywords(products: List[Product], terms: List[str]) -> List[Product]:
    """Keep products mentioning any term; an over-narrow term list is dropped
    rather than emptying the result."""
    if not terms:
        return products
    hits = [p for p in products if any(t in _product_text(p) for t in terms)]
    if not hits:
        logger.info("[matcher] no product mentions %s; keyword filter relaxed", terms)
        return products
    return hits


def filter_by_budget(products: Iterable[Product], budget: Budget) -> List[Product]:
    out: List[Product] = []
    for p in products:
        if budget.max is not None and p.price > budget.max:
            continue
        if budget.min is not None and p.price < budget.min:
            continue
        out.append(p)
    return out


def filter_by_brands(products: Iterable[Product], brands: List[str]) -> List[Product]:
    wanted = [b.strip().lower() for b in brands if b and b.strip()]
    if not wanted:
        return list(products)
    out: List[Product] = []
    for p in products:
        pb = (p.brand or "").strip().lower()
        if pb and any(b in pb or pb in b for b in wanted):
            out.append(p)
    return out


def compute_ai_score(avg_rating: float, review_count: int, stock_quantity: int) -> float:
    return 100 + avg_rating * 10 + min(review_count, 50) * 0.5 + (20 if stock_quantity > 0 else -50)


async def enrich_with_reviews(products: List[Product], store: CatalogStore) -> List[Product]:
    """Attach review stats and aiScore to copies of the products.

    A failed lookup only zeroes that product's stats.
    """
    async def enrich(p: Product) -> Product:
        stats = await fetch_with_fallback(lambda: store.fetch_review_stats(p.id), ReviewStats(), f"reviews:{p.id}")
        return p.model_copy(update={
            "avg_rating": stats.avg_rating,
            "review_count": stats.review_count,
            "ai_score": compute_ai_score(stats.avg_rating, stats.review_count, p.stock_quantity),
        })

    return list(await asyncio.gather(*(enrich(p) for p in products)))


def wants_affordable(intent: Intent) -> bool:
    signals = {f.lower() for f in intent.features} | {k.lower() for k in intent.keywords}
    return bool(signals & AFFORDABLE_SIGNALS)


def sort_products(products: List[Product], affordable: bool = False) -> List[Product]:
    """In-stock first, always. Then cheapest first for affordable requests,
    else aiScore descending when every product has one, else price."""
    scored = bool(products) and all(p.ai_score is not None for p in products)

    def key(p: Product):
        out_of_stock = p.stock_quantity <= 0
        if affordable or not scored:
            return (out_of_stock, p.price)
        return (out_of_stock, -p.ai_score, p.price)

    return sorted(products, key=key)


async def fallback_search(intent: Intent, catalog: List[Product], store: Optional[CatalogStore] = None) -> List[Product]:
    """Deterministic filter + sort used for simple queries and whenever LLM ranking fails."""
    products = filter_by_category(catalog, intent.category)
    products = filter_by_keywords(products, search_terms(intent))
    products = filter_by_budget(products, intent.budget)
    products = filter_by_brands(products, intent.brands)
    if store is not None and products:
        products = await enrich_with_reviews(products, store)
    result = sort_products(products, affordable=wants_affordable(intent))
    logger.info("[matcher] fallback search category=%s -> %d products", intent.category, len(result))
    return result


def is_simple_search(intent: Intent) -> bool:
    """Category-only or category+budget searches, which skip LLM ranking."""
    return bool(intent.category) and not intent.brands and not intent.features


RANKING_PROMPT = """You are ranking products from a computer store catalog for a shopper.

Shopper request:
- Category: {category}
- Budget: {budget}
- Brands: {brands}
- Features: {features}
- Keywords: {keywords}
- Use case: {use_case}

Catalog (id | name | price | component type | brand | stock):
{listing}

HARD RULE: the component type MUST match the requested category. A laptop is
never a RAM stick, a headset is never a laptop.
Prefer in-stock items. Respect the budget.

Return ONLY a JSON array of matching product ids, most relevant first, e.g. ["id1", "id2"].
Return [] if nothing fits.
"""


def _budget_text(budget: Budget) -> str:
    if budget.is_empty():
        return "not specified"
    parts = []
    if budget.min is not None:
        parts.append(f"min {budget.min:,.0f}")
    if budget.max is not None:
        parts.append(f"max {budget.max:,.0f}")
    return " / ".join(parts)


class ProductMatcher:
    def __init__(self, llm: Optional[LLMClient] = None, store: Optional[CatalogStore] = None):
        self.llm = llm
        self.store = store

    async def match(self, intent: Intent, catalog: List[Product]) -> List[Product]:
        """Products for an intent, most relevant first. Never raises."""
        if is_simple_search(intent) or self.llm is None or not self.llm.configured:
            return await fallback_search(intent, catalog, self.store)
        try:
            ranked = await self.rank_with_llm(intent, catalog)
            if ranked:
                return ranked
            logger.info("[matcher] LLM ranking returned nothing usable, using fallback search")
        except (LLMError, ValueError, ValidationError) as e:
            logger.warning("[matcher] LLM ranking failed, using fallback search: %s", e)
        return await fallback_search(intent, catalog, self.store)

    async def rank_with_llm(self, intent: Intent, catalog: List[Product]) -> List[Product]:
        listing = "\n".join(
            f"{p.id} | {p.name} | {p.price:,.0f} | {p.component_type or 'N/A'} | {p.brand or 'N/A'} | {p.stock_quantity}"
            for p in catalog[:LLM_LISTING_LIMIT]
        )
        prompt = RANKING_PROMPT.format(
            category=intent.category or "any",
            budget=_budget_text(intent.budget),
            brands=", ".join(intent.brands) or "any",
            features=", ".join(intent.features) or "none",
            keywords=", ".join(intent.keywords) or "none",
            use_case=intent.use_case or "not specified",
            listing=listing,
        )
        completion = await self.llm.complete([{"role": "user", "content": prompt}], temperature=0.1, max_tokens=500)
        data = parse_json_reply(completion.content)
        if isinstance(data, dict):
            data = data.get("ids") or data.get("products") or []
        if not isinstance(data, list):
            raise ValueError("ranking reply is not a list")

        by_id = {p.id: p for p in catalog[:LLM_LISTING_LIMIT]}
        ranked: List[Product] = []
        for pid in data:
            p = by_id.get(str(pid))
            if p is not None and p not in ranked:
                ranked.append(p)

        # Failsafe: the model does not get to break category or budget
        ranked = filter_by_budget(filter_by_category(ranked, intent.category), intent.budget)
        return ranked


def extract_recommended_products(reply: str, products: List[Product]) -> List[Product]:
    """Products the reply actually names: the full name, or the brand together
    with a distinctive part of the name."""
    text = (reply or "").lower()
    out: List[Product] = []
    for p in products:
        name = p.name.lower()
        if name and name in text:
            out.append(p)
            continue
        brand = (p.brand or "").strip().lower()
        if not brand or brand not in text:
            continue
        parts = [w for w in re.split(r"[\s\-_]+", GENERIC_NAME_WORDS_RE.sub(" ", name)) if len(w) > 3 and w != brand]
        if any(w in text for w in parts):
            out.append(p)
    return out
