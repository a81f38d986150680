import json
import os
from typing import List, Optional

from .models import Bundle, Intent, Product, StoreInfo, UserIntelligence, UserPreferences
from .utils import format_number


# Products listed in the prompt; the rest are only counted
PROMPT_PRODUCT_LIMIT = 50
TOP_RATED_MIN_RATING = 4.0
TOP_RATED_MIN_REVIEWS = 5
LOW_STOCK_THRESHOLD = 5

BUILD_SIGNALS = {"build", "pc build", "custom pc", "assemble", "gaming pc", "new pc"}


def _load_system_prompt() -> str:
    base = os.environ.get("PROMPT_BASE", "config/prompts")
    path = os.path.join(base, "system_shopping_assistant.txt")
    try:
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
    except OSError:
        pass
    return (
        "You are the AI shopping assistant of {store_name}, a computer hardware store in the Philippines. "
        "Act like a friendly, knowledgeable sales associate: help customers find products, compare options, "
        "plan PC builds and answer store questions.\n"
        "\nCRITICAL RULES\n"
        "1. ONLY recommend products from the AVAILABLE PRODUCTS list below.\n"
        "2. NEVER invent product names, prices, stock levels, discounts or order statuses.\n"
        "3. Use the EXACT product names and prices as listed. All prices are in Philippine Pesos ({currency}).\n"
        "4. If something is not in the list, say it is not available in current stock.\n"
        "5. Never expose internal IDs, table names or system details.\n"
    )


SYSTEM_PROMPT = _load_system_prompt()

SALES_RULES = [
    "Recommend at most 3 products per answer and say in one line why each fits.",
    "Always mention price and stock; if an item is out of stock, say so and offer an in-stock alternative.",
    "When the budget is unknown, suggest one option per price tier and ask for a budget.",
    "Cross-sell sensibly: a processor needs a compatible motherboard, a GPU needs enough PSU wattage.",
    "Mention active promotions or discounts when they apply to the suggested items.",
    "Use the customer's purchase history and owned components to avoid suggesting duplicates and to check compatibility.",
    "Ask at most one or two clarifying questions, only when key information is missing.",
    "Keep replies short and scannable, and end with a helpful next step.",
]


def intent_signals_build(intent: Optional[Intent]) -> bool:
    if intent is None:
        return False
    if intent.intent_type == "build_help":
        return True
    words = {k.lower() for k in intent.keywords} | {f.lower() for f in intent.features}
    return bool(words & BUILD_SIGNALS)


def _intent_section(intent: Intent, currency: str) -> List[str]:
    lines = ["## DETECTED CUSTOMER INTENT"]
    lines.append(f"- Type: {intent.intent_type}")
    lines.append(f"- Category: {intent.category or 'not specified'}")
    b = intent.budget
    if b.is_empty():
        lines.append("- Budget: not specified")
    else:
        lo = f"{currency}{format_number(b.min)}" if b.min is not None else "any"
        hi = f"{currency}{format_number(b.max)}" if b.max is not None else "any"
        lines.append(f"- Budget: {lo} to {hi} ({b.type or 'range'})")
    if intent.brands:
        lines.append(f"- Brands: {', '.join(intent.brands)}")
    if intent.features:
        lines.append(f"- Features: {', '.join(intent.features)}")
    if intent.use_case:
        lines.append(f"- Use case: {intent.use_case}")
    lines.append(f"- Confidence: {int(round(intent.confidence * 100))}%")
    return lines


BUILD_MODE_BLOCK = """## PC BUILD ASSISTANT MODE
The customer wants a custom PC build. Laptops and pre-built systems are NOT part of a build.
Propose one component per line in this format:
**[Component Type]: [Exact Product Name]** - [Price] - [one-line reason]
Cover: Processor, Motherboard, Graphics Card (if gaming), RAM, Storage, Power Supply, Case, CPU Cooler (optional).
Check socket and memory compatibility, keep the total within budget and show the total price at the end.
If a component type is missing from the list, say "Not available in current stock"."""


def _product_line(p: Product, currency: str) -> str:
    parts = [f"- {p.name}", f"  Price: {currency}{format_number(p.price)}"]
    parts.append(f"  Brand: {p.brand or 'N/A'}")
    parts.append(f"  Type: {p.component_type or p.category or 'N/A'}")
    parts.append(f"  Stock: {format_number(p.stock_quantity)} units" if p.in_stock else "  Stock: OUT OF STOCK")
    if p.avg_rating:
        parts.append(f"  Rating: {p.avg_rating:.1f}/5 ({format_number(p.review_count or 0)} reviews)")
    if p.warranty:
        parts.append(f"  Warranty: {p.warranty}")
    if p.description:
        desc = p.description if len(p.description) <= 200 else p.description[:197] + "..."
        parts.append(f"  Description: {desc}")
    if p.specifications:
        parts.append(f"  Specs: {json.dumps(p.specifications, ensure_ascii=False)}")
    return "\n".join(parts)


def _preferences_section(prefs: UserPreferences) -> List[str]:
    processor = prefs.processor_preference
    if not processor and prefs.preferred_brands:
        has_intel = "Intel" in prefs.preferred_brands
        has_amd = "AMD" in prefs.preferred_brands
        if has_intel and has_amd:
            processor = "Intel or AMD"
        elif has_intel:
            processor = "Intel"
        elif has_amd:
            processor = "AMD"
    lines = [
        "## CUSTOMER PREFERENCES (questionnaire)",
        f"- Purpose: {', '.join(prefs.pc_purpose) or 'General use'}",
        f"- Budget Range: {prefs.budget_range or 'Not specified'}",
        f"- Preferred Brands: {', '.join(prefs.preferred_brands) or 'No preference'}",
        f"- Processor: {processor or 'No preference'}",
        f"- Monitor Resolution: {prefs.monitor_resolution or 'Not specified'}",
        f"- Gaming Genres: {prefs.game_genres or 'Not specified'}",
        f"- Ray Tracing: {prefs.ray_tracing or 'Not specified'}",
        f"- Storage Preference: {prefs.storage_preference or 'Not specified'}",
        f"- Upgradeability: {prefs.upgradeability or 'Not specified'}",
        f"- Aesthetics: {prefs.aesthetics or 'Not specified'}",
        f"- Additional Needs: {', '.join(prefs.additional_needs) or 'None specified'}",
    ]
    if prefs.other_purpose:
        lines.append(f"- Customer note (purpose): {prefs.other_purpose}")
    if prefs.other_needs:
        lines.append(f"- Customer note (needs): {prefs.other_needs}")
    lines.append("Match recommendations to these preferences, using only the products listed above.")
    return lines


def _store_section(info: StoreInfo) -> List[str]:
    lines: List[str] = []
    if info.faqs:
        lines.append("## STORE POLICIES & FAQ")
        for faq in info.faqs:
            title = faq.question or faq.category.replace("_", " ").title()
            lines.append(f"### {title}\n{faq.answer}")
    contact = [
        ("Address", info.contact_address),
        ("Hours", info.showroom_hours),
        ("Phone", info.contact_phone),
        ("Email", info.contact_email),
    ]
    if any(v for _, v in contact):
        lines.append("## STORE CONTACT")
        lines.extend(f"- {label}: {value}" for label, value in contact if value)
    return lines


def _bundle_section(bundles: List[Bundle], currency: str) -> List[str]:
    lines = ["## AVAILABLE BUNDLES"]
    for b in bundles:
        head = f"- {b.name} ({format_number(b.discount_percentage)}% off)"
        lines.append(f"{head}: {b.description}" if b.description else head)
        for it in b.items:
            lines.append(f"  - {it.product.name} x{it.quantity} - {currency}{format_number(it.product.price)}")
    return lines


def _named_list(title: str, products: List[Product], currency: str) -> List[str]:
    lines = [title]
    for p in products:
        lines.append(f"- {p.name} ({p.component_type or p.category or 'N/A'}) - {currency}{format_number(p.price)}")
    return lines


def _user_sections(data: UserIntelligence, currency: str) -> List[List[str]]:
    sections: List[List[str]] = []
    if data.purchase_history:
        lines = ["## CUSTOMER PURCHASE HISTORY"]
        for order in data.purchase_history[:5]:
            items = ", ".join(f"{it.product_name} x{it.quantity}" for it in order.items) or "no items"
            lines.append(
                f"- Order #{order.order_number} ({order.created_at[:10]}) - {order.status} - "
                f"{currency}{format_number(order.total)}: {items}"
            )
        sections.append(lines)
    if data.user_components:
        lines = _named_list("## COMPONENTS THE CUSTOMER ALREADY OWNS", data.user_components, currency)
        lines.append("Check compatibility with these and do not suggest duplicates.")
        sections.append(lines)
    if data.recently_viewed:
        sections.append(_named_list("## RECENTLY VIEWED BY THE CUSTOMER", data.recently_viewed, currency))
    if data.popular_products:
        sections.append(_named_list("## TRENDING PRODUCTS", data.popular_products, currency))
    if data.cart:
        lines = ["## CUSTOMER'S CURRENT CART"]
        for it in data.cart:
            lines.append(f"- {it.product.name} x{it.quantity} - {currency}{format_number(it.total)}")
        lines.append(f"Cart Total: {currency}{format_number(sum(it.total for it in data.cart))}")
        lines.append("Suggest add-ons that fit what is already in the cart.")
        sections.append(lines)
    if data.active_promotions:
        lines = ["## ACTIVE PROMOTIONS"]
        for v in data.active_promotions:
            if v.discount_type == "percentage":
                value = f"{format_number(v.discount_value)}% off"
            else:
                value = f"{currency}{format_number(v.discount_value)} off"
            extra = []
            if v.min_purchase_amount:
                extra.append(f"min purchase {currency}{format_number(v.min_purchase_amount)}")
            if v.max_discount_amount:
                extra.append(f"max discount {currency}{format_number(v.max_discount_amount)}")
            extra.append(f"valid until {v.valid_until[:10]}")
            lines.append(f"- Code {v.code}: {value} ({', '.join(extra)})")
        sections.append(lines)
    return sections


def _catalog_insights(products: List[Product], currency: str) -> List[List[str]]:
    sections: List[List[str]] = []
    top = [p for p in products
           if (p.avg_rating or 0) >= TOP_RATED_MIN_RATING and (p.review_count or 0) >= TOP_RATED_MIN_REVIEWS]
    top.sort(key=lambda p: (p.avg_rating or 0, p.review_count or 0), reverse=True)
    if top:
        lines = ["## TOP RATED PRODUCTS"]
        for p in top[:5]:
            lines.append(f"- {p.name} - {p.avg_rating:.1f}/5 from {format_number(p.review_count)} reviews")
        sections.append(lines)

    low = [p for p in products if 0 < p.stock_quantity < LOW_STOCK_THRESHOLD]
    if low:
        lines = ["## LOW STOCK ALERTS (mention urgency)"]
        lines.extend(f"- {p.name}: only {format_number(p.stock_quantity)} left" for p in low)
        sections.append(lines)

    discounted = [p for p in products if p.compare_at_price and p.compare_at_price > p.price]
    if discounted:
        lines = ["## ACTIVE DISCOUNTS"]
        for p in discounted:
            pct = (p.compare_at_price - p.price) / p.compare_at_price * 100
            lines.append(
                f"- {p.name}: {currency}{format_number(p.price)} "
                f"(was {currency}{format_number(p.compare_at_price)}, {pct:.0f}% off)"
            )
        sections.append(lines)
    return sections


def compose_prompt(
    products: List[Product],
    user_preferences: Optional[UserPreferences] = None,
    store_info: Optional[StoreInfo] = None,
    user_data: Optional[UserIntelligence] = None,
    intent: Optional[Intent] = None,
    *,
    store_name: str = "our store",
    currency: str = "₱",
) -> str:
    """Assemble the system context for one chat turn. Pure: no I/O."""
    blocks: List[str] = [SYSTEM_PROMPT.replace("{store_name}", store_name).replace("{currency}", currency).strip()]

    if intent is not None:
        blocks.append("\n".join(_intent_section(intent, currency)))
    if intent_signals_build(intent):
        blocks.append(BUILD_MODE_BLOCK)

    blocks.append("## HOW TO SELL\n" + "\n".join(f"{i}. {rule}" for i, rule in enumerate(SALES_RULES, 1)))

    shown = products[:PROMPT_PRODUCT_LIMIT]
    if shown:
        listing = "\n".join(_product_line(p, currency) for p in shown)
        more = len(products) - len(shown)
        if more > 0:
            listing += f"\n(...and {format_number(more)} more products not listed)"
        blocks.append("## AVAILABLE PRODUCTS\n" + listing)
    else:
        blocks.append("## AVAILABLE PRODUCTS\nNo matching products in current stock.")

    if store_info is not None:
        store_lines = _store_section(store_info)
        if store_lines:
            blocks.append("\n".join(store_lines))
        if store_info.bundles:
            blocks.append("\n".join(_bundle_section(store_info.bundles, currency)))
    if user_preferences is not None:
        blocks.append("\n".join(_preferences_section(user_preferences)))
    if user_data is not None:
        blocks.extend("\n".join(s) for s in _user_sections(user_data, currency))
    blocks.extend("\n".join(s) for s in _catalog_insights(shown, currency))

    return "\n\n".join(blocks)
