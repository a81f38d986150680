import re
from typing import Dict, List, Optional

from .categories import PC_BUILD_CATEGORIES
from .matcher import filter_by_category, matches_category
from .models import Budget, Intent, Product
from .prompts import intent_signals_build
from .utils import format_price


BUILD_REQUEST_RE = re.compile(
    r"\b(build|assemble)\b.*\b(pc|computer|rig|setup|system)\b|\b(pc|gaming) build\b|\bcustom pc\b",
    re.IGNORECASE,
)

COMPONENT_LABELS = {
    "processor": "Processor",
    "motherboard": "Motherboard",
    "gpu": "Graphics Card",
    "ram": "RAM",
    "ssd": "SSD",
    "hdd": "HDD",
    "psu": "Power Supply",
    "case": "Case",
    "cooler": "CPU Cooler",
}

# Left out of the "not available" note and the cheapest-build total
OPTIONAL_COMPONENTS = {"hdd", "cooler"}

# Options shown per component in the grouped listing
OPTIONS_PER_COMPONENT = 3


def is_build_request(message: str, intent: Optional[Intent] = None) -> bool:
    return bool(BUILD_REQUEST_RE.search(message or "")) or intent_signals_build(intent)


def gather_build_components(catalog: List[Product]) -> List[Product]:
    """Every PC-component candidate in one pass, laptops excluded.

    In-stock items first, then cheapest first.
    """
    candidates = [
        p for p in catalog
        if not matches_category(p, "laptop") and any(matches_category(p, c) for c in PC_BUILD_CATEGORIES)
    ]
    return sorted(candidates, key=lambda p: (p.stock_quantity <= 0, p.price))


def group_by_component(products: List[Product]) -> Dict[str, List[Product]]:
    groups: Dict[str, List[Product]] = {}
    for category in PC_BUILD_CATEGORIES:
        items = filter_by_category(products, category)
        if items:
            groups[category] = items
    return groups


def _pick_options(items: List[Product], budget: Budget) -> List[Product]:
    in_stock = [p for p in items if p.in_stock]
    if budget.max is not None:
        affordable = [p for p in in_stock if p.price <= budget.max]
        # A component pricier than the whole budget is never shown
        in_stock = affordable
    return sorted(in_stock, key=lambda p: p.price)[:OPTIONS_PER_COMPONENT]


def render_grouped_listing(groups: Dict[str, List[Product]], budget: Optional[Budget] = None, currency: str = "₱") -> str:
    """Plain component listing used when the AI cannot answer a build request."""
    budget = budget or Budget()
    lines = ["Our AI assistant is busy right now, so here are the PC components in stock for your build:"]
    if budget.max is not None:
        lines.append(f"(options within your {format_price(budget.max, currency)} budget)")

    cheapest_total = 0.0
    missing: List[str] = []
    for category in PC_BUILD_CATEGORIES:
        label = COMPONENT_LABELS[category]
        options = _pick_options(groups.get(category, []), budget)
        if not options:
            if category not in OPTIONAL_COMPONENTS:
                missing.append(label)
            continue
        lines.append("")
        lines.append(f"**{label}**")
        for p in options:
            lines.append(f"- {p.name} - {format_price(p.price, currency)} ({p.stock_quantity} in stock)")
        if category not in OPTIONAL_COMPONENTS:
            cheapest_total += options[0].price

    if missing:
        lines.append("")
        lines.append("Not available in current stock: " + ", ".join(missing))
    if cheapest_total:
        lines.append("")
        lines.append(f"Cheapest build from these options: {format_price(cheapest_total, currency)}")
        if budget.max is not None and cheapest_total > budget.max:
            lines.append("That is above your budget; consider adjusting the budget or skipping optional parts.")
    lines.append("")
    lines.append("Ask again in a moment for a tailored build recommendation.")
    return "\n".join(lines)
