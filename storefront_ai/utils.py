import copy
import logging
from typing import Awaitable, Callable, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


def format_number(value) -> str:
    """Thousands-separated number; decimals kept only when non-zero."""
    try:
        v = float(value)
    except (TypeError, ValueError):
        return str(value)
    if v.is_integer():
        return f"{int(v):,}"
    return f"{v:,.2f}"


def format_price(value, currency: str = "₱") -> str:
    return f"{currency}{format_number(value)}"


async def fetch_with_fallback(fetch: Callable[[], Awaitable[T]], default: T, label: str = "fetch") -> T:
    """Await ``fetch()``; on any failure log it and return a copy of ``default``.

    Every data-fetch site goes through here so one failing source degrades
    to its default without touching the others.
    """
    try:
        result = await fetch()
    except Exception as e:
        logger.warning("[fetch] %s failed, using default: %s", label, e)
        return copy.deepcopy(default)
    if result is None and default is not None:
        return copy.deepcopy(default)
    return result
