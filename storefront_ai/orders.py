"""Order questions answered straight from the store, without the LLM."""

import logging
import re
from typing import List, Optional

from .catalog import CatalogStore
from .models import Order
from .utils import format_price


logger = logging.getLogger(__name__)

ORDER_NUMBER_RE = re.compile(r"#?(\d{6,})")

# Checked in this order; a cancel request that names an order number must
# not be read as a details lookup.
ORDER_INTENT_PATTERNS = [
    ("cancel_order", re.compile(r"\bcancel\b.*\border\b|\bcancel my\b|\bstop my order\b", re.IGNORECASE)),
    ("track_order", re.compile(r"\btrack\b.*(\b(order|package|parcel|delivery|shipment)\b|#?\d{6,})|\btrack my\b|\bwhere is my\b|\bdelivery status\b|\bshipping status\b", re.IGNORECASE)),
    ("view_orders", re.compile(r"\bmy orders\b|\border history\b|\bpast orders\b|\bprevious orders\b", re.IGNORECASE)),
    ("order_details", re.compile(r"\border\b.*#?\d{6,}|\border number\b", re.IGNORECASE)),
]

STATUS_DESCRIPTIONS = {
    "pending": "Your order has been received and is being processed.",
    "processing": "Your order is being prepared for shipment.",
    "ready_for_pickup": "Your order is ready for pickup at our location.",
    "shipped": "Your order has been shipped and is on the way!",
    "delivered": "Your order has been delivered successfully.",
    "cancelled": "This order has been cancelled.",
    "refunded": "This order has been refunded.",
}

NON_CANCELLABLE = {"shipped", "delivered"}
CANCEL_REASON = "Customer requested cancellation"

LOGIN_PROMPTS = {
    "cancel_order": "Please log in to cancel an order.",
    "track_order": "Please log in to track your order.",
    "view_orders": "Please log in to view your orders.",
    "order_details": "Please log in to view order details.",
}
NUMBER_PROMPTS = {
    "cancel_order": 'Please provide your order number to cancel. For example: "Cancel order #123456"',
    "track_order": 'Please provide your order number to track your order. For example: "Track order #123456"',
    "order_details": 'Please provide your order number. For example: "Order #123456"',
}


def detect_order_intent(message: str) -> Optional[str]:
    for name, pattern in ORDER_INTENT_PATTERNS:
        if pattern.search(message or ""):
            return name
    return None


def extract_order_number(message: str) -> Optional[str]:
    m = ORDER_NUMBER_RE.search(message or "")
    return m.group(1) if m else None


def describe_status(status: str) -> str:
    return STATUS_DESCRIPTIONS.get(status, "Order status updated.")


def format_order(order: Order, currency: str = "₱") -> str:
    lines = [
        f"Order #{order.order_number}",
        f"Status: {order.status.replace('_', ' ').title()}",
        f"Date: {order.created_at[:10]}",
    ]
    if order.items:
        lines.append("Items:")
        for it in order.items:
            lines.append(f"- {it.product_name} x{it.quantity} ({format_price(it.total or it.unit_price * it.quantity, currency)})")
    if order.shipping_fee:
        lines.append(f"Shipping: {format_price(order.shipping_fee, currency)}")
    if order.discount:
        lines.append(f"Discount: -{format_price(order.discount, currency)}")
    lines.append(f"Total: {format_price(order.total, currency)}")
    if order.payment_method:
        lines.append(f"Payment: {order.payment_method}")
    return "\n".join(lines)


def format_tracking(order: Order, currency: str = "₱") -> str:
    lines = [
        f"Order #{order.order_number}: {order.status.replace('_', ' ').title()}",
        describe_status(order.status),
    ]
    if order.courier_name:
        lines.append(f"Courier: {order.courier_name}")
    if order.tracking_number:
        lines.append(f"Tracking number: {order.tracking_number}")
    if order.delivery_type:
        lines.append(f"Delivery: {order.delivery_type}")
    lines.append(f"Ordered on {order.created_at[:10]}, total {format_price(order.total, currency)}")
    return "\n".join(lines)


def format_order_list(orders: List[Order], currency: str = "₱") -> str:
    if not orders:
        return "You don't have any orders yet."
    lines = ["Here are your recent orders:"]
    for o in orders[:5]:
        lines.append(
            f"- #{o.order_number} ({o.created_at[:10]}): {o.status.replace('_', ' ').title()}, "
            f"{format_price(o.total, currency)}"
        )
    return "\n".join(lines)


async def cancel_order(store: CatalogStore, order: Order) -> str:
    if order.status == "cancelled":
        return f"Order {order.order_number} has already been cancelled."
    if order.status in NON_CANCELLABLE:
        return (
            f"Order {order.order_number} cannot be cancelled because it has already been {order.status}. "
            "Please contact our support team for assistance."
        )
    await store.cancel_order(order, CANCEL_REASON)
    logger.info("[orders] cancelled order %s", order.order_number)
    return (
        f"Order {order.order_number} has been cancelled successfully. "
        "You will receive a refund within 5-7 business days."
    )


async def handle_order_query(
    intent: str,
    message: str,
    user_id: Optional[str],
    store: CatalogStore,
    currency: str = "₱",
) -> str:
    if not user_id:
        return LOGIN_PROMPTS.get(intent, "Please log in to manage your orders.")

    try:
        if intent == "view_orders":
            return format_order_list(await store.fetch_user_orders(user_id), currency)

        number = extract_order_number(message)
        if not number:
            return NUMBER_PROMPTS.get(intent, NUMBER_PROMPTS["order_details"])

        order = await store.get_order(number, user_id)
        if order is None:
            return f"I could not find order {number}. Please check the order number and try again."

        if intent == "cancel_order":
            return await cancel_order(store, order)
        if intent == "track_order":
            return format_tracking(order, currency)
        return format_order(order, currency)
    except Exception as e:
        logger.error("[orders] %s failed for user %s: %s", intent, user_id, e)
        return "Sorry, I could not process your order request right now. Please try again later or contact our support team."
