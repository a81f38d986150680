import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from ..assistant import ShoppingAssistant, get_assistant
from ..config import get_settings
from ..models import VisionChatResponse, VisionDescriptor
from ..utils import fetch_with_fallback, format_price
from ..vision_client import VisionClient, match_products


logger = logging.getLogger(__name__)

router = APIRouter()

# Matches shown in the reply text
REPLY_MATCHES = 3


@lru_cache(maxsize=1)
def get_vision_client() -> VisionClient:
    return VisionClient(get_settings())


def describe_matches(descriptor: VisionDescriptor, matches, currency: str) -> str:
    what = " ".join(x for x in (descriptor.brand, descriptor.model) if x) or descriptor.product_type or "this product"
    if not matches:
        if descriptor.confidence <= 0:
            return "Sorry, I couldn't analyze that photo. Please try another image or describe the product."
        return f"It looks like {what}, but we don't have a matching product in stock right now."
    lines = [f"It looks like {what}. Here is what we have:"]
    for p in matches[:REPLY_MATCHES]:
        stock = "in stock" if p.in_stock else "out of stock"
        lines.append(f"- {p.name} - {format_price(p.price, currency)} ({stock})")
    return "\n".join(lines)


@router.post("/vision-chat", response_model=VisionChatResponse)
async def vision_chat(
    image: UploadFile = File(...),
    message: Optional[str] = Form(""),
    assistant: ShoppingAssistant = Depends(get_assistant),
    vision: VisionClient = Depends(get_vision_client),
):
    """Identify the product in a photo and match it against the catalog."""
    if not image.content_type or not image.content_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="Invalid file type: please upload an image.")

    img_bytes = await image.read()
    logger.info("[vision] uploaded image bytes: %d", len(img_bytes))

    descriptor = await vision.analyze(img_bytes, message or "")
    catalog = await fetch_with_fallback(assistant.store.fetch_products, [], "products")
    matches = match_products(descriptor, catalog)
    logger.info("[vision] %d catalog matches", len(matches))

    return VisionChatResponse(
        descriptor=descriptor,
        matched_products=matches,
        message=describe_matches(descriptor, matches, assistant.settings.currency_symbol),
    )
