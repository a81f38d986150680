import logging
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .assistant import ShoppingAssistant, get_assistant
from .config import get_settings
from .matcher import filter_by_brands, filter_by_category
from .middleware import RateLimitMiddleware, RequestLoggingMiddleware
from .models import (
    BuildRecommendationRequest,
    ChatOptions,
    ChatRequest,
    ChatResult,
    CompareRequest,
    Product,
    RecommendationRequest,
)
from .routes.vision import router as vision_router
from .utils import fetch_with_fallback


load_dotenv()
logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s %(message)s")

settings = get_settings()

app = FastAPI(title="storefront-ai")

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    RateLimitMiddleware,
    max_requests=settings.rate_limit_max,
    window_seconds=settings.rate_limit_window,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(vision_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok", "service": "storefront-ai"}


@app.get("/api/products", response_model=List[Product])
async def list_products(
    category: Optional[str] = None,
    brand: Optional[str] = None,
    max_price: Optional[float] = None,
    assistant: ShoppingAssistant = Depends(get_assistant),
):
    items = await fetch_with_fallback(assistant.store.fetch_products, [], "products")
    items = filter_by_category(items, category)
    if brand:
        items = filter_by_brands(items, [brand])
    if max_price is not None:
        items = [p for p in items if p.price <= max_price]
    return items


@app.post("/api/chat", response_model=ChatResult)
async def chat(req: ChatRequest, assistant: ShoppingAssistant = Depends(get_assistant)):
    return await assistant.chat(
        req.messages,
        user_preferences=req.preferences,
        options=ChatOptions(user_id=req.user_id),
    )


@app.post("/api/compare", response_model=ChatResult)
async def compare(req: CompareRequest, assistant: ShoppingAssistant = Depends(get_assistant)):
    return await assistant.compare_products(req.product_ids, options=ChatOptions(user_id=req.user_id))


@app.post("/api/recommendations", response_model=ChatResult)
async def recommendations(req: RecommendationRequest, assistant: ShoppingAssistant = Depends(get_assistant)):
    return await assistant.recommend(
        req.query,
        category=req.category,
        brand=req.brand,
        min_price=req.min_price,
        max_price=req.max_price,
        options=ChatOptions(user_id=req.user_id),
    )


@app.post("/api/build-recommendations", response_model=ChatResult)
async def build_recommendations(req: BuildRecommendationRequest, assistant: ShoppingAssistant = Depends(get_assistant)):
    return await assistant.build_recommendations(req.preferences, options=ChatOptions(user_id=req.user_id))
