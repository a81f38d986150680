from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


IntentType = Literal[
    "product_search",
    "comparison",
    "recommendation",
    "build_help",
    "general_question",
    "greeting",
]

BudgetType = Literal["exact", "range", "under", "around", "above"]

# Spread applied to an "around X" budget on both sides
AROUND_SPREAD = 0.10


class Budget(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: Optional[float] = None
    max: Optional[float] = None
    type: Optional[BudgetType] = None

    @model_validator(mode="before")
    @classmethod
    def _normalise_around(cls, data: Any) -> Any:
        """An 'around' budget is always a symmetric +/-10% band."""
        if not isinstance(data, dict) or data.get("type") != "around":
            return data
        lo, hi = data.get("min"), data.get("max")
        center = data.get("amount")
        if center is None:
            if lo is not None and hi is not None:
                center = (float(lo) + float(hi)) / 2
            else:
                center = lo if lo is not None else hi
        if center is None:
            return {"min": None, "max": None, "type": None}
        center = float(center)
        return {
            "min": round(center * (1 - AROUND_SPREAD), 2),
            "max": round(center * (1 + AROUND_SPREAD), 2),
            "type": "around",
        }

    @classmethod
    def around(cls, amount: float) -> "Budget":
        return cls(type="around", amount=amount)

    def is_empty(self) -> bool:
        return self.min is None and self.max is None


class Intent(BaseModel):
    model_config = ConfigDict(frozen=True)

    intent_type: IntentType = "general_question"
    category: Optional[str] = None
    budget: Budget = Field(default_factory=Budget)
    brands: List[str] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    use_case: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class Product(BaseModel):
    """Read-only projection of a catalog row.

    ``ai_score``, ``avg_rating``, ``review_count`` and ``match_score`` are
    transient annotations added by the matchers on copies of the record.
    """

    id: str
    name: str
    price: float
    stock_quantity: int = 0
    brand: Optional[str] = None
    category: Optional[str] = None
    description: str = ""
    specifications: Dict[str, Any] = Field(default_factory=dict)
    component_type: str = ""
    warranty: Optional[str] = None
    compare_at_price: Optional[float] = None
    status: str = "active"

    ai_score: Optional[float] = None
    avg_rating: Optional[float] = None
    review_count: Optional[int] = None
    match_score: Optional[float] = None

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "Product":
        """Flatten a catalog row with joined ``brands``/``categories`` and a
        ``selected_components`` list into a Product."""
        brand = row.get("brand")
        if isinstance(row.get("brands"), dict):
            brand = row["brands"].get("name") or brand
        category = row.get("category")
        if isinstance(row.get("categories"), dict):
            category = row["categories"].get("name") or category
        component_type = ""
        for comp in row.get("selected_components") or []:
            name = comp.get("name") if isinstance(comp, dict) else comp
            if isinstance(name, str) and name.strip():
                component_type = name.strip()
                break
        if not component_type and isinstance(category, str):
            component_type = category
        return cls(
            id=str(row["id"]),
            name=row.get("name") or "",
            price=float(row.get("price") or 0),
            stock_quantity=int(row.get("stock_quantity") or 0),
            brand=brand,
            category=category,
            description=row.get("description") or "",
            specifications=row.get("specifications") or {},
            component_type=component_type,
            warranty=row.get("warranty"),
            compare_at_price=row.get("compare_at_price"),
            status=row.get("status") or "active",
        )

    @property
    def in_stock(self) -> bool:
        return self.stock_quantity > 0


class VisionDescriptor(BaseModel):
    product_type: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    specs: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    notes: Optional[str] = None


class ReviewStats(BaseModel):
    avg_rating: float = 0.0
    review_count: int = 0


class OrderItem(BaseModel):
    product_id: Optional[str] = None
    product_name: str
    quantity: int = 1
    unit_price: float = 0.0
    total: float = 0.0


class Order(BaseModel):
    id: str
    order_number: str
    user_id: str
    status: str
    created_at: str
    total: float = 0.0
    subtotal: Optional[float] = None
    discount: Optional[float] = None
    shipping_fee: Optional[float] = None
    payment_method: Optional[str] = None
    delivery_type: Optional[str] = None
    tracking_number: Optional[str] = None
    courier_name: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[str] = None
    items: List[OrderItem] = Field(default_factory=list)


class Voucher(BaseModel):
    code: str
    discount_type: Literal["percentage", "fixed"] = "percentage"
    discount_value: float
    min_purchase_amount: Optional[float] = None
    max_discount_amount: Optional[float] = None
    valid_until: str
    is_active: bool = True


class BundleItem(BaseModel):
    product: Product
    quantity: int = 1


class Bundle(BaseModel):
    id: str
    name: str
    description: str = ""
    discount_percentage: float = 0.0
    items: List[BundleItem] = Field(default_factory=list)


class CartItem(BaseModel):
    product: Product
    quantity: int = 1

    @property
    def total(self) -> float:
        return self.product.price * self.quantity


class UserIntelligence(BaseModel):
    purchase_history: List[Order] = Field(default_factory=list)
    user_components: List[Product] = Field(default_factory=list)
    recently_viewed: List[Product] = Field(default_factory=list)
    popular_products: List[Product] = Field(default_factory=list)
    active_promotions: List[Voucher] = Field(default_factory=list)
    cart: List[CartItem] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not any([
            self.purchase_history,
            self.user_components,
            self.recently_viewed,
            self.popular_products,
            self.active_promotions,
            self.cart,
        ])


class FAQItem(BaseModel):
    id: str
    category: str
    question: str = ""
    keywords: List[str]
    answer: str


class StoreInfo(BaseModel):
    store_name: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_address: Optional[str] = None
    showroom_hours: Optional[str] = None
    faqs: List[FAQItem] = Field(default_factory=list)
    bundles: List[Bundle] = Field(default_factory=list)


class UserPreferences(BaseModel):
    """Answers from the storefront's PC questionnaire."""

    pc_purpose: List[str] = Field(default_factory=list)
    other_purpose: Optional[str] = None
    budget_range: Optional[str] = None
    preferred_brands: List[str] = Field(default_factory=list)
    processor_preference: Optional[str] = None
    monitor_resolution: Optional[str] = None
    game_genres: Optional[str] = None
    ray_tracing: Optional[str] = None
    storage_preference: Optional[str] = None
    upgradeability: Optional[str] = None
    aesthetics: Optional[str] = None
    additional_needs: List[str] = Field(default_factory=list)
    other_needs: Optional[str] = None


class ChatMessage(BaseModel):
    sender: Literal["user", "assistant"]
    text: str


class ChatOptions(BaseModel):
    user_id: Optional[str] = None
    store_info: Optional[StoreInfo] = None


HandledBy = Literal["assistant", "consent", "faq", "orders", "fallback", "error"]


class ChatResult(BaseModel):
    success: bool
    message: str
    intent: Optional[Intent] = None
    matched_products: List[Product] = Field(default_factory=list)
    error: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None
    handled_by: HandledBy = "assistant"


class ChatRequest(BaseModel):
    messages: List[ChatMessage]
    user_id: Optional[str] = None
    preferences: Optional[UserPreferences] = None


class VisionChatResponse(BaseModel):
    descriptor: VisionDescriptor
    matched_products: List[Product]
    message: str


class CompareRequest(BaseModel):
    product_ids: List[str]
    user_id: Optional[str] = None


class RecommendationRequest(BaseModel):
    query: str
    category: Optional[str] = None
    brand: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    user_id: Optional[str] = None


class BuildRecommendationRequest(BaseModel):
    preferences: UserPreferences = Field(default_factory=UserPreferences)
    user_id: Optional[str] = None
