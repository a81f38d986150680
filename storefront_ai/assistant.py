import asyncio
import logging
from functools import lru_cache
from typing import Dict, List, Optional

from .catalog import CatalogStore, build_store
from .config import Settings, get_settings
from .intent import IntentDetector, parse_budget
from .llm_client import AllKeysExhaustedError, LLMClient, LLMError, LLMNotConfiguredError
from .matcher import (
    ProductMatcher,
    enrich_with_reviews,
    extract_recommended_products,
    filter_by_brands,
    filter_by_category,
)
from .models import (
    Budget,
    ChatMessage,
    ChatOptions,
    ChatResult,
    Intent,
    Product,
    StoreInfo,
    UserIntelligence,
    UserPreferences,
)
from .orders import detect_order_intent, handle_order_query
from .pc_builder import gather_build_components, group_by_component, is_build_request, render_grouped_listing
from .prompts import PROMPT_PRODUCT_LIMIT, compose_prompt
from .service_faq import apply_store_settings, find_relevant_faq, load_faq, warranty_shortcut
from .utils import fetch_with_fallback, format_price


logger = logging.getLogger(__name__)

CONTEXT_TURNS = 6
MATCHED_PRODUCTS_RETURNED = 10
MATCHER_INTENTS = {"product_search", "recommendation", "comparison"}
MIN_COMPARE_PRODUCTS = 2

CONSENT_REFUSAL = (
    "You have turned off AI assistance in your privacy settings. "
    "You can enable it again under Settings > Privacy to chat with the shopping assistant."
)
NO_MESSAGE = "Please type a message so I can help you."
NO_PRODUCTS = "Sorry, our product catalog is unavailable right now. Please try again in a few minutes."
RATE_LIMITED = (
    "Our AI assistant is getting a lot of requests right now. "
    "Please wait a minute and try again."
)
APOLOGY = "Sorry, I'm having trouble answering right now. Please try again later or contact our support team."
TOO_FEW_TO_COMPARE = "Please pick at least 2 products to compare."
COMPARE_NOT_FOUND = "Sorry, I could not find those products to compare. They may no longer be available."

BUILD_REQUEST = (
    "Based on my preferences, please recommend a complete custom PC build with individual components. "
    "Use only products from the available products list, with their exact names and prices. "
    "Do not recommend laptops or pre-built systems. "
    "For each component give the type, the product, its price and why it fits, "
    'and say "Not available in current stock" for anything missing. '
    "Show the total price at the end."
)


def price_budget(min_price: Optional[float], max_price: Optional[float]) -> Budget:
    if min_price is not None and max_price is not None:
        return Budget(min=min_price, max=max_price, type="range")
    if max_price is not None:
        return Budget(max=max_price, type="under")
    if min_price is not None:
        return Budget(min=min_price, type="above")
    return Budget()


def latest_user_message(messages: List[ChatMessage]) -> Optional[str]:
    for m in reversed(messages):
        if m.sender == "user" and m.text.strip():
            return m.text
    return None


def to_llm_turns(messages: List[ChatMessage], limit: int = CONTEXT_TURNS) -> List[Dict[str, str]]:
    """Recent history ending at the latest user message; later assistant turns are dropped."""
    turns = [m for m in messages if m.text.strip()]
    last_user = max((i for i, m in enumerate(turns) if m.sender == "user"), default=-1)
    return [
        {"role": "user" if m.sender == "user" else "assistant", "content": m.text}
        for m in turns[:last_user + 1][-limit:]
    ]


class ShoppingAssistant:
    """One conversation turn: shortcuts, intent, data gathering, prompt, LLM."""

    def __init__(self, store: CatalogStore, llm: LLMClient, settings: Optional[Settings] = None):
        self.store = store
        self.llm = llm
        self.settings = settings or llm.settings
        self.detector = IntentDetector(llm)
        self.matcher = ProductMatcher(llm, store)

    async def chat(
        self,
        messages: List[ChatMessage],
        user_preferences: Optional[UserPreferences] = None,
        options: Optional[ChatOptions] = None,
    ) -> ChatResult:
        try:
            return await self._chat(messages, user_preferences, options or ChatOptions())
        except Exception as e:
            logger.exception("[assistant] unhandled failure: %s", e)
            return ChatResult(success=False, message=APOLOGY, error="internal_error", handled_by="error")

    async def _consent_refused(self, user_id: Optional[str]) -> bool:
        if not user_id:
            return False
        consent = await fetch_with_fallback(lambda: self.store.get_ai_consent(user_id), None, "consent")
        if consent is False:
            logger.info("[assistant] user %s declined AI assistance", user_id)
            return True
        return False

    async def _store_context(self, options: ChatOptions) -> StoreInfo:
        info, bundles = await asyncio.gather(
            fetch_with_fallback(self.store.load_store_settings, StoreInfo(), "store_settings"),
            fetch_with_fallback(self.store.fetch_active_bundles, [], "bundles"),
        )
        info = options.store_info or info
        if not info.bundles and bundles:
            info = info.model_copy(update={"bundles": bundles})
        return info

    async def _chat(
        self,
        messages: List[ChatMessage],
        user_preferences: Optional[UserPreferences],
        options: ChatOptions,
    ) -> ChatResult:
        user_id = options.user_id
        currency = self.settings.currency_symbol

        if await self._consent_refused(user_id):
            return ChatResult(success=False, message=CONSENT_REFUSAL, error="consent_required", handled_by="consent")

        text = latest_user_message(messages)
        if text is None:
            return ChatResult(success=False, message=NO_MESSAGE, error="no_user_message", handled_by="error")

        store_info = await self._store_context(options)
        faqs = apply_store_settings(load_faq(), store_info)

        warranty = warranty_shortcut(text, faqs)
        if warranty:
            return ChatResult(success=True, message=warranty, handled_by="faq")

        order_intent = detect_order_intent(text)
        if order_intent:
            reply = await handle_order_query(order_intent, text, user_id, self.store, currency)
            return ChatResult(success=True, message=reply, handled_by="orders")

        faq_hits = find_relevant_faq(text, faqs)
        if faq_hits:
            store_info = store_info.model_copy(update={"faqs": faq_hits})

        intent = await self.detector.detect(text)
        logger.info("[assistant] intent=%s category=%s confidence=%.2f",
                    intent.intent_type, intent.category, intent.confidence)

        user_data = await self.gather_user_data(user_id) if user_id else None

        catalog = await fetch_with_fallback(self.store.fetch_products, [], "products")
        if not catalog:
            return ChatResult(success=False, message=NO_PRODUCTS, intent=intent, error="no_products", handled_by="error")

        build = is_build_request(text, intent)
        products = await self.select_products(intent, catalog, build)

        prompt = compose_prompt(
            products,
            user_preferences=user_preferences,
            store_info=store_info,
            user_data=user_data,
            intent=intent,
            store_name=self.settings.store_name,
            currency=currency,
        )
        budget = intent.budget if not intent.budget.is_empty() else parse_budget(text)
        return await self._respond(prompt, to_llm_turns(messages), products, intent=intent,
                                   build=build, budget=budget)

    async def _respond(
        self,
        prompt: str,
        turns: List[Dict[str, str]],
        products: List[Product],
        intent: Optional[Intent] = None,
        build: bool = False,
        budget: Optional[Budget] = None,
        max_tokens: Optional[int] = None,
    ) -> ChatResult:
        """Send the composed context to the LLM and map every failure to a result."""
        currency = self.settings.currency_symbol
        try:
            completion = await self.llm.complete([{"role": "system", "content": prompt}] + turns,
                                                 max_tokens=max_tokens)
        except AllKeysExhaustedError as e:
            if build:
                logger.warning("[assistant] %s; answering build request with the component listing", e)
                listing = render_grouped_listing(group_by_component(products), budget, currency)
                return ChatResult(
                    success=True,
                    message=listing,
                    intent=intent,
                    matched_products=products[:MATCHED_PRODUCTS_RETURNED],
                    error="rate_limited",
                    handled_by="fallback",
                )
            logger.error("[assistant] %s", e)
            return ChatResult(success=False, message=RATE_LIMITED, intent=intent, error="rate_limited", handled_by="error")
        except LLMNotConfiguredError as e:
            logger.error("[assistant] %s", e)
            return ChatResult(success=False, message=APOLOGY, intent=intent, error="llm_not_configured", handled_by="error")
        except LLMError as e:
            logger.error("[assistant] LLM call failed (status=%s): %s", e.status_code, e)
            return ChatResult(success=False, message=APOLOGY, intent=intent, error="llm_error", handled_by="error")

        named = extract_recommended_products(completion.content, products)
        return ChatResult(
            success=True,
            message=completion.content,
            intent=intent,
            matched_products=(named or products)[:MATCHED_PRODUCTS_RETURNED],
            usage=completion.usage,
        )

    async def gather_user_data(self, user_id: str) -> UserIntelligence:
        """Each signal is fetched on its own; one failing source leaves the others intact."""
        history, components, viewed, popular, promotions, cart = await asyncio.gather(
            fetch_with_fallback(lambda: self.store.fetch_user_orders(user_id), [], "purchase_history"),
            fetch_with_fallback(lambda: self.store.fetch_user_components(user_id), [], "user_components"),
            fetch_with_fallback(lambda: self.store.fetch_recently_viewed(user_id), [], "recently_viewed"),
            fetch_with_fallback(self.store.fetch_popular_products, [], "popular_products"),
            fetch_with_fallback(self.store.fetch_active_promotions, [], "active_promotions"),
            fetch_with_fallback(lambda: self.store.fetch_user_cart(user_id), [], "cart"),
        )
        return UserIntelligence(
            purchase_history=history,
            user_components=components,
            recently_viewed=viewed,
            popular_products=popular,
            active_promotions=promotions,
            cart=cart,
        )

    async def select_products(self, intent: Intent, catalog: List[Product], build: bool) -> List[Product]:
        if build:
            return await enrich_with_reviews(gather_build_components(catalog), self.store)
        if intent.intent_type in MATCHER_INTENTS:
            return await self.matcher.match(intent, catalog)
        return await enrich_with_reviews(catalog[:PROMPT_PRODUCT_LIMIT], self.store)

    async def compare_products(self, product_ids: List[str], options: Optional[ChatOptions] = None) -> ChatResult:
        """LLM comparison of two or more catalog products."""
        options = options or ChatOptions()
        if len(set(product_ids or [])) < MIN_COMPARE_PRODUCTS:
            return ChatResult(success=False, message=TOO_FEW_TO_COMPARE, error="too_few_products", handled_by="error")
        if await self._consent_refused(options.user_id):
            return ChatResult(success=False, message=CONSENT_REFUSAL, error="consent_required", handled_by="consent")

        products = await fetch_with_fallback(lambda: self.store.fetch_products_by_ids(product_ids), [], "compare")
        if len(products) < MIN_COMPARE_PRODUCTS:
            return ChatResult(success=False, message=COMPARE_NOT_FOUND, error="products_not_found", handled_by="error")
        products = await enrich_with_reviews(products, self.store)

        currency = self.settings.currency_symbol
        listing = "\n".join(f"{i}. {p.name} - {format_price(p.price, currency)}" for i, p in enumerate(products, 1))
        question = f"Please compare these products and help me choose the best one:\n{listing}"
        intent = Intent(intent_type="comparison", confidence=1.0)
        prompt = compose_prompt(products, store_info=await self._store_context(options), intent=intent,
                                store_name=self.settings.store_name, currency=currency)
        result = await self._respond(prompt, [{"role": "user", "content": question}], products, intent=intent)
        # Every compared product stays on the result, named in the reply or not
        return result.model_copy(update={"matched_products": products}) if result.success else result

    async def recommend(
        self,
        query: str,
        category: Optional[str] = None,
        brand: Optional[str] = None,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        options: Optional[ChatOptions] = None,
    ) -> ChatResult:
        """Filtered catalog plus an LLM answer to a free-text request."""
        options = options or ChatOptions()
        if await self._consent_refused(options.user_id):
            return ChatResult(success=False, message=CONSENT_REFUSAL, error="consent_required", handled_by="consent")

        catalog = await fetch_with_fallback(self.store.fetch_products, [], "products")
        if not catalog:
            return ChatResult(success=False, message=NO_PRODUCTS, error="no_products", handled_by="error")
        products = filter_by_category(catalog, category)
        if brand:
            products = filter_by_brands(products, [brand])
        if min_price is not None:
            products = [p for p in products if p.price >= min_price]
        if max_price is not None:
            products = [p for p in products if p.price <= max_price]
        products = await enrich_with_reviews(products[:PROMPT_PRODUCT_LIMIT], self.store)

        currency = self.settings.currency_symbol
        question = f"I'm looking for: {query}"
        if max_price is not None:
            question += f". My budget is up to {format_price(max_price, currency)}."
        intent = Intent(
            intent_type="recommendation",
            category=category,
            budget=price_budget(min_price, max_price),
            brands=[brand] if brand else [],
            confidence=1.0,
        )
        user_data = await self.gather_user_data(options.user_id) if options.user_id else None
        prompt = compose_prompt(products, store_info=await self._store_context(options), user_data=user_data,
                                intent=intent, store_name=self.settings.store_name, currency=currency)
        result = await self._respond(prompt, [{"role": "user", "content": question}], products, intent=intent)
        if result.success:
            return result.model_copy(update={"matched_products": products[:MATCHED_PRODUCTS_RETURNED]})
        return result

    async def build_recommendations(
        self,
        preferences: Optional[UserPreferences] = None,
        options: Optional[ChatOptions] = None,
    ) -> ChatResult:
        """Full custom-PC build from the questionnaire answers. Laptops are never part of it."""
        preferences = preferences or UserPreferences()
        options = options or ChatOptions()
        if await self._consent_refused(options.user_id):
            return ChatResult(success=False, message=CONSENT_REFUSAL, error="consent_required", handled_by="consent")

        catalog = await fetch_with_fallback(self.store.fetch_products, [], "products")
        products = await enrich_with_reviews(gather_build_components(catalog), self.store)
        if not products:
            return ChatResult(success=False, message=NO_PRODUCTS, error="no_products", handled_by="error")

        budget = parse_budget(preferences.budget_range or "")
        intent = Intent(intent_type="build_help", budget=budget, brands=list(preferences.preferred_brands),
                        use_case=", ".join(preferences.pc_purpose) or None, confidence=1.0)
        user_data = await self.gather_user_data(options.user_id) if options.user_id else None
        prompt = compose_prompt(products, user_preferences=preferences, user_data=user_data, intent=intent,
                                store_name=self.settings.store_name, currency=self.settings.currency_symbol)
        return await self._respond(prompt, [{"role": "user", "content": BUILD_REQUEST}], products,
                                   intent=intent, build=True, budget=budget, max_tokens=1500)


def build_assistant(settings: Optional[Settings] = None) -> ShoppingAssistant:
    settings = settings or get_settings()
    return ShoppingAssistant(build_store(settings), LLMClient(settings), settings)


@lru_cache(maxsize=1)
def get_assistant() -> ShoppingAssistant:
    return build_assistant()
