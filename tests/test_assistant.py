import asyncio

from conftest import rate_limit_error, server_error
from storefront_ai.assistant import APOLOGY, CONSENT_REFUSAL, RATE_LIMITED, TOO_FEW_TO_COMPARE, ShoppingAssistant
from storefront_ai.catalog import JsonCatalogStore
from storefront_ai.models import ChatMessage, ChatOptions, UserIntelligence, UserPreferences


def _msgs(*texts):
    return [ChatMessage(sender="user" if i % 2 == 0 else "assistant", text=t) for i, t in enumerate(texts)]


def _chat(assistant, text, user_id=None, **kw):
    return asyncio.run(assistant.chat(_msgs(text), options=ChatOptions(user_id=user_id), **kw))


def _system_prompt(llm):
    return llm.calls[-1][1]["messages"][0]["content"]


class BrokenSignalsStore(JsonCatalogStore):
    async def fetch_user_orders(self, user_id, limit=10):
        raise ConnectionError("orders down")

    async def fetch_user_components(self, user_id):
        raise ConnectionError("components down")

    async def fetch_recently_viewed(self, user_id, limit=5):
        raise ConnectionError("history down")

    async def fetch_popular_products(self, limit=5):
        raise TimeoutError("trending down")

    async def fetch_active_promotions(self):
        raise ValueError("bad voucher row")

    async def fetch_user_cart(self, user_id):
        raise ConnectionError("cart down")


def test_consent_refusal_short_circuits(store, make_llm):
    def handler(key, kwargs):
        raise AssertionError("no LLM call after a consent refusal")

    result = _chat(ShoppingAssistant(store, make_llm(handler)), "show me keyboards", user_id="private-user")
    assert not result.success
    assert result.error == "consent_required"
    assert result.message == CONSENT_REFUSAL
    assert result.handled_by == "consent"


def test_cancel_pending_order(store, make_llm):
    assistant = ShoppingAssistant(store, make_llm(lambda k, kw: "unused"))
    result = _chat(assistant, "cancel order #1234567", user_id="demo-user")
    assert result.success and result.handled_by == "orders"
    assert "cancelled successfully" in result.message
    assert "5-7 business days" in result.message
    order = asyncio.run(store.get_order("1234567", "demo-user"))
    assert order.status == "cancelled"
    assert order.cancellation_reason

    again = _chat(assistant, "cancel order #1234567", user_id="demo-user")
    assert "already been cancelled" in again.message


def test_cancel_delivered_order_is_refused(store, make_llm):
    result = _chat(ShoppingAssistant(store, make_llm(lambda k, kw: "unused")), "cancel order #7654321", user_id="demo-user")
    assert "cannot be cancelled" in result.message
    assert "support" in result.message
    assert asyncio.run(store.get_order("7654321", "demo-user")).status == "delivered"


def test_order_shortcuts_need_login_and_number(store, make_llm):
    assistant = ShoppingAssistant(store, make_llm(lambda k, kw: "unused"))
    assert _chat(assistant, "cancel order #1234567").message == "Please log in to cancel an order."
    assert "provide your order number" in _chat(assistant, "track my order", user_id="demo-user").message
    assert "could not find order 9999999" in _chat(assistant, "track order #9999999", user_id="demo-user").message


def test_tracking_reply(store, make_llm):
    result = _chat(ShoppingAssistant(store, make_llm(lambda k, kw: "unused")), "where is my order #5550001", user_id="demo-user")
    assert "shipped and is on the way" in result.message
    assert "LBC" in result.message and "LBC7781234" in result.message


def test_broken_product_gets_warranty_answer(store, make_llm):
    def handler(key, kwargs):
        raise AssertionError("a broken-product report never reaches the LLM")

    result = _chat(ShoppingAssistant(store, make_llm(handler)), "my RTX 4060 graphics card is broken, no display")
    assert result.success
    assert result.handled_by == "faq"
    assert "warranty" in result.message.lower()
    assert result.intent is None


def test_failing_user_signals_degrade_to_empty(demo_rows, make_llm):
    store = BrokenSignalsStore(**demo_rows)
    assistant = ShoppingAssistant(store, make_llm(lambda k, kw: "ok"))
    data = asyncio.run(assistant.gather_user_data("demo-user"))
    assert isinstance(data, UserIntelligence)
    assert data.is_empty()

    llm = make_llm(lambda k, kw: "Here are some keyboards")
    result = _chat(ShoppingAssistant(store, llm), "show me keyboards", user_id="demo-user")
    assert result.success
    assert "PURCHASE HISTORY" not in _system_prompt(llm)


def test_user_signals_reach_the_prompt(store, make_llm):
    llm = make_llm(lambda k, kw: "Sure!")
    result = _chat(ShoppingAssistant(store, llm), "show me keyboards", user_id="demo-user")
    assert result.success
    prompt = _system_prompt(llm)
    assert "Order #1234567" in prompt
    assert "Code BUILD10" in prompt and "SUMMER2025" not in prompt
    assert "RECENTLY VIEWED" in prompt
    assert "Cart Total: ₱3,485" in prompt
    assert "Esports Peripheral Pack (10% off)" in prompt
    assert "10th Gen Office Kit" not in prompt


def test_successful_turn(store, make_llm):
    llm = make_llm(lambda k, kw: "The Redragon K552 is a great pick.")
    result = _chat(ShoppingAssistant(store, llm), "show me keyboards under 2k")
    assert result.success and result.handled_by == "assistant"
    assert result.message == "The Redragon K552 is a great pick."
    assert result.intent.category == "keyboard"
    assert [p.id for p in result.matched_products] == ["p-kb-1"]
    assert result.usage["total_tokens"] == 15


def test_context_is_limited_to_recent_turns(store, make_llm):
    llm = make_llm(lambda k, kw: "ok")
    texts = [f"turn {i}" for i in range(10)] + ["show me keyboards"]
    asyncio.run(ShoppingAssistant(store, llm).chat(_msgs(*texts)))
    messages = llm.calls[-1][1]["messages"]
    assert messages[0]["role"] == "system"
    assert [m["content"] for m in messages[1:]] == texts[-6:]
    assert messages[-1] == {"role": "user", "content": "show me keyboards"}
    assert messages[-2]["role"] == "assistant"


def test_rate_limit_rotates_keys(store, make_llm):
    def handler(key, kwargs):
        if key == "key-a":
            raise rate_limit_error()
        return "answer via " + key

    result = _chat(ShoppingAssistant(store, make_llm(handler)), "show me mice")
    assert result.success
    assert result.message == "answer via key-b"


def test_all_keys_exhausted(store, make_llm):
    def handler(key, kwargs):
        raise rate_limit_error()

    result = _chat(ShoppingAssistant(store, make_llm(handler)), "show me mice")
    assert not result.success
    assert result.error == "rate_limited"
    assert result.message == RATE_LIMITED
    assert result.message != APOLOGY


def test_exhausted_keys_on_build_request_list_components(store, make_llm):
    def handler(key, kwargs):
        raise rate_limit_error()

    result = _chat(ShoppingAssistant(store, make_llm(handler)), "help me build a gaming pc under 60k")
    assert result.success
    assert result.handled_by == "fallback"
    assert "**Processor**" in result.message and "**Graphics Card**" in result.message
    assert "Laptop" not in result.message
    assert "Cheapest build" in result.message
    assert all("laptop" not in p.component_type.lower() for p in result.matched_products)


def test_other_llm_errors_return_apology(store, make_llm):
    def handler(key, kwargs):
        raise server_error()

    result = _chat(ShoppingAssistant(store, make_llm(handler)), "show me mice")
    assert not result.success
    assert result.error == "llm_error"
    assert result.message == APOLOGY


def test_no_api_key_returns_apology(store, make_llm):
    result = _chat(ShoppingAssistant(store, make_llm(lambda k, kw: "unused", keys=[])), "show me mice")
    assert not result.success
    assert result.message == APOLOGY
    assert result.intent.category == "mouse"


def test_no_user_message(store, make_llm):
    result = asyncio.run(ShoppingAssistant(store, make_llm(lambda k, kw: "x")).chat(
        [ChatMessage(sender="assistant", text="Hi! How can I help?")]))
    assert not result.success
    assert result.error == "no_user_message"


def test_empty_catalog(make_llm):
    result = _chat(ShoppingAssistant(JsonCatalogStore(), make_llm(lambda k, kw: "x")), "show me mice")
    assert not result.success
    assert result.error == "no_products"


def test_faq_hits_become_prompt_context(store, make_llm):
    llm = make_llm(lambda k, kw: "We accept GCash.")
    result = _chat(ShoppingAssistant(store, llm), "can I pay with gcash for a keyboard?")
    assert result.success
    prompt = _system_prompt(llm)
    assert "STORE POLICIES & FAQ" in prompt
    assert "What payment methods do you accept?" in prompt


def test_context_ends_with_the_answered_user_turn(store, make_llm):
    llm = make_llm(lambda k, kw: "ok")
    asyncio.run(ShoppingAssistant(store, llm).chat(_msgs("show me keyboards", "Here you go")))
    messages = llm.calls[-1][1]["messages"]
    assert messages[1:] == [{"role": "user", "content": "show me keyboards"}]


def test_trackball_is_a_product_search(store, make_llm):
    llm = make_llm(lambda k, kw: "We have no trackballs, but the Logitech G102 is popular.")
    result = _chat(ShoppingAssistant(store, llm), "do you have a trackball mouse?")
    assert result.success and result.handled_by == "assistant"
    assert result.intent.category == "mouse"


def test_matched_products_follow_the_reply(store, make_llm):
    llm = make_llm(lambda k, kw: "Go for the Logitech G213 Prodigy if it comes back in stock.")
    result = _chat(ShoppingAssistant(store, llm), "show me keyboards")
    assert [p.id for p in result.matched_products] == ["p-kb-2"]


def test_compare_needs_two_products(store, make_llm):
    def handler(key, kwargs):
        raise AssertionError("nothing to compare")

    assistant = ShoppingAssistant(store, make_llm(handler))
    result = asyncio.run(assistant.compare_products(["p-gpu-1"]))
    assert not result.success
    assert result.error == "too_few_products"
    assert result.message == TOO_FEW_TO_COMPARE

    missing = asyncio.run(assistant.compare_products(["p-gpu-1", "p-nope"]))
    assert missing.error == "products_not_found"


def test_compare_products(store, make_llm):
    llm = make_llm(lambda k, kw: "The RX 7600 is cheaper, the RTX 4060 runs cooler.")
    result = asyncio.run(ShoppingAssistant(store, llm).compare_products(["p-gpu-2", "p-gpu-1"]))
    assert result.success
    assert [p.id for p in result.matched_products] == ["p-gpu-2", "p-gpu-1"]
    question = llm.calls[-1][1]["messages"][-1]["content"]
    assert question.startswith("Please compare these products")
    assert "1. Sapphire Pulse Radeon RX 7600 8GB - ₱16,495" in question
    assert "2. MSI GeForce RTX 4060 Ventus 2X 8GB - ₱18,995" in question


def test_recommend_filters_before_asking(store, make_llm):
    llm = make_llm(lambda k, kw: "The Redragon K552 fits your budget.")
    result = asyncio.run(ShoppingAssistant(store, llm).recommend(
        "a mechanical keyboard for gaming", category="keyboard", max_price=2000))
    assert result.success
    assert [p.id for p in result.matched_products] == ["p-kb-1"]
    assert result.intent.budget.max == 2000
    question = llm.calls[-1][1]["messages"][-1]["content"]
    assert question == "I'm looking for: a mechanical keyboard for gaming. My budget is up to ₱2,000."
    prompt = _system_prompt(llm)
    assert "Logitech G213" not in prompt


def test_recommend_respects_consent(store, make_llm):
    result = asyncio.run(ShoppingAssistant(store, make_llm(lambda k, kw: "x")).recommend(
        "a mouse", options=ChatOptions(user_id="private-user")))
    assert result.error == "consent_required"


def test_build_recommendations_skip_laptops(store, make_llm):
    llm = make_llm(lambda k, kw: "Pair the AMD Ryzen 5 5600 with the Gigabyte B550M DS3H.")
    prefs = UserPreferences(pc_purpose=["gaming"], budget_range="40k-60k")
    result = asyncio.run(ShoppingAssistant(store, llm).build_recommendations(prefs))
    assert result.success
    assert result.intent.intent_type == "build_help"
    assert result.intent.budget.max == 60000
    ids = {p.id for p in result.matched_products}
    assert {"p-cpu-3", "p-mb-2"} <= ids
    assert "p-lap-1" not in ids and "p-gpu-1" not in ids
    prompt = _system_prompt(llm)
    assert "PC BUILD ASSISTANT MODE" in prompt
    assert "TUF Gaming F15 Laptop" not in prompt
    assert llm.calls[-1][1]["max_tokens"] == 1500


def test_build_recommendations_list_components_when_rate_limited(store, make_llm):
    def handler(key, kwargs):
        raise rate_limit_error()

    result = asyncio.run(ShoppingAssistant(store, make_llm(handler)).build_recommendations(
        UserPreferences(budget_range="under 60k")))
    assert result.success and result.handled_by == "fallback"
    assert "**Processor**" in result.message
    assert "Laptop" not in result.message
