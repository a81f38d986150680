import asyncio
import json

import pytest

from storefront_ai.intent import (
    FALLBACK_CONFIDENCE,
    IntentDetector,
    extract_intent_fallback,
    intent_from_llm,
    is_simple_query,
    parse_budget,
)
from storefront_ai.models import Budget


def test_budget_phrases():
    assert parse_budget("gaming laptop around 30k") == Budget(min=27000, max=33000, type="around")
    assert parse_budget("gpu under 50k") == Budget(max=50000, type="under")
    assert parse_budget("between 40k and 60k please") == Budget(min=40000, max=60000, type="range")
    assert parse_budget("above 20,000") == Budget(min=20000, type="above")
    assert parse_budget("my budget is 45000") == Budget(max=45000, type="exact")
    assert parse_budget("something affordable") == Budget()


def test_model_numbers_are_not_budget_ranges():
    # "i7-13700K" must not be read as a 7 to 13,700,000 range
    assert parse_budget("is the i7-13700K good?") == Budget()


def test_around_budget_is_always_symmetric():
    b = Budget(type="around", min=20000, max=40000)
    assert (b.min, b.max) == (27000, 33000)


@pytest.mark.parametrize("message", [
    "show me keyboards",
    "do you have RTX 4060",
    "any ssd under 5k",
    "available monitors",
    "laptops",
])
def test_simple_queries_skip_the_llm(message, make_llm):
    def handler(key, kwargs):
        raise AssertionError("LLM must not be called for simple queries")

    assert is_simple_query(message)
    intent = asyncio.run(IntentDetector(make_llm(handler)).detect(message))
    assert intent.confidence == FALLBACK_CONFIDENCE


def test_complex_queries_are_not_simple():
    assert not is_simple_query("show me which is better, RTX 4060 vs RX 7600")
    assert not is_simple_query("recommend a gpu for 1440p")


def test_fallback_extractor():
    intent = extract_intent_fallback("Show me affordable keyboards under 2k from Logitech")
    assert intent.intent_type == "product_search"
    assert intent.category == "keyboard"
    assert intent.budget == Budget(max=2000, type="under")
    assert intent.features == ["affordable"]
    assert intent.brands == ["logitech"]
    assert intent.confidence == 0.6


def test_fallback_extractor_prefers_cooler_over_cpu():
    assert extract_intent_fallback("any cpu cooler for my build").category == "cooler"


def test_greeting():
    assert extract_intent_fallback("hello!").intent_type == "greeting"


def test_llm_intent_is_parsed(make_llm):
    reply = {
        "intentType": "recommendation",
        "category": "Graphics Cards",
        "budget": {"min": 15000, "max": 20000, "type": "range"},
        "brands": ["MSI"],
        "features": ["ray tracing"],
        "keywords": ["RTX"],
        "useCase": "gaming",
        "confidence": 0.9,
    }
    llm = make_llm(lambda key, kwargs: "```json\n" + json.dumps(reply) + "\n```")
    intent = asyncio.run(IntentDetector(llm).detect("recommend a good gpu for 1080p gaming between 15k and 20k"))
    assert intent.intent_type == "recommendation"
    assert intent.category == "gpu"
    assert intent.budget == Budget(min=15000, max=20000, type="range")
    assert intent.keywords == ["rtx"]
    assert intent.use_case == "gaming"


def test_llm_around_budget_is_repaired():
    # The model returned an asymmetric "around" band
    intent = intent_from_llm({"category": "laptop", "budget": {"min": 25000, "max": 35000, "type": "around"}},
                             "laptop around 30k")
    assert intent.budget == Budget(min=27000, max=33000, type="around")


def test_missing_llm_budget_is_filled_from_message():
    intent = intent_from_llm({"category": "gpu", "budget": {}}, "which gpu is better under 20k")
    assert intent.budget == Budget(max=20000, type="under")


def test_llm_failure_falls_back(make_llm):
    llm = make_llm(lambda key, kwargs: "I think you want a graphics card!")
    intent = asyncio.run(IntentDetector(llm).detect("what gpu should i get for valorant"))
    assert intent.confidence == FALLBACK_CONFIDENCE
    assert intent.category == "gpu"


def test_no_api_key_uses_fallback(make_llm):
    llm = make_llm(lambda key, kwargs: "{}", keys=[])
    intent = asyncio.run(IntentDetector(llm).detect("recommend a mouse"))
    assert intent.confidence == FALLBACK_CONFIDENCE
    assert intent.category == "mouse"


def test_comparison_with_a_category_per_item(make_llm):
    reply = {"intentType": "comparison", "category": ["gpu", "processor"], "useCase": ["gaming"]}
    llm = make_llm(lambda key, kwargs: json.dumps(reply))
    intent = asyncio.run(IntentDetector(llm).detect("compare the rtx 4060 and the i5-12400F"))
    assert intent.intent_type == "comparison"
    assert intent.category == "gpu"
    assert intent.use_case == "gaming"


def test_non_text_category_is_dropped():
    intent = intent_from_llm({"intentType": "general_question", "category": 7}, "what do you sell?")
    assert intent.category is None
