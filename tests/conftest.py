import copy
import json
import os
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import httpx
import openai
import pytest

from storefront_ai.catalog import JsonCatalogStore
from storefront_ai.config import Settings
from storefront_ai.llm_client import LLMClient


DATA_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "data")


def rate_limit_error() -> openai.RateLimitError:
    request = httpx.Request("POST", "https://api.test/v1/chat/completions")
    return openai.RateLimitError("rate limited", response=httpx.Response(429, request=request), body=None)


def server_error() -> openai.InternalServerError:
    request = httpx.Request("POST", "https://api.test/v1/chat/completions")
    return openai.InternalServerError("upstream exploded", response=httpx.Response(500, request=request), body=None)


def completion(text: str, usage=None):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        usage=usage,
    )


class FakeChat:
    """Stands in for AsyncOpenAI: ``handler(key, kwargs)`` returns reply text or raises."""

    def __init__(self, key, handler, calls):
        self.key = key
        self.handler = handler
        self.calls = calls
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self.create))

    async def create(self, **kwargs):
        self.calls.append((self.key, kwargs))
        result = self.handler(self.key, kwargs)
        if isinstance(result, str):
            return completion(result, usage={"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15})
        return result


@pytest.fixture
def settings():
    return Settings(api_keys=["key-a", "key-b", "key-c"], base_url="https://api.test/v1", currency_symbol="₱")


@pytest.fixture
def make_llm(settings):
    """Build an LLMClient whose every call goes to ``handler``; calls are recorded on ``.calls``."""

    def _make(handler, keys=None):
        s = settings if keys is None else settings.model_copy(update={"api_keys": keys})
        calls = []
        llm = LLMClient(s, client_factory=lambda key: FakeChat(key, handler, calls))
        llm.calls = calls
        return llm

    return _make


@pytest.fixture
def demo_rows():
    rows = {}
    for key, fname in JsonCatalogStore.FILES.items():
        with open(os.path.join(DATA_DIR, fname), "r", encoding="utf-8") as f:
            rows[key] = json.load(f)
    # Keep vouchers valid regardless of when the suite runs
    soon = (datetime.now(timezone.utc) + timedelta(days=30)).isoformat()
    past = (datetime.now(timezone.utc) - timedelta(days=30)).isoformat()
    for v in rows["vouchers"]:
        v["valid_until"] = past if v["code"] == "SUMMER2025" else soon
    return rows


@pytest.fixture
def store(demo_rows):
    return JsonCatalogStore(**copy.deepcopy(demo_rows))
