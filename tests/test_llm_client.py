import asyncio

import pytest

from conftest import rate_limit_error, server_error
from storefront_ai.llm_client import (
    AllKeysExhaustedError,
    KeyRing,
    LLMError,
    LLMNotConfiguredError,
    parse_json_reply,
)


def test_rotation_advances_once_per_failed_key():
    ring = KeyRing(["a", "b", "c"])
    assert ring.current() == (0, "a")
    assert ring.rotate(0) == (1, "b")
    # A second turn that also failed on key 0 must not skip key 1
    assert ring.rotate(0) == (1, "b")
    assert ring.rotate(1) == (2, "c")
    assert ring.rotate(2) == (0, "a")


def test_rate_limited_key_is_rotated(make_llm):
    def handler(key, kwargs):
        if key == "key-a":
            raise rate_limit_error()
        return "hello from " + key

    llm = make_llm(handler)
    result = asyncio.run(llm.complete([{"role": "user", "content": "hi"}]))
    assert result.content == "hello from key-b"
    assert result.key_index == 1
    assert result.usage["total_tokens"] == 15
    assert [k for k, _ in llm.calls] == ["key-a", "key-b"]

    # The next call starts from the key that worked
    asyncio.run(llm.complete([{"role": "user", "content": "again"}]))
    assert llm.calls[-1][0] == "key-b"


def test_all_keys_exhausted(make_llm):
    def handler(key, kwargs):
        raise rate_limit_error()

    llm = make_llm(handler)
    with pytest.raises(AllKeysExhaustedError) as exc:
        asyncio.run(llm.complete([{"role": "user", "content": "hi"}]))
    assert exc.value.status_code == 429
    # Each configured key is tried exactly once
    assert sorted(k for k, _ in llm.calls) == ["key-a", "key-b", "key-c"]


def test_other_errors_are_not_retried(make_llm):
    def handler(key, kwargs):
        raise server_error()

    llm = make_llm(handler)
    with pytest.raises(LLMError) as exc:
        asyncio.run(llm.complete([{"role": "user", "content": "hi"}]))
    assert not isinstance(exc.value, AllKeysExhaustedError)
    assert exc.value.status_code == 500
    assert len(llm.calls) == 1


def test_request_parameters(make_llm, settings):
    llm = make_llm(lambda key, kwargs: "{}")
    asyncio.run(llm.complete([{"role": "user", "content": "hi"}], temperature=0.1, json_mode=True))
    _, kwargs = llm.calls[0]
    assert kwargs["model"] == settings.model_name
    assert kwargs["temperature"] == 0.1
    assert kwargs["max_tokens"] == settings.max_tokens
    assert kwargs["response_format"] == {"type": "json_object"}


def test_not_configured(make_llm):
    llm = make_llm(lambda key, kwargs: "unused", keys=[])
    assert not llm.configured
    with pytest.raises(LLMNotConfiguredError):
        asyncio.run(llm.complete([{"role": "user", "content": "hi"}]))


def test_parse_json_reply_tolerates_fences_and_prose():
    assert parse_json_reply('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_reply('Sure! Here you go: ["x", "y"] Hope that helps') == ["x", "y"]
    with pytest.raises(ValueError):
        parse_json_reply("no json here")
