import json
import logging
import re
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel

from .config import Settings


logger = logging.getLogger(__name__)


class LLMError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LLMNotConfiguredError(LLMError):
    pass


class AllKeysExhaustedError(LLMError):
    def __init__(self, attempts: int):
        super().__init__(f"all {attempts} API keys are rate limited", status_code=429)
        self.attempts = attempts


class Completion(BaseModel):
    content: str
    usage: Optional[Dict[str, Any]] = None
    key_index: int = 0


class KeyRing:
    """Ordered API keys with a lock-guarded rotation cursor.

    ``rotate(failed)`` only moves the cursor when it still points at the key
    that failed, so two turns hitting a 429 on the same key advance it once.
    """

    def __init__(self, keys: List[str]):
        self._keys = list(keys)
        self._index = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._keys)

    def current(self) -> Tuple[int, str]:
        with self._lock:
            return self._index, self._keys[self._index]

    def rotate(self, failed: int) -> Tuple[int, str]:
        with self._lock:
            if self._index == failed:
                self._index = (failed + 1) % len(self._keys)
            return self._index, self._keys[self._index]


_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", (text or "").strip()).strip()


def parse_json_reply(text: str) -> Any:
    """Parse a model reply as JSON, tolerating code fences and surrounding prose.

    Raises ValueError when nothing parseable is found.
    """
    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except ValueError:
        pass
    m = re.search(r"(\{[\s\S]*\}|\[[\s\S]*\])", cleaned)
    if m:
        return json.loads(m.group(0))
    raise ValueError("no JSON object in model reply")


ClientFactory = Callable[[str], Any]


class LLMClient:
    """Chat-completion client for an OpenAI-compatible endpoint with
    key rotation on rate limits."""

    def __init__(self, settings: Settings, client_factory: Optional[ClientFactory] = None):
        self.settings = settings
        self.keys = KeyRing(settings.api_keys) if settings.api_keys else None
        self._factory = client_factory or self._default_factory
        self._clients: Dict[str, Any] = {}

    def _default_factory(self, api_key: str) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=api_key,
            base_url=self.settings.base_url,
            timeout=self.settings.timeout_seconds,
            max_retries=0,
        )

    def _client_for(self, api_key: str):
        if api_key not in self._clients:
            self._clients[api_key] = self._factory(api_key)
        return self._clients[api_key]

    @property
    def configured(self) -> bool:
        return self.keys is not None and len(self.keys) > 0

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
        json_mode: bool = False,
    ) -> Completion:
        if not self.configured:
            raise LLMNotConfiguredError("no API key configured")

        kwargs: Dict[str, Any] = {
            "model": model or self.settings.model_name,
            "messages": messages,
            "temperature": self.settings.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.settings.max_tokens,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        attempts = len(self.keys)
        index, key = self.keys.current()
        for attempt in range(attempts):
            try:
                resp = await self._client_for(key).chat.completions.create(**kwargs)
            except openai.RateLimitError:
                logger.warning("[llm] key #%d rate limited (attempt %d/%d), rotating", index, attempt + 1, attempts)
                index, key = self.keys.rotate(index)
                continue
            except openai.APIStatusError as e:
                raise LLMError(f"LLM request failed: {e.message}", status_code=e.status_code) from e
            except openai.APIError as e:
                raise LLMError(f"LLM request failed: {e}") from e

            content = resp.choices[0].message.content if resp and resp.choices else ""
            usage = getattr(resp, "usage", None)
            if hasattr(usage, "model_dump"):
                usage = usage.model_dump()
            return Completion(content=(content or "").strip(), usage=usage, key_index=index)

        raise AllKeysExhaustedError(attempts)
