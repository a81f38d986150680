import os
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field


GROQ_BASE_URL = "https://api.groq.com/openai/v1"


def _split_keys(raw: Optional[str]) -> List[str]:
    return [k.strip() for k in (raw or "").split(",") if k.strip()]


class Settings(BaseModel):
    api_keys: List[str] = Field(default_factory=list)
    base_url: Optional[str] = GROQ_BASE_URL
    model_name: str = "llama-3.3-70b-versatile"
    temperature: float = 0.7
    max_tokens: int = 1024
    timeout_seconds: float = 30.0

    vision_provider: str = "groq"
    vision_api_key: Optional[str] = None
    vision_base_url: Optional[str] = GROQ_BASE_URL
    vision_model: str = "meta-llama/llama-4-scout-17b-16e-instruct"
    gemini_api_key: Optional[str] = None
    gemini_vision_model: str = "gemini-1.5-flash"

    data_dir: str = "data"
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    prompt_base: str = "config/prompts"

    store_name: str = "Egie GameShop"
    currency_symbol: str = "₱"

    rate_limit_max: int = 60
    rate_limit_window: int = 60

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        keys = _split_keys(env.get("OPENAI_API_KEYS")) or _split_keys(env.get("OPENAI_API_KEY"))
        provider = env.get("VISION_API_PROVIDER", "groq").strip().lower()
        # Non-groq providers default to the vendor's own endpoint
        default_vision_url = GROQ_BASE_URL if provider == "groq" else None
        default_vision_model = (
            "meta-llama/llama-4-scout-17b-16e-instruct" if provider == "groq" else "gpt-4o"
        )
        return cls(
            api_keys=keys,
            base_url=env.get("OPENAI_BASE_URL", GROQ_BASE_URL) or None,
            model_name=env.get("OPENAI_MODEL_NAME", "llama-3.3-70b-versatile"),
            temperature=float(env.get("LLM_TEMPERATURE", "0.7")),
            max_tokens=int(env.get("LLM_MAX_TOKENS", "1024")),
            timeout_seconds=float(env.get("LLM_TIMEOUT_SECONDS", "30")),
            vision_provider=provider,
            vision_api_key=env.get("VISION_API_KEY") or (keys[0] if keys else None),
            vision_base_url=env.get("VISION_BASE_URL", default_vision_url) or None,
            vision_model=env.get("OPENAI_VISION_MODEL", default_vision_model),
            gemini_api_key=env.get("GEMINI_API_KEY"),
            gemini_vision_model=env.get("GEMINI_VISION_MODEL", "gemini-1.5-flash"),
            data_dir=env.get("DATA_DIR", "data"),
            supabase_url=env.get("SUPABASE_URL"),
            supabase_key=env.get("SUPABASE_KEY"),
            prompt_base=env.get("PROMPT_BASE", "config/prompts"),
            store_name=env.get("STORE_NAME", "Egie GameShop"),
            currency_symbol=env.get("CURRENCY_SYMBOL", "₱"),
            rate_limit_max=int(env.get("RATE_LIMIT_MAX", "60")),
            rate_limit_window=int(env.get("RATE_LIMIT_WINDOW", "60")),
        )

    @property
    def llm_configured(self) -> bool:
        return bool(self.api_keys)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
