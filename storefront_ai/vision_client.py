import asyncio
import base64
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Union

import google.generativeai as genai
import requests
from openai import AsyncOpenAI
from pydantic import ValidationError

from .categories import category_terms, normalize_category
from .config import Settings
from .llm_client import parse_json_reply
from .models import Product, VisionDescriptor


logger = logging.getLogger(__name__)

MIN_MATCH_SCORE = 30

BRAND_WEIGHT = 40
MODEL_WEIGHT = 50
TYPE_WEIGHT = 35
KEYWORD_NAME_WEIGHT = 5
KEYWORD_DESCRIPTION_WEIGHT = 3
KEYWORD_TYPE_WEIGHT = 4
SPEC_WEIGHT = 8

# Vision product types mapped to the spellings found in catalog component types
TYPE_SYNONYMS: Dict[str, List[str]] = {
    "processor": ["processor", "cpu"],
    "cpu": ["processor", "cpu"],
    "graphics card": ["graphics card", "gpu", "video card"],
    "gpu": ["graphics card", "gpu", "video card"],
    "ram": ["ram", "memory"],
    "memory": ["ram", "memory"],
    "motherboard": ["motherboard", "mobo", "mainboard"],
    "storage": ["ssd", "hdd", "storage", "hard drive", "solid state"],
    "ssd": ["ssd", "solid state", "storage"],
    "hdd": ["hdd", "hard drive", "storage"],
    "power supply": ["power supply", "psu"],
    "psu": ["power supply", "psu"],
    "case": ["case", "chassis", "tower"],
    "cooling": ["cooler", "cooling", "fan", "radiator"],
    "cooler": ["cooler", "cooling", "fan", "radiator"],
    "monitor": ["monitor", "display", "screen"],
    "keyboard": ["keyboard"],
    "mouse": ["mouse", "mice"],
    "headset": ["headset", "headphone"],
    "laptop": ["laptop", "notebook"],
}

VISION_PROMPT = """You are a computer hardware expert identifying products for a PC store.

Type rules:
- Intel or AMD CPUs: productType "Processor"
- Graphics cards: productType "Graphics Card"
- RAM sticks: productType "RAM"
- Motherboards: productType "Motherboard"
- Storage: productType "SSD", "HDD" or "Storage"
- Power supplies: productType "Power Supply"

Identify the exact product type, the brand, the model name/number (e.g. "Core i7-13700K",
"RTX 4060"), visible specifications and searchable keywords.

Return ONLY valid JSON with this structure:
{
  "productType": "Processor",
  "brand": "Intel",
  "model": "Core i7-13700K",
  "specs": ["16 cores", "3.4 GHz"],
  "keywords": ["intel", "i7", "13700k", "processor", "cpu"],
  "confidence": 0.95
}"""

ImageInput = Union[bytes, str]


def sniff_mime(data: bytes) -> str:
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


def to_image_url(image: ImageInput) -> str:
    """Data URL for raw bytes; strings are already URLs (remote or data:)."""
    if isinstance(image, bytes):
        return f"data:{sniff_mime(image)};base64,{base64.b64encode(image).decode('utf-8')}"
    return image


_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.+)$", re.DOTALL)


def extract_from_text(text: str) -> VisionDescriptor:
    """Keyword-only descriptor for replies that are not JSON."""
    words = [w for w in (text or "").lower().split() if len(w) > 3]
    return VisionDescriptor(
        product_type="Unknown",
        keywords=words,
        confidence=0.5,
        notes=(text or "")[:200],
    )


def _str_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(v) for v in value if v is not None]
    return []


def parse_descriptor(text: str) -> VisionDescriptor:
    try:
        data = parse_json_reply(text)
    except ValueError:
        return extract_from_text(text)
    if not isinstance(data, dict):
        return extract_from_text(text)
    try:
        confidence = float(data.get("confidence") or 0)
    except (TypeError, ValueError):
        confidence = 0.0
    try:
        return VisionDescriptor(
            product_type=data.get("productType") or data.get("product_type") or data.get("category"),
            brand=data.get("brand"),
            model=data.get("model") or data.get("model_guess"),
            specs=_str_list(data.get("specs") or data.get("specifications")),
            keywords=[k.lower() for k in _str_list(data.get("keywords"))],
            confidence=min(max(confidence, 0.0), 1.0),
            notes=data.get("notes") or data.get("description"),
        )
    except ValidationError:
        return extract_from_text(text)


class VisionClient:
    """Identifies a product from a photo with the configured vision provider.

    ``analyze`` never raises: failures come back as a zero-confidence
    descriptor carrying the reason in ``notes``.
    """

    def __init__(self, settings: Settings, client_factory: Optional[Callable[[], Any]] = None):
        self.settings = settings
        self.provider = settings.vision_provider
        self._factory = client_factory
        self._client = None

    @property
    def configured(self) -> bool:
        if self.provider == "gemini":
            return bool(self.settings.gemini_api_key)
        return bool(self.settings.vision_api_key) or self._factory is not None

    def _openai_client(self):
        if self._client is None:
            if self._factory is not None:
                self._client = self._factory()
            else:
                self._client = AsyncOpenAI(
                    api_key=self.settings.vision_api_key,
                    base_url=self.settings.vision_base_url,
                    timeout=self.settings.timeout_seconds,
                    max_retries=0,
                )
        return self._client

    async def analyze(self, image: ImageInput, prompt_hint: str = "") -> VisionDescriptor:
        if not self.configured:
            return VisionDescriptor(confidence=0.0, notes="Vision API not configured. Set VISION_API_KEY to enable.")
        try:
            if self.provider == "gemini":
                text = await self._analyze_gemini(image, prompt_hint)
            else:
                text = await self._analyze_openai(image, prompt_hint)
        except Exception as e:
            logger.warning("[vision] %s analysis failed: %s", self.provider, e)
            return VisionDescriptor(confidence=0.0, notes=f"Vision API error: {e}")
        descriptor = parse_descriptor(text)
        logger.info("[vision] descriptor type=%s brand=%s model=%s confidence=%.2f",
                    descriptor.product_type, descriptor.brand, descriptor.model, descriptor.confidence)
        return descriptor

    def _user_text(self, prompt_hint: str) -> str:
        if prompt_hint:
            return f'User context: "{prompt_hint}"\n\nAnalyze this product image and reply with the JSON only.'
        return "Analyze this product image and reply with the JSON only."

    async def _analyze_openai(self, image: ImageInput, prompt_hint: str) -> str:
        kwargs: Dict[str, Any] = {
            "model": self.settings.vision_model,
            "messages": [
                {"role": "system", "content": VISION_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": self._user_text(prompt_hint)},
                        {"type": "image_url", "image_url": {"url": to_image_url(image)}},
                    ],
                },
            ],
            "temperature": 0.1,
            "max_tokens": 600,
        }
        if self.provider == "groq":
            kwargs["response_format"] = {"type": "json_object"}
        resp = await self._openai_client().chat.completions.create(**kwargs)
        return resp.choices[0].message.content if resp and resp.choices else ""

    async def _image_part(self, image: ImageInput) -> Dict[str, Any]:
        if isinstance(image, bytes):
            return {"mime_type": sniff_mime(image), "data": image}
        m = _DATA_URL_RE.match(image)
        if m:
            return {"mime_type": m.group("mime"), "data": base64.b64decode(m.group("data"))}
        resp = await asyncio.to_thread(requests.get, image, timeout=self.settings.timeout_seconds)
        resp.raise_for_status()
        mime = resp.headers.get("content-type", "").split(";")[0] or sniff_mime(resp.content)
        return {"mime_type": mime, "data": resp.content}

    async def _analyze_gemini(self, image: ImageInput, prompt_hint: str) -> str:
        part = await self._image_part(image)
        genai.configure(api_key=self.settings.gemini_api_key)
        model = genai.GenerativeModel(self.settings.gemini_vision_model)
        prompt = f"{VISION_PROMPT}\n\n{self._user_text(prompt_hint)}"
        resp = await asyncio.to_thread(model.generate_content, [prompt, part])
        return getattr(resp, "text", "") or ""


def type_synonyms(product_type: str) -> List[str]:
    """Catalog spellings for a vision product type, via the shared category aliases
    ("Video Card" and "VGA" resolve to the gpu terms)."""
    vtype = product_type.strip().lower()
    canonical = normalize_category(vtype) or vtype
    out = list(TYPE_SYNONYMS.get(vtype, [])) + list(TYPE_SYNONYMS.get(canonical, []))
    out += category_terms(canonical)
    return list(dict.fromkeys(out)) or [vtype]


def _contains_either(a: str, b: str) -> bool:
    return bool(a) and bool(b) and (a in b or b in a)


def score_product(descriptor: VisionDescriptor, product: Product) -> float:
    name = (product.name or "").lower()
    description = (product.description or "").lower()
    brand = (product.brand or "").strip().lower()
    types = [t for t in ((product.category or "").lower(), (product.component_type or "").lower()) if t]
    score = 0.0

    vbrand = (descriptor.brand or "").strip().lower()
    if vbrand and vbrand != "unknown" and _contains_either(vbrand, brand):
        score += BRAND_WEIGHT

    model = (descriptor.model or "").strip().lower()
    if model and (model in name or model in description):
        score += MODEL_WEIGHT

    vtype = (descriptor.product_type or "").strip().lower()
    if vtype and vtype != "unknown":
        synonyms = type_synonyms(vtype)
        if any(any(_contains_either(syn, t) for t in types) or syn in name for syn in synonyms):
            score += TYPE_WEIGHT

    for kw in descriptor.keywords:
        k = kw.strip().lower()
        if len(k) < 3:
            continue
        if k in name:
            score += KEYWORD_NAME_WEIGHT
        if k in description:
            score += KEYWORD_DESCRIPTION_WEIGHT
        if any(k in t for t in types):
            score += KEYWORD_TYPE_WEIGHT

    for spec in descriptor.specs:
        s = spec.strip().lower()
        if s and (s in name or s in description):
            score += SPEC_WEIGHT
    return score


def match_products(descriptor: VisionDescriptor, catalog: List[Product], min_score: float = MIN_MATCH_SCORE) -> List[Product]:
    """Catalog products scoring at least ``min_score`` against the descriptor, best first."""
    scored = [(score_product(descriptor, p), p) for p in catalog]
    kept = [(s, p) for s, p in scored if s >= min_score]
    kept.sort(key=lambda sp: sp[0], reverse=True)
    return [p.model_copy(update={"match_score": s}) for s, p in kept]
