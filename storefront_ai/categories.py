"""Category vocabulary shared by the intent detector, the product matcher,
the PC builder and the vision matcher."""

import re
from typing import Dict, List, Optional


# Deterministic detector table. First category with a hit wins, so the more
# specific entries come first ("cpu cooler" is a cooler, a laptop with an
# RTX GPU is a laptop).
CATEGORY_KEYWORDS: Dict[str, List[str]] = {
    "laptop": ["laptop", "notebook", "macbook", "chromebook"],
    "cooler": ["cpu cooler", "cooler", "aio", "liquid cooling"],
    "gpu": ["gpu", "graphics card", "video card", "vid card", "rtx", "gtx", "radeon", "geforce"],
    "processor": ["processor", "processer", "cpu", "ryzen", "core i3", "core i5", "core i7", "core i9"],
    "motherboard": ["motherboard", "mobo", "mainboard"],
    "ram": ["ram", "memory", "ddr4", "ddr5", "dimm"],
    "ssd": ["ssd", "nvme", "m.2", "solid state"],
    "hdd": ["hdd", "hard drive", "hard disk"],
    "psu": ["psu", "power supply"],
    "case": ["pc case", "chassis", "case", "casing"],
    "monitor": ["monitor", "display"],
    "keyboard": ["keyboard"],
    "mouse": ["mouse", "mice"],
    "headset": ["headset", "headphone"],
    "speaker": ["speaker"],
    "webcam": ["webcam", "web camera"],
}

# Plural and synonym spellings mapped to the canonical category name
CATEGORY_ALIASES: Dict[str, str] = {
    "laptops": "laptop", "notebook": "laptop", "notebooks": "laptop",
    "processors": "processor", "cpu": "processor", "cpus": "processor",
    "gpus": "gpu", "graphics": "gpu", "graphics card": "gpu", "graphics cards": "gpu",
    "video card": "gpu", "video cards": "gpu", "vga": "gpu",
    "rams": "ram", "memory": "ram",
    "motherboards": "motherboard", "mobo": "motherboard", "mainboard": "motherboard",
    "ssds": "ssd", "hdds": "hdd", "hard drive": "hdd",
    "psus": "psu", "power supply": "psu", "power supplies": "psu",
    "cases": "case", "chassis": "case", "pc case": "case",
    "coolers": "cooler", "cooling": "cooler", "cpu cooler": "cooler",
    "monitors": "monitor", "display": "monitor",
    "keyboards": "keyboard",
    "mice": "mouse",
    "headsets": "headset", "headphones": "headset",
    "speakers": "speaker",
    "webcams": "webcam",
}

# Component-type spellings per canonical category, matched as substrings
# in either direction against a product's component type
CATEGORY_TERMS: Dict[str, List[str]] = {
    "laptop": ["laptop", "notebook"],
    "processor": ["processor", "cpu"],
    "gpu": ["gpu", "graphics card", "video card", "vga"],
    "ram": ["ram", "memory"],
    "motherboard": ["motherboard", "mobo", "mainboard"],
    "ssd": ["ssd", "solid state"],
    "hdd": ["hdd", "hard disk", "hard drive"],
    "psu": ["psu", "power supply"],
    "case": ["case", "chassis", "casing"],
    "cooler": ["cooler", "cooling"],
    "monitor": ["monitor"],
    "keyboard": ["keyboard"],
    "mouse": ["mouse"],
    "headset": ["headset", "headphone"],
    "speaker": ["speaker"],
    "webcam": ["webcam"],
}

# Categories matched on component type only, never on free text
STRICT_CATEGORIES = {
    "processor", "gpu", "ram", "motherboard", "ssd", "hdd", "psu", "case",
    "cooler", "monitor", "keyboard", "mouse", "headset", "speaker", "webcam",
}

LAPTOP_NAME_PREFIXES = ("laptop", "notebook", "macbook", "chromebook", "ultrabook")
PERIPHERAL_TERMS = ("headset", "mouse", "keyboard", "speaker", "webcam", "charger")

# Components that make up a custom PC build, in listing order
PC_BUILD_CATEGORIES = ["processor", "motherboard", "gpu", "ram", "ssd", "hdd", "psu", "case", "cooler"]


# Resolution order for reading a category off a component-type label;
# "CPU Cooler" must resolve to cooler before "cpu" can claim it.
COMPONENT_RESOLUTION_ORDER = [
    "laptop", "cooler", "webcam", "headset", "speaker", "keyboard", "mouse", "monitor",
    "gpu", "processor", "motherboard", "ram", "ssd", "hdd", "psu", "case",
]


def component_category(component_type: Optional[str]) -> Optional[str]:
    ctype = (component_type or "").strip().lower()
    if not ctype:
        return None
    for category in COMPONENT_RESOLUTION_ORDER:
        if any(term in ctype for term in CATEGORY_TERMS[category]):
            return category
    return None


def normalize_category(category: Optional[str]) -> Optional[str]:
    c = (category or "").strip().lower()
    if not c:
        return None
    return CATEGORY_ALIASES.get(c, c)


def category_terms(category: Optional[str]) -> List[str]:
    c = normalize_category(category)
    if not c:
        return []
    return CATEGORY_TERMS.get(c, [c])


def detect_category(text: str) -> Optional[str]:
    """First category whose keyword list hits the text.

    Keywords must start on a word boundary so "ram" does not hit "program".
    """
    t = (text or "").lower()
    for category, keywords in CATEGORY_KEYWORDS.items():
        for kw in keywords:
            if re.search(r"\b" + re.escape(kw), t):
                return category
    return None
