# worker/enrich.py
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

SPU_PATTERN = re.compile(r"[A-Za-z]{1,5}-\d+")

# Where an item may carry its product id, most specific first
ID_KEYS: List[str] = [
    "spu",
    "spu_id",
    "spuId",
    "spu_code",
    "spuCode",
    "sku",
    "SKU",
    "product_id",
    "productId",
]
VARIATION_KEYS: List[str] = ["variations", "variants_1688", "variant_images_1688"]
TITLE_KEYS: List[str] = ["title", "title_en", "name", "product_name", "title_cn"]
PRICE_KEYS: List[str] = ["price", "sale_price", "price_cny", "price_text"]
IMAGE_KEYS: List[str] = ["images", "image_urls", "main_images", "gallery"]


def _clean(s: Optional[str]) -> str:
    return re.sub(r"\s+", " ", (s or "")).strip()

def _first(item: Dict[str, Any], keys: List[str]) -> Any:
    for key in keys:
        if item.get(key) not in (None, ""):
            return item[key]
    return None

def extract_base_spu(value: Any) -> str:
    m = SPU_PATTERN.search(str(value if value is not None else ""))
    return m.group(0).upper() if m else ""

def collect_spu(item: Dict[str, Any]) -> str:
    for key in ID_KEYS:
        if item.get(key) is not None:
            spu = extract_base_spu(item[key])
            if spu:
                return spu
    for key in VARIATION_KEYS:
        entries = item.get(key)
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if isinstance(entry, dict):
                spu = extract_base_spu(entry.get("sku") or entry.get("SKU") or entry.get("spu"))
                if spu:
                    return spu
    return ""

def _parse_price(value: Any) -> str:
    # "¥ 1'299,50" -> "1299.50"
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return f"{value:.2f}"
    m = re.search(r"([\d'.,]+)", str(value or ""))
    if not m:
        return ""
    s = m.group(1).replace("'", "")
    if "," in s and "." not in s:
        s = s.replace(",", ".")
    else:
        s = s.replace(",", "")
    try:
        return f"{float(s):.2f}"
    except ValueError:
        return ""

def enrich_item(item: Any) -> Dict[str, Any]:
    """
    Normalizes one extracted product record.
    Raises ValueError when the record cannot be turned into a draft product.
    """
    if not isinstance(item, dict):
        raise ValueError(f"expected an object, got {type(item).__name__}")

    spu = collect_spu(item)
    if not spu:
        raise ValueError("no SPU found in item")

    images = _first(item, IMAGE_KEYS)
    variations = _first(item, VARIATION_KEYS)
    return {
        "spu": spu,
        "title": _clean(str(_first(item, TITLE_KEYS) or "")),
        "price": _parse_price(_first(item, PRICE_KEYS)),
        "images_count": len(images) if isinstance(images, list) else 0,
        "variant_count": len(variations) if isinstance(variations, list) else 0,
    }
