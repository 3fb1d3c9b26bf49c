"""
Raw Item Module
===============

Typed access to raw supplier payloads. Two payload shapes are known:

- flat: top-level snake/camel fields (a_number, color_code, size, main_image)
- promidata: nested per-language ProductDetails with ConfigurationFields
  plus NonLanguageDependedProductDetails

Every extraction function returns None (or an empty container) when the
field is absent instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

LANGUAGES = ("en", "nl", "de", "fr")

FAMILY_KEY_FIELDS = ("a_number", "ANumber", "A_Number", "aNumber", "model", "Model", "ModelNumber")
SKU_FIELDS = ("SKU", "sku", "Sku")
COLOR_CODE_FIELDS = ("color_code", "ColorCode", "search_color")
COLOR_NAME_FIELDS = ("color_name", "ColorName", "colorName", "color", "Color")
SIZE_FIELDS = ("size", "Size")
HEX_COLOR_FIELDS = ("hex_color", "HexColor", "hexColor", "color_hex")
MAIN_IMAGE_FIELDS = ("main_image", "MainImage", "mainImage", "image_url")
GALLERY_FIELDS = ("gallery_images", "GalleryImages", "Images")

MAX_PRICE_TIERS = 8


class ItemShape(str, Enum):
    """Known raw payload shapes."""

    FLAT = "flat"
    PROMIDATA = "promidata"


@dataclass(frozen=True)
class RawItem:
    """A single raw variant payload tagged with its shape."""

    shape: ItemShape
    data: dict[str, Any]

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> RawItem:
        """Tag a decoded payload with its shape."""
        if "ProductDetails" in data or "NonLanguageDependedProductDetails" in data:
            return cls(ItemShape.PROMIDATA, data)
        return cls(ItemShape.FLAT, data)

    @property
    def details(self) -> dict[str, dict[str, Any]]:
        """Per-language detail blocks (promidata shape only)."""
        value = self.data.get("ProductDetails")
        return value if isinstance(value, dict) else {}

    @property
    def fixed_details(self) -> dict[str, Any]:
        """Language-independent detail block (promidata shape only)."""
        value = self.data.get("NonLanguageDependedProductDetails")
        return value if isinstance(value, dict) else {}


def unwrap_payload(payload: Any) -> list[dict[str, Any]]:
    """
    Normalize a decoded payload into a list of variant dictionaries.

    Handles payloads wrapped in a list or under "product"/"data", and
    parents that carry their variants in "ChildProducts".
    """
    if isinstance(payload, list):
        items: list[dict[str, Any]] = []
        for element in payload:
            items.extend(unwrap_payload(element))
        return items
    if not isinstance(payload, dict):
        return []

    for wrapper in ("product", "data"):
        inner = payload.get(wrapper)
        if isinstance(inner, (dict, list)) and len(payload) == 1:
            return unwrap_payload(inner)

    children = payload.get("ChildProducts")
    if isinstance(children, list) and children:
        parent = {k: v for k, v in payload.items() if k != "ChildProducts"}
        items = []
        for child in children:
            if isinstance(child, dict):
                # Children inherit family-level fields they do not override
                items.append({**parent, **child})
        return items

    return [payload]


# ============================================================================
# Field Helpers
# ============================================================================


def _first(data: dict[str, Any], fields: tuple[str, ...]) -> Any:
    for name in fields:
        value = data.get(name)
        if value not in (None, "", [], {}):
            return value
    return None


def _as_text(value: Any) -> str | None:
    """Coerce a scalar or multilingual dict to a single string."""
    if value is None:
        return None
    if isinstance(value, dict):
        for lang in LANGUAGES:
            if value.get(lang):
                return str(value[lang]).strip() or None
        for v in value.values():
            if v:
                return str(v).strip() or None
        return None
    text = str(value).strip()
    return text or None


def _configuration_value(item: RawItem, name: str) -> str | None:
    """Exact-name lookup in the per-language configuration list."""
    details = item.details
    for lang in (*LANGUAGES, *details.keys()):
        block = details.get(lang)
        if not isinstance(block, dict):
            continue
        for field in block.get("ConfigurationFields") or []:
            if isinstance(field, dict) and field.get("ConfigurationName") == name:
                value = _as_text(field.get("ConfigurationValue"))
                if value:
                    return value
    return None


def _unstructured_value(item: RawItem, name: str) -> str | None:
    for lang in (*LANGUAGES, *item.details.keys()):
        block = item.details.get(lang)
        if isinstance(block, dict):
            info = block.get("UnstructuredInformation")
            if isinstance(info, dict) and info.get(name):
                return _as_text(info[name])
    return None


# ============================================================================
# Identity
# ============================================================================


def sku(item: RawItem) -> str | None:
    """Variant identifier."""
    return _as_text(_first(item.data, SKU_FIELDS))


def family_key(item: RawItem) -> str | None:
    """Shared model number identifying the item's product family."""
    value = _as_text(_first(item.data, FAMILY_KEY_FIELDS))
    if value is None and item.shape == ItemShape.PROMIDATA:
        value = _as_text(_first(item.fixed_details, FAMILY_KEY_FIELDS))
    return value


# ============================================================================
# Variant Configuration
# ============================================================================


def color_code(item: RawItem) -> str | None:
    """Explicit supplier color code, if present."""
    value = _as_text(_first(item.data, COLOR_CODE_FIELDS))
    if value is None and item.shape == ItemShape.PROMIDATA:
        value = _as_text(item.fixed_details.get("ColorCode"))
    return value


def color_name(item: RawItem) -> str | None:
    """Display color name (English when multilingual)."""
    if item.shape == ItemShape.PROMIDATA:
        return _configuration_value(item, "Color") or _as_text(_first(item.data, COLOR_NAME_FIELDS))
    return _as_text(_first(item.data, COLOR_NAME_FIELDS))


def search_color(item: RawItem) -> str | None:
    """Normalized search color supplied for faceting."""
    if item.shape == ItemShape.PROMIDATA:
        return _unstructured_value(item, "SupplierSearchColor") or _as_text(
            item.fixed_details.get("SearchColor")
        )
    return _as_text(item.data.get("search_color") or item.data.get("SearchColor"))


def size(item: RawItem) -> str | None:
    """Size token of the variant."""
    if item.shape == ItemShape.PROMIDATA:
        return _configuration_value(item, "Size") or _as_text(_first(item.data, SIZE_FIELDS))
    return _as_text(_first(item.data, SIZE_FIELDS))


def hex_color(item: RawItem) -> str | None:
    """Hex color swatch."""
    if item.shape == ItemShape.PROMIDATA:
        return _as_text(item.fixed_details.get("HexColor")) or _unstructured_value(item, "PMSValue")
    return _as_text(_first(item.data, HEX_COLOR_FIELDS))


def attribute(item: RawItem, *names: str) -> Any:
    """Language-independent attribute by any of its field names."""
    if item.shape == ItemShape.PROMIDATA:
        value = _first(item.fixed_details, names)
        if value is not None:
            return value
    return _first(item.data, names)


# ============================================================================
# Multilingual Text
# ============================================================================


def localized(item: RawItem, field: str, flat_field: str | None = None) -> dict[str, str]:
    """
    Extract a multilingual text field.

    Args:
        item: Raw item
        field: Field name inside promidata ProductDetails blocks
        flat_field: Field name in flat payloads (defaults to field)

    Returns:
        Mapping of 2-letter language code to text, possibly empty
    """
    result: dict[str, str] = {}
    if item.shape == ItemShape.PROMIDATA:
        for lang, block in item.details.items():
            if isinstance(block, dict):
                text = _as_text(block.get(field))
                if text and not isinstance(block.get(field), dict):
                    result[lang] = text
        return result

    value = item.data.get(flat_field or field)
    if isinstance(value, dict):
        for lang in LANGUAGES:
            text = _as_text(value.get(lang))
            if text:
                result[lang] = text
    else:
        text = _as_text(value)
        if text:
            result["en"] = text
    return result


# ============================================================================
# Images and Prices
# ============================================================================


def _url_of(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        return _as_text(value.get("Url") or value.get("url"))
    return None


def image_urls(item: RawItem) -> tuple[str | None, list[str]]:
    """
    Extract image URLs.

    Returns:
        Tuple of (main image URL or None, gallery URLs without the main image)
    """
    main: str | None = None
    gallery: list[str] = []

    if item.shape == ItemShape.PROMIDATA:
        for lang in (*LANGUAGES, *item.details.keys()):
            block = item.details.get(lang)
            if not isinstance(block, dict):
                continue
            main = main or _url_of(block.get("Image"))
            if not gallery:
                gallery = [u for u in map(_url_of, block.get("MediaGalleryImages") or []) if u]
    else:
        main = _url_of(_first(item.data, MAIN_IMAGE_FIELDS))
        images = _first(item.data, GALLERY_FIELDS)
        if isinstance(images, list):
            gallery = [u for u in map(_url_of, images) if u]

    deduped = [url for url in dict.fromkeys(gallery) if url != main]
    return main, deduped


def price_tiers(item: RawItem) -> list[dict[str, Any]]:
    """Quantity price tiers from price_n/min_qty_n style fields."""
    tiers = []
    for i in range(1, MAX_PRICE_TIERS + 1):
        price = _first(item.data, (f"price_{i}", f"Price{i}", f"PRICE_{i}"))
        if price is None:
            continue
        try:
            price_value = float(price)
        except (TypeError, ValueError):
            continue
        min_qty = _first(item.data, (f"min_qty_{i}", f"MinQty{i}"))
        if min_qty is None:
            min_qty = 1 if i == 1 else None
        tiers.append({
            "tier": i,
            "price": price_value,
            "min_quantity": int(min_qty) if min_qty is not None else None,
        })
    return tiers
