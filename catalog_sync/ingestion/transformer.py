"""
Transformer Module
==================

Projects grouped raw items into normalized product and variant data, and
derives deterministic asset file names.
"""

from __future__ import annotations

import posixpath
from typing import Any
from urllib.parse import urlparse

from catalog_sync.core.enums import AssetRole
from catalog_sync.core.schema import ProductData, VariantData
from catalog_sync.ingestion import raw_item
from catalog_sync.ingestion.grouping import ProductFamily, size_rank
from catalog_sync.ingestion.raw_item import RawItem

DEFAULT_PRODUCT_NAME = "Unnamed Product"
DEFAULT_IMAGE_EXTENSION = "jpg"

DIMENSION_FIELDS = {
    "length": ("DimensionsLength", "dimensions_length", "length"),
    "width": ("DimensionsWidth", "dimensions_width", "width"),
    "height": ("DimensionsHeight", "dimensions_height", "height"),
    "diameter": ("DimensionsDiameter", "dimensions_diameter", "diameter"),
    "weight": ("Weight", "weight"),
}


def _to_float(value: Any) -> float | None:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _tax_indicator(item: RawItem) -> str | None:
    details = item.data.get("PriceDetails")
    if isinstance(details, list):
        for entry in details:
            if isinstance(entry, dict) and entry.get("PriceTaxIndicator"):
                return str(entry["PriceTaxIndicator"])
    value = raw_item.attribute(item, "tax", "Tax")
    return str(value) if value is not None else None


def _attributes(item: RawItem) -> dict[str, Any]:
    attributes: dict[str, Any] = {}
    dimensions = {
        name: _to_float(raw_item.attribute(item, *fields)) for name, fields in DIMENSION_FIELDS.items()
    }
    dimensions = {k: v for k, v in dimensions.items() if v is not None}
    if dimensions:
        attributes["dimensions"] = dimensions

    for name, fields in {
        "country_of_origin": ("CountryOfOrigin", "country_of_origin"),
        "delivery_time": ("DeliveryTime", "delivery_time"),
        "customs_tariff_number": ("CustomsTariffNumber", "customs_tariff_number"),
        "material": ("Material", "material"),
    }.items():
        value = raw_item.attribute(item, *fields)
        if value is not None:
            attributes[name] = str(value)

    imprint = raw_item.attribute(item, "MustHaveImprint", "must_have_imprint")
    if imprint is not None:
        attributes["must_have_imprint"] = bool(imprint)

    tax = _tax_indicator(item)
    if tax:
        attributes["tax"] = tax
    return attributes


def transform_product(family: ProductFamily, supplier_id: str) -> ProductData:
    """
    Build the normalized product record for a family.

    The first item of the family is the representative for family-level
    fields; colors and sizes are collected across all items.
    """
    base = family.items[0]

    colors: list[str] = []
    sizes: list[str] = []
    for item in family.items:
        color = raw_item.search_color(item) or raw_item.color_name(item)
        if color and color not in colors:
            colors.append(color)
        size = raw_item.size(item)
        if size and size not in sizes:
            sizes.append(size)

    brand = raw_item.attribute(base, "Brand", "brand")
    category = raw_item.attribute(base, "Category", "category")

    return ProductData(
        family_key=family.family_key,
        supplier_id=supplier_id,
        name=raw_item.localized(base, "Name", "name") or {"en": DEFAULT_PRODUCT_NAME},
        description=raw_item.localized(base, "Description", "description"),
        short_description=raw_item.localized(base, "ShortDescription", "short_description"),
        brand=str(brand) if brand is not None else None,
        category=str(category) if category is not None else None,
        attributes=_attributes(base),
        price_tiers=raw_item.price_tiers(base),
        available_colors=colors,
        available_sizes=sorted(sizes, key=size_rank),
        total_variants_count=family.variant_count,
    )


def build_variant_name(product_name: str, color: str | None, size: str | None) -> str:
    """Variant display name: "Product - Color - Size"."""
    return " - ".join(part for part in (product_name, color, size) if part)


def transform_variant(
    item: RawItem,
    product_name: dict[str, str],
    color_key: str,
    is_primary_for_color: bool,
) -> VariantData | None:
    """
    Build the normalized variant record for one raw item.

    Returns:
        VariantData, or None when the item has no SKU
    """
    variant_key = raw_item.sku(item)
    if variant_key is None:
        return None

    color = raw_item.color_name(item)
    size = raw_item.size(item)
    name = product_name.get("en") or next(iter(product_name.values()), DEFAULT_PRODUCT_NAME)
    full_name = build_variant_name(name, color, size)
    main_image, gallery = raw_item.image_urls(item)
    material = raw_item.attribute(item, "Material", "material")

    return VariantData(
        variant_key=variant_key,
        name=full_name,
        color=color,
        color_key=color_key,
        hex_color=raw_item.hex_color(item),
        supplier_color_code=raw_item.color_code(item),
        supplier_search_color=raw_item.search_color(item),
        size=size,
        material=str(material) if material is not None else None,
        is_primary_for_color=is_primary_for_color,
        meta={
            "meta_name": full_name[:60],
            "meta_description": f"{full_name}. Available from stock."[:160],
            "meta_keywords": ", ".join(p for p in (name, color, size) if p),
        },
        primary_image_url=main_image,
        gallery_image_urls=gallery,
    )


def url_extension(url: str) -> str:
    """File extension of a URL path, defaulting to jpg."""
    ext = posixpath.splitext(urlparse(url).path)[1].lstrip(".").lower()
    return ext if ext and ext.isalnum() and len(ext) <= 5 else DEFAULT_IMAGE_EXTENSION


def asset_file_name(variant_id: str, role: AssetRole, url: str, index: int | None = None) -> str:
    """
    Deterministic object name for a variant image.

    Same variant and role always yield the same name, so an existing
    object with that name is the same asset.
    """
    ext = url_extension(url)
    if role == AssetRole.PRIMARY:
        return f"variant-{variant_id}-primary.{ext}"
    return f"variant-{variant_id}-gallery-{index or 0}.{ext}"
