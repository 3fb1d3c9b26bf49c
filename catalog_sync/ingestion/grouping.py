"""
Grouping Module
===============

Groups raw items into product families by family key, and families into
color groups. Primary-variant selection is the first item of each color
group in input order; sort_by_size may be applied beforehand to make that
order size-based.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from catalog_sync.ingestion import raw_item
from catalog_sync.ingestion.raw_item import RawItem

logger = logging.getLogger(__name__)

UNKNOWN_COLOR = "UNKNOWN"

SIZE_PRIORITY: dict[str, int] = {
    "XS": 1,
    "S": 2,
    "M": 3,
    "L": 4,
    "XL": 5,
    "XXL": 6,
    "3XL": 7,
    "4XL": 8,
    "5XL": 9,
}
UNMATCHED_SIZE_RANK = 999


@dataclass
class GroupingResult:
    """Families keyed by family key plus the count of dropped items."""

    families: dict[str, list[RawItem]] = field(default_factory=dict)
    dropped: int = 0


@dataclass
class ColorGroup:
    """Variants of one family sharing a color key, in input order."""

    color_key: str
    color: str | None
    items: list[RawItem] = field(default_factory=list)

    @property
    def primary(self) -> RawItem:
        """The variant representing this color (first encountered)."""
        return self.items[0]


@dataclass
class ProductFamily:
    """A family key with its items and derived color groups."""

    family_key: str
    items: list[RawItem]
    color_groups: dict[str, ColorGroup]

    @property
    def variant_count(self) -> int:
        return len(self.items)


def size_rank(size: str | None) -> int:
    """Rank of a size token; unknown sizes rank last."""
    if not size:
        return UNMATCHED_SIZE_RANK
    return SIZE_PRIORITY.get(size.strip().upper(), UNMATCHED_SIZE_RANK)


def sort_by_size(items: Iterable[RawItem]) -> list[RawItem]:
    """Stable sort by the size priority table."""
    return sorted(items, key=lambda item: size_rank(raw_item.size(item)))


def color_key(item: RawItem) -> str:
    """Grouping key: explicit color code, then display name, then UNKNOWN."""
    return raw_item.color_code(item) or raw_item.color_name(item) or UNKNOWN_COLOR


def group_by_family_key(items: Iterable[RawItem]) -> GroupingResult:
    """
    Group items by family key, preserving input order.

    Items without a derivable family key are dropped and counted, never
    folded into a default bucket.
    """
    result = GroupingResult()
    for item in items:
        key = raw_item.family_key(item)
        if key is None:
            result.dropped += 1
            logger.warning(f"Dropping item without family key (sku={raw_item.sku(item)!r})")
            continue
        result.families.setdefault(key, []).append(item)
    return result


def group_by_color(items: Iterable[RawItem]) -> dict[str, ColorGroup]:
    """Group a family's items by color key in first-seen order."""
    groups: dict[str, ColorGroup] = {}
    for item in items:
        key = color_key(item)
        group = groups.get(key)
        if group is None:
            group = ColorGroup(color_key=key, color=raw_item.color_name(item))
            groups[key] = group
        group.items.append(item)
    return groups


def build_family(family_key: str, items: Iterable[RawItem], sort_sizes: bool = False) -> ProductFamily:
    """
    Build a family with its color groups.

    Args:
        family_key: Shared model number
        items: Raw variant items of the family
        sort_sizes: Apply the size priority sort before grouping

    Returns:
        ProductFamily
    """
    ordered = sort_by_size(items) if sort_sizes else list(items)
    return ProductFamily(
        family_key=family_key,
        items=ordered,
        color_groups=group_by_color(ordered),
    )
