"""
Diff Filter Module
==================

Selects the product families whose manifest hash differs from the hash
they were last synced from.
"""

import logging
from collections.abc import Callable, Iterable

from sqlalchemy.orm import Session

from catalog_sync.core.schema import FamilyRef, FilterResult
from catalog_sync.db.repositories import ProductRepository

logger = logging.getLogger(__name__)


def compute_efficiency(skipped: int, total: int) -> float:
    """Percentage of families skipped as unchanged."""
    if total == 0:
        return 0.0
    return skipped / total * 100


class DiffFilter:
    """Hash-based change detection over the product store."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def filter(self, families: Iterable[FamilyRef], supplier_id: str) -> FilterResult:
        """
        Split families into changed and unchanged.

        Existing hashes are read in one batched query. A family needs sync
        if it has no stored record or its stored hash differs.

        Args:
            families: Family keys with the hash of their representative item
            supplier_id: Supplier the families belong to

        Returns:
            FilterResult with the families needing sync and efficiency stats
        """
        refs = list(families)
        with self.session_factory() as session:
            stored = ProductRepository(session).find_hashes((r.family_key for r in refs), supplier_id)

        needs_sync = []
        skipped = 0
        for ref in refs:
            previous = stored.get(ref.family_key)
            if previous is not None and ref.hash and previous == ref.hash:
                skipped += 1
            else:
                needs_sync.append(ref)

        efficiency = compute_efficiency(skipped, len(refs))
        logger.info(
            f"Diff for supplier {supplier_id}: {len(needs_sync)} changed, "
            f"{skipped} unchanged ({efficiency:.1f}% efficiency)"
        )
        return FilterResult(
            needs_sync=needs_sync,
            skipped=skipped,
            total=len(refs),
            efficiency=efficiency,
        )
