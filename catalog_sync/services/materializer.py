"""Family materialization: upserts a changed family's product and variants."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from catalog_sync.core.enums import AssetRole, EntityType
from catalog_sync.core.schema import AssetJob, VariantData
from catalog_sync.db.repositories import ProductRepository, VariantRepository
from catalog_sync.ingestion.grouping import ProductFamily
from catalog_sync.ingestion.transformer import asset_file_name, transform_product, transform_variant

logger = logging.getLogger(__name__)


@dataclass
class MaterializeOutcome:
    """Result of materializing one family."""

    product_id: str
    is_new: bool
    variant_ids: list[str] = field(default_factory=list)
    asset_jobs: list[AssetJob] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def variants_failed(self) -> int:
        return len(self.errors)


def build_asset_jobs(
    variant_id: str,
    data: VariantData,
    product_id: str,
    update_parent: bool,
    session_id: str | None = None,
) -> list[AssetJob]:
    """Asset jobs for a variant's primary and gallery images."""
    jobs = []
    if data.primary_image_url:
        jobs.append(
            AssetJob(
                session_id=session_id,
                source_url=data.primary_image_url,
                target_file_name=asset_file_name(variant_id, AssetRole.PRIMARY, data.primary_image_url),
                entity_type=EntityType.VARIANT,
                entity_id=variant_id,
                role=AssetRole.PRIMARY,
                product_id=product_id,
                update_parent=update_parent,
            )
        )
    for index, url in enumerate(data.gallery_image_urls):
        jobs.append(
            AssetJob(
                session_id=session_id,
                source_url=url,
                target_file_name=asset_file_name(variant_id, AssetRole.GALLERY, url, index),
                entity_type=EntityType.VARIANT,
                entity_id=variant_id,
                role=AssetRole.GALLERY,
                product_id=product_id,
            )
        )
    return jobs


class FamilyMaterializer:
    """Writes a family to the product store, one variant at a time."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def materialize(
        self,
        family: ProductFamily,
        supplier_id: str,
        family_hash: str,
        session_id: str | None = None,
    ) -> MaterializeOutcome:
        """
        Upsert the product, then every variant in color-group order.

        A failing variant is rolled back on its own and recorded; the
        remaining variants are still processed. The stored hash is only
        advanced when every variant succeeded, so a partially failed
        family is picked up again by the next diff.

        Args:
            family: Grouped family
            supplier_id: Owning supplier
            family_hash: Manifest hash of the family's representative item
            session_id: Session back-reference for emitted asset jobs

        Returns:
            MaterializeOutcome with ids, asset jobs and per-variant errors
        """
        product_data = transform_product(family, supplier_id)

        with self.session_factory() as session:
            products = ProductRepository(session)
            variants = VariantRepository(session)

            product_id, is_new = products.create_or_update(product_data)
            session.commit()
            outcome = MaterializeOutcome(product_id=product_id, is_new=is_new)

            parent_image_pending = True
            for group in family.color_groups.values():
                for position, item in enumerate(group.items):
                    data = transform_variant(item, product_data.name, group.color_key, position == 0)
                    if data is None:
                        outcome.errors.append(
                            f"Variant without SKU in family {family.family_key} (color {group.color_key})"
                        )
                        continue
                    try:
                        variant_id, _ = variants.create_or_update(product_id, data)
                        session.commit()
                    except Exception as e:
                        session.rollback()
                        logger.exception(f"Failed to upsert variant {data.variant_key}")
                        outcome.errors.append(f"{data.variant_key}: {e}")
                        continue

                    outcome.variant_ids.append(variant_id)
                    outcome.asset_jobs.extend(
                        build_asset_jobs(variant_id, data, product_id, parent_image_pending, session_id)
                    )
                    if data.primary_image_url:
                        parent_image_pending = False

            if not outcome.errors:
                products.mark_synced(product_id, family_hash)
                session.commit()

        if outcome.asset_jobs:
            trigger = next((j for j in outcome.asset_jobs if j.update_parent), outcome.asset_jobs[0])
            trigger.trigger_search = True

        logger.info(
            f"Materialized family {family.family_key}: "
            f"{'created' if outcome.is_new else 'updated'} product {product_id}, "
            f"{len(outcome.variant_ids)} variants, {outcome.variants_failed} failed, "
            f"{len(outcome.asset_jobs)} assets"
        )
        return outcome
