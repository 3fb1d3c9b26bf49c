"""Repository classes for catalog record database operations."""

import json
from collections.abc import Iterable
from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from catalog_sync.core.enums import AssetRole
from catalog_sync.core.schema import ProductData, VariantData
from catalog_sync.db.models import MediaAssetDB, SyncedProductDB, SyncedVariantDB


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


class ProductRepository:
    """Repository for SyncedProduct operations."""

    def __init__(self, session: Session):
        self.session = session

    def find_hashes(self, family_keys: Iterable[str], supplier_id: str) -> dict[str, str | None]:
        """
        Look up last synced hashes for many families in one query.

        Args:
            family_keys: Family keys to look up
            supplier_id: Supplier the families belong to

        Returns:
            Mapping of family key to stored hash for families that exist
        """
        keys = list(dict.fromkeys(family_keys))
        if not keys:
            return {}
        stmt = select(SyncedProductDB.family_key, SyncedProductDB.last_synced_hash).where(
            SyncedProductDB.supplier_id == supplier_id,
            SyncedProductDB.family_key.in_(keys),
        )
        return {row.family_key: row.last_synced_hash for row in self.session.execute(stmt)}

    def get_by_id(self, product_id: str) -> SyncedProductDB | None:
        """Get a product by ID."""
        stmt = select(SyncedProductDB).where(SyncedProductDB.id == product_id)
        return self.session.execute(stmt).scalar_one_or_none()

    def get_by_family(self, family_key: str, supplier_id: str) -> SyncedProductDB | None:
        """Get a product by its natural key."""
        stmt = select(SyncedProductDB).where(
            SyncedProductDB.family_key == family_key,
            SyncedProductDB.supplier_id == supplier_id,
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def create_or_update(self, data: ProductData) -> tuple[str, bool]:
        """
        Upsert a product by (family_key, supplier_id).

        The stored hash is left untouched; see mark_synced.

        Returns:
            Tuple of (product id, created flag)
        """
        db_item = self.get_by_family(data.family_key, data.supplier_id)
        is_new = db_item is None
        if db_item is None:
            db_item = SyncedProductDB(family_key=data.family_key, supplier_id=data.supplier_id)
            self.session.add(db_item)

        db_item.name_json = json.dumps(data.name)
        db_item.description_json = json.dumps(data.description)
        db_item.short_description_json = json.dumps(data.short_description)
        db_item.brand = data.brand
        db_item.category = data.category
        db_item.attributes_json = json.dumps(data.attributes)
        db_item.price_tiers_json = json.dumps(data.price_tiers)
        db_item.available_colors_json = json.dumps(data.available_colors)
        db_item.available_sizes_json = json.dumps(data.available_sizes)
        db_item.total_variants_count = data.total_variants_count
        db_item.is_active = data.is_active
        self.session.flush()
        return db_item.id, is_new

    def mark_synced(self, product_id: str, content_hash: str) -> None:
        """Record the hash the product was last materialized from."""
        self.session.execute(
            update(SyncedProductDB)
            .where(SyncedProductDB.id == product_id)
            .values(last_synced_hash=content_hash, last_synced_at=_utc_now())
        )

    def set_main_image(self, product_id: str, ref: str) -> None:
        """Set the product's representative image reference."""
        self.session.execute(
            update(SyncedProductDB)
            .where(SyncedProductDB.id == product_id)
            .values(main_image_ref=ref)
        )


class VariantRepository:
    """Repository for SyncedVariant operations."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, variant_id: str) -> SyncedVariantDB | None:
        """Get a variant by ID."""
        stmt = select(SyncedVariantDB).where(SyncedVariantDB.id == variant_id)
        return self.session.execute(stmt).scalar_one_or_none()

    def list_for_product(self, product_id: str) -> list[SyncedVariantDB]:
        """List a product's variants in creation order."""
        stmt = (
            select(SyncedVariantDB)
            .where(SyncedVariantDB.product_id == product_id)
            .order_by(SyncedVariantDB.created_at, SyncedVariantDB.variant_key)
        )
        return list(self.session.execute(stmt).scalars().all())

    def create_or_update(self, product_id: str, data: VariantData) -> tuple[str, bool]:
        """
        Upsert a variant by (variant_key, product_id).

        Returns:
            Tuple of (variant id, created flag)
        """
        stmt = select(SyncedVariantDB).where(
            SyncedVariantDB.variant_key == data.variant_key,
            SyncedVariantDB.product_id == product_id,
        )
        db_item = self.session.execute(stmt).scalar_one_or_none()
        is_new = db_item is None
        if db_item is None:
            db_item = SyncedVariantDB(variant_key=data.variant_key, product_id=product_id)
            self.session.add(db_item)

        db_item.name = data.name
        db_item.color = data.color
        db_item.color_key = data.color_key
        db_item.hex_color = data.hex_color
        db_item.supplier_color_code = data.supplier_color_code
        db_item.supplier_search_color = data.supplier_search_color
        db_item.size = data.size
        db_item.material = data.material
        db_item.is_primary_for_color = data.is_primary_for_color
        db_item.is_active = data.is_active
        db_item.meta_json = json.dumps(data.meta)
        self.session.flush()
        return db_item.id, is_new

    def attach_image(self, variant_id: str, role: AssetRole, ref: str) -> None:
        """Link an uploaded image to a variant."""
        db_item = self.get_by_id(variant_id)
        if db_item is None:
            raise ValueError(f"Variant with id {variant_id} not found")

        if role == AssetRole.PRIMARY:
            db_item.primary_image_ref = ref
        else:
            refs = json.loads(db_item.gallery_refs_json or "[]")
            if ref not in refs:
                refs.append(ref)
            db_item.gallery_refs_json = json.dumps(refs)
        self.session.flush()


class MediaAssetRepository:
    """Repository for registered storage references."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_file_name(self, file_name: str) -> MediaAssetDB | None:
        """Get a registered asset by its deterministic file name."""
        stmt = select(MediaAssetDB).where(MediaAssetDB.file_name == file_name)
        return self.session.execute(stmt).scalar_one_or_none()

    def register(
        self,
        file_name: str,
        ref: str,
        source_url: str = "",
        content_type: str = "",
        size_bytes: int = 0,
    ) -> MediaAssetDB:
        """Register (or refresh) the storage reference for a file name."""
        db_item = self.get_by_file_name(file_name)
        if db_item is None:
            db_item = MediaAssetDB(file_name=file_name, ref=ref)
            self.session.add(db_item)
        db_item.ref = ref
        if source_url:
            db_item.source_url = source_url
        if content_type:
            db_item.content_type = content_type
        if size_bytes:
            db_item.size_bytes = size_bytes
        self.session.flush()
        return db_item
