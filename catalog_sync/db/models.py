"""SQLAlchemy ORM models for the catalog sync database.

These models define the database tables for:
- SyncedProductDB, SyncedVariantDB (normalized catalog records)
- MediaAssetDB (registered object storage references)
- SyncSessionDB, SyncStageDB, SyncErrorDB (sync run tracking)
"""

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(UTC)


def _generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ============================================================================
# Catalog Records
# ============================================================================


class SyncedProductDB(Base):
    """
    Database model for a normalized product family.

    last_synced_hash is the manifest hash of the family's representative
    item at the time of the last successful materialization.
    """

    __tablename__ = "synced_products"
    __table_args__ = (UniqueConstraint("family_key", "supplier_id", name="uq_product_family"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    family_key: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    supplier_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    last_synced_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    name_json: Mapped[str] = mapped_column(Text, default="{}")  # JSON object keyed by language
    description_json: Mapped[str] = mapped_column(Text, default="{}")
    short_description_json: Mapped[str] = mapped_column(Text, default="{}")
    brand: Mapped[str | None] = mapped_column(String(255), nullable=True)
    category: Mapped[str | None] = mapped_column(String(255), nullable=True)
    attributes_json: Mapped[str] = mapped_column(Text, default="{}")  # dimensions, origin, tax, ...
    price_tiers_json: Mapped[str] = mapped_column(Text, default="[]")
    available_colors_json: Mapped[str] = mapped_column(Text, default="[]")
    available_sizes_json: Mapped[str] = mapped_column(Text, default="[]")
    total_variants_count: Mapped[int] = mapped_column(Integer, default=0)
    main_image_ref: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    # Relationships
    variants: Mapped[list["SyncedVariantDB"]] = relationship(
        "SyncedVariantDB", back_populates="product"
    )

    def __repr__(self) -> str:
        return f"<SyncedProductDB(id={self.id}, family='{self.family_key}', supplier='{self.supplier_id}')>"


class SyncedVariantDB(Base):
    """
    Database model for a single purchasable variant.

    A variant is owned by exactly one product for its whole lifetime.
    """

    __tablename__ = "synced_variants"
    __table_args__ = (UniqueConstraint("variant_key", "product_id", name="uq_variant_product"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("synced_products.id"), nullable=False, index=True
    )
    variant_key: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(500), default="")
    color: Mapped[str | None] = mapped_column(String(100), nullable=True)
    color_key: Mapped[str] = mapped_column(String(100), default="UNKNOWN")
    hex_color: Mapped[str | None] = mapped_column(String(20), nullable=True)
    supplier_color_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    supplier_search_color: Mapped[str | None] = mapped_column(String(100), nullable=True)
    size: Mapped[str | None] = mapped_column(String(50), nullable=True)
    material: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_primary_for_color: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    meta_json: Mapped[str] = mapped_column(Text, default="{}")
    primary_image_ref: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    gallery_refs_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    # Relationships
    product: Mapped["SyncedProductDB"] = relationship("SyncedProductDB", back_populates="variants")

    def __repr__(self) -> str:
        return f"<SyncedVariantDB(id={self.id}, key='{self.variant_key}')>"


class MediaAssetDB(Base):
    """Database model for an uploaded object, keyed by its deterministic file name."""

    __tablename__ = "media_assets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    ref: Mapped[str] = mapped_column(String(1000), nullable=False)
    source_url: Mapped[str] = mapped_column(String(1000), default="")
    content_type: Mapped[str] = mapped_column(String(100), default="")
    size_bytes: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    def __repr__(self) -> str:
        return f"<MediaAssetDB(id={self.id}, file='{self.file_name}')>"


# ============================================================================
# Sync Tracking
# ============================================================================


class SyncSessionDB(Base):
    """
    Database model for one pipeline run of one supplier.

    Counter columns are only ever changed through atomic UPDATE statements.
    """

    __tablename__ = "sync_sessions"

    session_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    supplier_code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    manual: Mapped[bool] = mapped_column(Boolean, default=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)

    products_found: Mapped[int] = mapped_column(Integer, default=0)
    families_found: Mapped[int] = mapped_column(Integer, default=0)
    families_skipped: Mapped[int] = mapped_column(Integer, default=0)
    families_to_sync: Mapped[int] = mapped_column(Integer, default=0)
    families_created: Mapped[int] = mapped_column(Integer, default=0)
    families_updated: Mapped[int] = mapped_column(Integer, default=0)
    items_dropped: Mapped[int] = mapped_column(Integer, default=0)
    variants_failed: Mapped[int] = mapped_column(Integer, default=0)
    assets_uploaded: Mapped[int] = mapped_column(Integer, default=0)
    assets_deduplicated: Mapped[int] = mapped_column(Integer, default=0)
    hash_efficiency: Mapped[float | None] = mapped_column(Float, nullable=True)

    error_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    # Relationships
    stages: Mapped[list["SyncStageDB"]] = relationship(
        "SyncStageDB", back_populates="session", cascade="all, delete-orphan"
    )
    errors: Mapped[list["SyncErrorDB"]] = relationship(
        "SyncErrorDB", back_populates="session", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<SyncSessionDB(id={self.session_id}, status='{self.status}')>"


class SyncStageDB(Base):
    """Database model for one stage record of a session."""

    __tablename__ = "sync_stages"
    __table_args__ = (UniqueConstraint("session_id", "stage", name="uq_session_stage"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("sync_sessions.session_id"), nullable=False, index=True
    )
    stage: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    total: Mapped[int] = mapped_column(Integer, default=0)
    processed: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[int] = mapped_column(Integer, default=0)
    skipped: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Relationships
    session: Mapped["SyncSessionDB"] = relationship("SyncSessionDB", back_populates="stages")

    def __repr__(self) -> str:
        return f"<SyncStageDB(session={self.session_id}, stage='{self.stage}', status='{self.status}')>"


class SyncErrorDB(Base):
    """
    Database model for one session error-log entry.

    Entries are append-only inserts; only the most recent ones per
    session are retained.
    """

    __tablename__ = "sync_errors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("sync_sessions.session_id"), nullable=False, index=True
    )
    stage: Mapped[str | None] = mapped_column(String(20), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    context_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    # Relationships
    session: Mapped["SyncSessionDB"] = relationship("SyncSessionDB", back_populates="errors")

    def __repr__(self) -> str:
        return f"<SyncErrorDB(session={self.session_id}, stage='{self.stage}')>"
