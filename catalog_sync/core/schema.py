"""Pydantic v2 models for the sync pipeline.

These models define the data that crosses component boundaries:
- CatalogEntry, FamilyRef, FilterResult (change detection)
- DiffJob, MaterializeJob, AssetJob, SearchJob, SemanticJob (stage payloads)
- StageSnapshot, SessionSnapshot, SessionError (session observability)
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from catalog_sync.core.enums import (
    AssetRole,
    EntityType,
    IndexOperation,
    SessionStatus,
    Stage,
    StageStatus,
)


def _utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(UTC)


# ============================================================================
# Change Detection
# ============================================================================


class CatalogEntry(BaseModel):
    """One manifest line: a raw supplier item and its content fingerprint."""

    url: str
    hash: str
    item_key: str
    supplier_code: str | None = None

    @field_validator("hash")
    @classmethod
    def normalize_hash(cls, v: str) -> str:
        """Hashes are compared case-insensitively."""
        return v.strip().lower()


class FamilyRef(BaseModel):
    """A family key paired with the hash of its representative item."""

    family_key: str
    hash: str


class FilterResult(BaseModel):
    """Outcome of a diff pass."""

    needs_sync: list[FamilyRef] = Field(default_factory=list)
    skipped: int = 0
    total: int = 0
    efficiency: float = 0.0


# ============================================================================
# Stage Job Payloads
# ============================================================================


class JobPayload(BaseModel):
    """Base payload; every job may carry a session back-reference."""

    session_id: str | None = None

    def job_key(self) -> str:
        """Deterministic key used to deduplicate enqueues within a session."""
        raise NotImplementedError


class DiffJob(JobPayload):
    """Supplier-level job: fetch the manifest and select changed families."""

    supplier_code: str
    manual: bool = False

    def job_key(self) -> str:
        return f"diff:{self.supplier_code}"


class MaterializeJob(JobPayload):
    """Upsert one changed family and its variants."""

    family_key: str
    variants: list[dict[str, Any]] = Field(default_factory=list)
    supplier_id: str
    hash: str

    def job_key(self) -> str:
        return f"materialize:{self.supplier_id}:{self.family_key}"


class AssetJob(JobPayload):
    """Upload one image and link it to its entity."""

    source_url: str
    target_file_name: str
    entity_type: EntityType = EntityType.VARIANT
    entity_id: str
    role: AssetRole = AssetRole.PRIMARY
    product_id: str | None = None
    update_parent: bool = False
    trigger_search: bool = False

    def job_key(self) -> str:
        return f"assets:{self.target_file_name}"


class SearchJob(JobPayload):
    """Project an entity into the full-text index."""

    entity_type: EntityType = EntityType.PRODUCT
    entity_id: str
    operation: IndexOperation = IndexOperation.UPSERT

    def job_key(self) -> str:
        return f"search:{self.operation.value}:{self.entity_type.value}:{self.entity_id}"


class SemanticJob(JobPayload):
    """Project an indexed document into the semantic store."""

    operation: IndexOperation = IndexOperation.UPSERT
    source_id: str
    task_uid: int | None = None

    def job_key(self) -> str:
        return f"semantic:{self.operation.value}:{self.source_id}"


PAYLOAD_TYPES: dict[Stage, type[JobPayload]] = {
    Stage.DIFF: DiffJob,
    Stage.MATERIALIZE: MaterializeJob,
    Stage.ASSETS: AssetJob,
    Stage.SEARCH: SearchJob,
    Stage.SEMANTIC: SemanticJob,
}


def parse_payload(stage: Stage, data: dict[str, Any]) -> JobPayload:
    """Validate a serialized payload into the model for its stage."""
    return PAYLOAD_TYPES[stage].model_validate(data)


# ============================================================================
# Session Observability
# ============================================================================


class SessionError(BaseModel):
    """One entry of a session's bounded error log."""

    timestamp: datetime = Field(default_factory=_utc_now)
    stage: Stage | None = None
    message: str
    context: dict[str, Any] = Field(default_factory=dict)


class StageCompletion(BaseModel):
    """Answer to an is-stage-complete query."""

    complete: bool
    processed: int = 0
    total: int = 0
    failed: int = 0


class StageSnapshot(BaseModel):
    """Point-in-time view of a stage record."""

    stage: Stage
    status: StageStatus = StageStatus.PENDING
    total: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def accounted(self) -> int:
        """Units that reached a terminal outcome."""
        return self.processed + self.failed

    @property
    def is_complete(self) -> bool:
        return self.total > 0 and self.accounted >= self.total


class SessionSnapshot(BaseModel):
    """Point-in-time view of a session and all of its stages."""

    session_id: str
    supplier_code: str
    status: SessionStatus = SessionStatus.PENDING
    manual: bool = False
    stages: dict[Stage, StageSnapshot] = Field(default_factory=dict)
    counters: dict[str, int] = Field(default_factory=dict)
    hash_efficiency: float | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_seconds: float | None = None
    error_count: int = 0
    last_error: str | None = None
    errors: list[SessionError] = Field(default_factory=list)

    def stage(self, stage: Stage) -> StageSnapshot:
        """Get a stage snapshot, defaulting to an empty pending record."""
        return self.stages.get(stage) or StageSnapshot(stage=stage)


# ============================================================================
# Normalized Catalog Data
# ============================================================================


class VariantData(BaseModel):
    """Normalized variant fields ready to be upserted."""

    variant_key: str
    name: str = ""
    color: str | None = None
    color_key: str = "UNKNOWN"
    hex_color: str | None = None
    supplier_color_code: str | None = None
    supplier_search_color: str | None = None
    size: str | None = None
    material: str | None = None
    is_primary_for_color: bool = False
    is_active: bool = True
    meta: dict[str, str] = Field(default_factory=dict)
    primary_image_url: str | None = None
    gallery_image_urls: list[str] = Field(default_factory=list)


class ProductData(BaseModel):
    """Normalized product family fields ready to be upserted."""

    family_key: str
    supplier_id: str
    name: dict[str, str] = Field(default_factory=dict)
    description: dict[str, str] = Field(default_factory=dict)
    short_description: dict[str, str] = Field(default_factory=dict)
    brand: str | None = None
    category: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    price_tiers: list[dict[str, Any]] = Field(default_factory=list)
    available_colors: list[str] = Field(default_factory=list)
    available_sizes: list[str] = Field(default_factory=list)
    total_variants_count: int = 0
    is_active: bool = True
