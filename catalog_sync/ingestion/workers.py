"""
Stage Workers Module
====================

One handler per pipeline stage. A handler does the stage's work for one
job and returns a StageResult describing what should happen next; it
never touches queues or session counters itself. The supervisor in
runner.py applies the result.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from catalog_sync.core.enums import EntityType, IndexOperation, Stage
from catalog_sync.core.errors import ConsistencySkip, FatalSyncError, ItemValidationError
from catalog_sync.core.schema import (
    AssetJob,
    DiffJob,
    FamilyRef,
    JobPayload,
    MaterializeJob,
    SearchJob,
    SemanticJob,
)
from catalog_sync.ingestion import raw_item
from catalog_sync.ingestion.client import CatalogClient
from catalog_sync.ingestion.diff import DiffFilter
from catalog_sync.ingestion.grouping import build_family, group_by_family_key
from catalog_sync.ingestion.locks import SyncLock
from catalog_sync.ingestion.manifest import parse_manifest
from catalog_sync.ingestion.raw_item import RawItem, unwrap_payload
from catalog_sync.ingestion.registry import SupplierConfig, SupplierRegistry
from catalog_sync.ingestion.session_tracker import SessionTracker
from catalog_sync.services.asset_uploader import AssetUploader
from catalog_sync.services.materializer import FamilyMaterializer
from catalog_sync.services.search_service import SearchIndexer
from catalog_sync.services.semantic_service import SemanticIndex

logger = logging.getLogger(__name__)

# Per-item fetch errors copied into the session log by one diff job
MAX_REPORTED_FETCH_ERRORS = 20


@dataclass
class PipelineContext:
    """Collaborators shared by all stage handlers."""

    tracker: SessionTracker
    locks: SyncLock
    registry: SupplierRegistry
    client: CatalogClient
    diff_filter: DiffFilter
    materializer: FamilyMaterializer
    asset_uploader: AssetUploader
    search_indexer: SearchIndexer
    semantic_index: SemanticIndex


@dataclass
class StageResult:
    """
    What a handler produced for one job.

    Attributes:
        next_jobs: Payloads for downstream stages
        units: Units of this stage accounted as processed
        own_total: Units to add to this stage's own total first (diff only;
            downstream totals are added by whoever enqueues)
        skipped: Processed units that were skipped rather than done
        stopped: A stop request was observed
        session_counters: Session-level counters to increment
        hash_efficiency: Diff efficiency to record on the session
        errors: Non-fatal problems to append to the session error log
    """

    next_jobs: list[JobPayload] = field(default_factory=list)
    units: int = 1
    own_total: int = 0
    skipped: int = 0
    stopped: bool = False
    session_counters: dict[str, int] = field(default_factory=dict)
    hash_efficiency: float | None = None
    errors: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)


Handler = Callable[[PipelineContext, Any], Awaitable[StageResult]]


# ============================================================================
# Diff
# ============================================================================


async def handle_diff(ctx: PipelineContext, job: DiffJob) -> StageResult:
    """
    Fetch the manifest and raw items, group them and select changed families.

    The stop flag is polled between fetch batches and once more before any
    materialize job is emitted.
    """
    supplier = ctx.registry.get_supplier(job.supplier_code)
    if supplier is None:
        raise FatalSyncError(f"Unknown supplier '{job.supplier_code}'")

    if supplier.rate_limit is None:
        return await _diff_supplier(ctx, job, supplier, ctx.client)
    async with CatalogClient(ctx.registry.global_config, rate_limit=supplier.rate_limit) as client:
        return await _diff_supplier(ctx, job, supplier, client)


async def _diff_supplier(
    ctx: PipelineContext,
    job: DiffJob,
    supplier: SupplierConfig,
    client: CatalogClient,
) -> StageResult:
    config = ctx.registry.global_config
    manifest = await client.fetch_manifest()
    entries = parse_manifest(manifest, supplier.code)
    logger.info(f"Manifest lists {len(entries)} items for supplier {supplier.code}")

    counters = {"products_found": len(entries)}
    if not entries:
        return StageResult(units=0, session_counters=counters)

    items: list[RawItem] = []
    hash_by_sku: dict[str, str] = {}
    dropped = 0
    errors: list[str] = []

    batch_size = max(config.batch_size, 1)
    for start in range(0, len(entries), batch_size):
        if await ctx.locks.is_stop_requested(supplier.code):
            logger.info(f"Stop requested for {supplier.code} after {start} items")
            return StageResult(units=0, stopped=True, session_counters=counters)

        batch = entries[start:start + batch_size]
        payloads = await client.fetch_items([e.url for e in batch])
        for entry, payload in zip(batch, payloads):
            if isinstance(payload, FatalSyncError):
                raise payload
            if isinstance(payload, Exception):
                dropped += 1
                if len(errors) < MAX_REPORTED_FETCH_ERRORS:
                    errors.append(f"{entry.url}: {payload}")
                continue
            variants = unwrap_payload(payload)
            if not variants:
                dropped += 1
                continue
            for data in variants:
                item = RawItem.from_payload(data)
                hash_by_sku.setdefault(raw_item.sku(item) or entry.item_key, entry.hash)
                items.append(item)

    grouping = group_by_family_key(items)
    dropped += grouping.dropped

    refs = [
        FamilyRef(
            family_key=key,
            hash=hash_by_sku.get(raw_item.sku(members[0]) or "", ""),
        )
        for key, members in grouping.families.items()
    ]
    result = ctx.diff_filter.filter(refs, supplier.code)

    counters.update(
        families_found=len(refs),
        families_skipped=result.skipped,
        families_to_sync=len(result.needs_sync),
        items_dropped=dropped,
    )

    if await ctx.locks.is_stop_requested(supplier.code):
        logger.info(f"Stop requested for {supplier.code} before enqueueing families")
        return StageResult(units=0, stopped=True, session_counters=counters)

    next_jobs: list[JobPayload] = [
        MaterializeJob(
            session_id=job.session_id,
            family_key=ref.family_key,
            variants=[item.data for item in grouping.families[ref.family_key]],
            supplier_id=supplier.code,
            hash=ref.hash,
        )
        for ref in result.needs_sync
    ]

    return StageResult(
        next_jobs=next_jobs,
        units=len(refs),
        own_total=len(refs),
        skipped=result.skipped,
        session_counters=counters,
        hash_efficiency=result.efficiency,
        errors=errors,
        details={"needs_sync": len(result.needs_sync), "efficiency": result.efficiency},
    )


# ============================================================================
# Materialize
# ============================================================================


async def handle_materialize(ctx: PipelineContext, job: MaterializeJob) -> StageResult:
    """Upsert one family and emit its asset jobs (or its search job if it has no assets)."""
    if await ctx.locks.is_stop_requested(job.supplier_id):
        return StageResult(skipped=1, stopped=True)

    items = [RawItem.from_payload(v) for v in job.variants if isinstance(v, dict)]
    if not items:
        raise ItemValidationError(f"Family {job.family_key} has no variants", {"family_key": job.family_key})

    supplier = ctx.registry.get_supplier(job.supplier_id)
    family = build_family(job.family_key, items, sort_sizes=bool(supplier and supplier.sort_sizes))
    outcome = ctx.materializer.materialize(family, job.supplier_id, job.hash, job.session_id)

    next_jobs: list[JobPayload] = list(outcome.asset_jobs)
    if not next_jobs:
        next_jobs.append(
            SearchJob(
                session_id=job.session_id,
                entity_type=EntityType.PRODUCT,
                entity_id=outcome.product_id,
                operation=IndexOperation.UPSERT,
            )
        )

    counters = {"families_created" if outcome.is_new else "families_updated": 1}
    if outcome.variants_failed:
        counters["variants_failed"] = outcome.variants_failed

    return StageResult(
        next_jobs=next_jobs,
        session_counters=counters,
        errors=[f"{job.family_key}: {e}" for e in outcome.errors],
        details={"product_id": outcome.product_id, "variants": len(outcome.variant_ids)},
    )


# ============================================================================
# Assets
# ============================================================================


def search_job_for_asset(job: AssetJob) -> SearchJob | None:
    """Search job owed by an asset job, if it is the one that triggers indexing."""
    if not job.trigger_search:
        return None
    product_id = job.product_id or job.entity_id
    return SearchJob(
        session_id=job.session_id,
        entity_type=EntityType.PRODUCT,
        entity_id=product_id,
        operation=IndexOperation.UPSERT,
    )


async def handle_asset(ctx: PipelineContext, job: AssetJob) -> StageResult:
    """Upload (or reuse) one asset and link it to its entity."""
    asset = await ctx.asset_uploader.upload(job.source_url, job.target_file_name)
    ctx.asset_uploader.attach(job, asset)

    search_job = search_job_for_asset(job)
    return StageResult(
        next_jobs=[search_job] if search_job else [],
        session_counters={"assets_deduplicated" if asset.deduplicated else "assets_uploaded": 1},
        details={"ref": asset.ref, "deduplicated": asset.deduplicated},
    )


# ============================================================================
# Search
# ============================================================================


async def handle_search(ctx: PipelineContext, job: SearchJob) -> StageResult:
    """Project a product into the search index, then hand off to the semantic stage."""
    if job.entity_type != EntityType.PRODUCT:
        raise ItemValidationError(f"Unsupported search entity type: {job.entity_type.value}")

    if job.operation == IndexOperation.DELETE:
        task_uid = await ctx.search_indexer.delete_product(job.entity_id)
    else:
        task_uid = await ctx.search_indexer.upsert_product(job.entity_id)
        if task_uid is None:
            raise ConsistencySkip(f"Product {job.entity_id} not found in product store")

    return StageResult(
        next_jobs=[
            SemanticJob(
                session_id=job.session_id,
                operation=job.operation,
                source_id=job.entity_id,
                task_uid=task_uid,
            )
        ],
        details={"task_uid": task_uid},
    )


# ============================================================================
# Semantic
# ============================================================================


async def handle_semantic(ctx: PipelineContext, job: SemanticJob) -> StageResult:
    """Project an indexed document into the semantic store."""
    if job.operation == IndexOperation.DELETE:
        result = await ctx.semantic_index.delete(job.source_id)
    else:
        result = await ctx.semantic_index.upsert(job.source_id, task_uid=job.task_uid)
    return StageResult(
        skipped=1 if result.skipped else 0,
        details={"reason": result.reason} if result.reason else {},
    )


HANDLERS: dict[Stage, Handler] = {
    Stage.DIFF: handle_diff,
    Stage.MATERIALIZE: handle_materialize,
    Stage.ASSETS: handle_asset,
    Stage.SEARCH: handle_search,
    Stage.SEMANTIC: handle_semantic,
}


def fallback_jobs(stage: Stage, payload: JobPayload) -> list[JobPayload]:
    """
    Downstream jobs still owed when a job fails for good.

    A failed asset does not invalidate its product record, so the search
    job it was responsible for is emitted anyway.
    """
    if stage == Stage.ASSETS and isinstance(payload, AssetJob):
        search_job = search_job_for_asset(payload)
        return [search_job] if search_job else []
    return []
