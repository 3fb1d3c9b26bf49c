"""
Background Jobs Module
======================

Defines the arq tasks and worker settings for the five pipeline stages,
plus the entry points used by the CLI. Uses Redis as the job queue
backend; each stage has its own queue and its own worker process.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from typing import Any

from arq import Retry, create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.cron import CronJob, cron
from sqlalchemy.orm import Session

from catalog_sync.core.enums import Stage
from catalog_sync.core.schema import SessionSnapshot
from catalog_sync.db.engine import get_session_factory
from catalog_sync.ingestion.client import CatalogClient
from catalog_sync.ingestion.diff import DiffFilter
from catalog_sync.ingestion.locks import LocalSyncLock, RedisSyncLock, SyncLock
from catalog_sync.ingestion.queues import ArqQueueBackend, InMemoryQueueBackend
from catalog_sync.ingestion.queues import queue_name as stage_queue_name
from catalog_sync.ingestion.registry import StagePolicy, SupplierRegistry, get_default_registry
from catalog_sync.ingestion.runner import (
    OutcomeKind,
    PipelineRunner,
    SyncStartResult,
    start_scheduled_syncs,
    start_supplier_sync,
)
from catalog_sync.ingestion.session_tracker import SessionTracker
from catalog_sync.ingestion.workers import PipelineContext
from catalog_sync.services.asset_uploader import AssetUploader
from catalog_sync.services.materializer import FamilyMaterializer
from catalog_sync.services.object_storage import ObjectStorage, get_default_storage
from catalog_sync.services.search_service import SearchIndex, SearchIndexer
from catalog_sync.services.semantic_service import SemanticIndex

logger = logging.getLogger(__name__)


def get_redis_settings() -> RedisSettings:
    """Get Redis connection settings from environment."""
    return RedisSettings(
        host=os.environ.get("REDIS_HOST", "localhost"),
        port=int(os.environ.get("REDIS_PORT", "6379")),
        database=int(os.environ.get("REDIS_DB", "0")),
    )


def build_context(
    locks: SyncLock,
    registry: SupplierRegistry | None = None,
    session_factory: Callable[[], Session] | None = None,
    client: CatalogClient | None = None,
    storage: ObjectStorage | None = None,
    search_index: SearchIndex | None = None,
    semantic_index: SemanticIndex | None = None,
) -> PipelineContext:
    """
    Wire the pipeline collaborators.

    Anything not passed in is built from the environment: the global
    database, the configured object storage, Meilisearch and Pinecone.
    """
    registry = registry or get_default_registry()
    session_factory = session_factory or get_session_factory()
    client = client or CatalogClient(config=registry.global_config)
    search_index = search_index or SearchIndex()
    semantic_index = semantic_index or SemanticIndex(search_index)

    return PipelineContext(
        tracker=SessionTracker(session_factory),
        locks=locks,
        registry=registry,
        client=client,
        diff_filter=DiffFilter(session_factory),
        materializer=FamilyMaterializer(session_factory),
        asset_uploader=AssetUploader(storage or get_default_storage(), client, session_factory),
        search_indexer=SearchIndexer(search_index, session_factory),
        semantic_index=semantic_index,
    )


# ============================================================================
# arq Tasks
# ============================================================================


async def _run_stage(ctx: dict[str, Any], stage: Stage, payload: dict[str, Any]) -> dict[str, Any]:
    runner: PipelineRunner = ctx["runner"]
    outcome = await runner.execute(stage, payload, attempt=ctx.get("job_try", 1))
    if outcome.kind == OutcomeKind.RETRY:
        raise Retry(defer=outcome.retry_in)
    return outcome.to_dict()


async def run_diff_job(ctx: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    """Fetch the manifest for a supplier and fan out changed families."""
    return await _run_stage(ctx, Stage.DIFF, payload)


async def run_materialize_job(ctx: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    """Upsert one product family."""
    return await _run_stage(ctx, Stage.MATERIALIZE, payload)


async def run_assets_job(ctx: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    """Upload one image asset."""
    return await _run_stage(ctx, Stage.ASSETS, payload)


async def run_search_job(ctx: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    """Index one product in the search index."""
    return await _run_stage(ctx, Stage.SEARCH, payload)


async def run_semantic_job(ctx: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    """Index one product in the semantic store."""
    return await _run_stage(ctx, Stage.SEMANTIC, payload)


async def run_nightly_sync(ctx: dict[str, Any]) -> list[dict[str, Any]]:
    """Queue a scheduled sync for every enabled supplier."""
    runner: PipelineRunner = ctx["runner"]
    context = runner.context
    results = await start_scheduled_syncs(context.tracker, context.locks, runner.queue, registry=context.registry)
    return [r.to_dict() for r in results]


async def startup(ctx: dict[str, Any]) -> None:
    """Build the pipeline once per worker process."""
    registry = get_default_registry()
    redis: ArqRedis = ctx["redis"]
    context = build_context(RedisSyncLock(redis), registry=registry)
    ctx["context"] = context
    ctx["runner"] = PipelineRunner(context, ArqQueueBackend(redis), registry.stage_policies)


async def search_startup(ctx: dict[str, Any]) -> None:
    """Build the pipeline and apply the search index settings."""
    await startup(ctx)
    context: PipelineContext = ctx["context"]
    await asyncio.to_thread(context.search_indexer.index.setup_index)


async def shutdown(ctx: dict[str, Any]) -> None:
    """Close the shared HTTP client."""
    context: PipelineContext | None = ctx.get("context")
    if context is not None:
        await context.client.aclose()


# ============================================================================
# Worker Settings
# ============================================================================


def _policy(stage: Stage) -> StagePolicy:
    return get_default_registry().stage_policy(stage)


def nightly_cron_jobs() -> list[CronJob]:
    """Cron schedule for the nightly all-supplier sync (empty when disabled)."""
    hour = get_default_registry().global_config.nightly_sync_hour
    if hour is None:
        return []
    return [cron(run_nightly_sync, hour=hour, minute=0, unique=True)]


class StageWorkerSettings:
    """Settings shared by all stage workers."""

    redis_settings = get_redis_settings()
    on_startup = startup
    on_shutdown = shutdown
    keep_result = 86400  # 24 hours


class DiffWorkerSettings(StageWorkerSettings):
    """arq worker settings for the diff stage."""

    functions = [run_diff_job]
    queue_name = stage_queue_name(Stage.DIFF)
    cron_jobs = nightly_cron_jobs()
    max_jobs = _policy(Stage.DIFF).concurrency
    max_tries = _policy(Stage.DIFF).attempts
    job_timeout = _policy(Stage.DIFF).timeout


class MaterializeWorkerSettings(StageWorkerSettings):
    """arq worker settings for the materialize stage."""

    functions = [run_materialize_job]
    queue_name = stage_queue_name(Stage.MATERIALIZE)
    max_jobs = _policy(Stage.MATERIALIZE).concurrency
    max_tries = _policy(Stage.MATERIALIZE).attempts
    job_timeout = _policy(Stage.MATERIALIZE).timeout


class AssetsWorkerSettings(StageWorkerSettings):
    """arq worker settings for the assets stage."""

    functions = [run_assets_job]
    queue_name = stage_queue_name(Stage.ASSETS)
    max_jobs = _policy(Stage.ASSETS).concurrency
    max_tries = _policy(Stage.ASSETS).attempts
    job_timeout = _policy(Stage.ASSETS).timeout


class SearchWorkerSettings(StageWorkerSettings):
    """arq worker settings for the search stage."""

    functions = [run_search_job]
    queue_name = stage_queue_name(Stage.SEARCH)
    on_startup = search_startup
    max_jobs = _policy(Stage.SEARCH).concurrency
    max_tries = _policy(Stage.SEARCH).attempts
    job_timeout = _policy(Stage.SEARCH).timeout


class SemanticWorkerSettings(StageWorkerSettings):
    """arq worker settings for the semantic stage."""

    functions = [run_semantic_job]
    queue_name = stage_queue_name(Stage.SEMANTIC)
    max_jobs = _policy(Stage.SEMANTIC).concurrency
    max_tries = _policy(Stage.SEMANTIC).attempts
    job_timeout = _policy(Stage.SEMANTIC).timeout


WORKER_SETTINGS: dict[Stage, type[StageWorkerSettings]] = {
    Stage.DIFF: DiffWorkerSettings,
    Stage.MATERIALIZE: MaterializeWorkerSettings,
    Stage.ASSETS: AssetsWorkerSettings,
    Stage.SEARCH: SearchWorkerSettings,
    Stage.SEMANTIC: SemanticWorkerSettings,
}


# ============================================================================
# Entry Points
# ============================================================================


async def enqueue_supplier_sync(supplier_code: str, manual: bool = True) -> SyncStartResult:
    """
    Start a sync handled by the arq workers.

    Args:
        supplier_code: Supplier to sync
        manual: Operator-triggered run

    Returns:
        SyncStartResult
    """
    redis = await create_pool(get_redis_settings())
    try:
        tracker = SessionTracker(get_session_factory())
        return await start_supplier_sync(
            tracker, RedisSyncLock(redis), ArqQueueBackend(redis), supplier_code, manual=manual
        )
    finally:
        await redis.close()


async def enqueue_scheduled_syncs() -> list[SyncStartResult]:
    """Start scheduled syncs for every enabled supplier on the arq workers."""
    redis = await create_pool(get_redis_settings())
    try:
        tracker = SessionTracker(get_session_factory())
        return await start_scheduled_syncs(tracker, RedisSyncLock(redis), ArqQueueBackend(redis))
    finally:
        await redis.close()


async def request_stop(supplier_code: str) -> bool:
    """
    Ask a running sync to stop.

    Returns:
        False if no sync is running for the supplier
    """
    redis = await create_pool(get_redis_settings())
    try:
        return await RedisSyncLock(redis).request_stop(supplier_code)
    finally:
        await redis.close()


async def run_sync_local(
    supplier_code: str,
    context: PipelineContext | None = None,
    policies: dict[Stage, StagePolicy] | None = None,
    manual: bool = True,
) -> tuple[SyncStartResult, SessionSnapshot | None]:
    """
    Run every stage in-process until the session settles (without arq).

    Useful for CLI commands with --sync flag and for tests. Uses the same
    handlers, policies and gating as the queue workers.

    Args:
        supplier_code: Supplier to sync
        context: Pre-built pipeline context (default: built from environment
            with an in-process lock)
        policies: Stage policies (default: from the registry)
        manual: Operator-triggered run

    Returns:
        Start result and the final session snapshot
    """
    owns_context = context is None
    if context is None:
        context = build_context(LocalSyncLock())
    policies = policies or context.registry.stage_policies

    queue = InMemoryQueueBackend(policies)
    runner = PipelineRunner(context, queue, policies)
    try:
        started = await start_supplier_sync(
            context.tracker, context.locks, queue, supplier_code, manual=manual, registry=context.registry
        )
        if not started.started or started.session_id is None:
            return started, None

        await queue.run_until_idle(runner)
        snapshot = context.tracker.snapshot(started.session_id)
        if snapshot is not None:
            logger.info(
                f"Session {snapshot.session_id} finished as {snapshot.status.value} "
                f"in {snapshot.duration_seconds or 0.0:.1f}s"
            )
        return started, snapshot
    finally:
        if owns_context:
            await context.client.aclose()
