"""
Catalog Sync Ingestion Framework
================================

This package provides the staged pipeline that keeps the product store,
search index and semantic store in step with a supplier's remote catalog.

Pipeline Stages:
1. Diff - Fetch the manifest and raw items, group them into families and
   keep only families whose content hash changed
2. Materialize - Upsert each changed family's product and variants
3. Assets - Upload variant images to object storage (deduplicated by name)
4. Search - Project products into the Meilisearch index
5. Semantic - Project indexed documents into the Pinecone store

Stage handlers, the supervisor and the arq tasks live in workers.py,
runner.py and jobs.py; import them from those modules directly.
"""

from catalog_sync.ingestion.registry import (
    GlobalConfig,
    RateLimitConfig,
    StagePolicy,
    SupplierConfig,
    SupplierRegistry,
    get_default_registry,
)
from catalog_sync.ingestion.client import (
    CatalogClient,
    TokenBucket,
)
from catalog_sync.ingestion.manifest import parse_manifest
from catalog_sync.ingestion.raw_item import (
    ItemShape,
    RawItem,
    unwrap_payload,
)
from catalog_sync.ingestion.grouping import (
    GroupingResult,
    ProductFamily,
    build_family,
    group_by_family_key,
)
from catalog_sync.ingestion.diff import DiffFilter
from catalog_sync.ingestion.session_tracker import SessionTracker
from catalog_sync.ingestion.gating import (
    Action,
    ActionKind,
    next_actions,
)
from catalog_sync.ingestion.locks import (
    LocalSyncLock,
    RedisSyncLock,
    SyncLock,
)
from catalog_sync.ingestion.queues import (
    ArqQueueBackend,
    InMemoryQueueBackend,
    QueueBackend,
)

__all__ = [
    # Registry
    "GlobalConfig",
    "RateLimitConfig",
    "StagePolicy",
    "SupplierConfig",
    "SupplierRegistry",
    "get_default_registry",
    # Fetching
    "CatalogClient",
    "TokenBucket",
    "parse_manifest",
    # Raw items and grouping
    "ItemShape",
    "RawItem",
    "unwrap_payload",
    "GroupingResult",
    "ProductFamily",
    "build_family",
    "group_by_family_key",
    # Diff
    "DiffFilter",
    # Session tracking and gating
    "SessionTracker",
    "Action",
    "ActionKind",
    "next_actions",
    # Locks and queues
    "LocalSyncLock",
    "RedisSyncLock",
    "SyncLock",
    "ArqQueueBackend",
    "InMemoryQueueBackend",
    "QueueBackend",
]
