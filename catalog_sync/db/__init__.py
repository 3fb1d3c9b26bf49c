"""Database initialization and persistence layer."""

from catalog_sync.db.engine import (
    create_db_engine,
    create_session_factory,
    get_database_url,
    get_engine,
    get_session_factory,
    init_db,
)
from catalog_sync.db.models import (
    Base,
    MediaAssetDB,
    SyncedProductDB,
    SyncedVariantDB,
    SyncErrorDB,
    SyncSessionDB,
    SyncStageDB,
)
from catalog_sync.db.repositories import (
    MediaAssetRepository,
    ProductRepository,
    VariantRepository,
)

__all__ = [
    # Engine
    "create_db_engine",
    "create_session_factory",
    "get_database_url",
    "get_engine",
    "get_session_factory",
    "init_db",
    # Models
    "Base",
    "MediaAssetDB",
    "SyncedProductDB",
    "SyncedVariantDB",
    "SyncErrorDB",
    "SyncSessionDB",
    "SyncStageDB",
    # Repositories
    "MediaAssetRepository",
    "ProductRepository",
    "VariantRepository",
]
