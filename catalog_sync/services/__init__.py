"""Application services for Catalog Sync."""

from catalog_sync.services.object_storage import (
    LocalObjectStorage,
    ObjectStorage,
    S3ObjectStorage,
    get_default_storage,
)
from catalog_sync.services.asset_uploader import AssetRef, AssetUploader
from catalog_sync.services.materializer import FamilyMaterializer, MaterializeOutcome
from catalog_sync.services.search_service import SearchIndex, SearchIndexer
from catalog_sync.services.semantic_service import SemanticIndex, SemanticResult

__all__ = [
    "LocalObjectStorage",
    "ObjectStorage",
    "S3ObjectStorage",
    "get_default_storage",
    "AssetRef",
    "AssetUploader",
    "FamilyMaterializer",
    "MaterializeOutcome",
    "SearchIndex",
    "SearchIndexer",
    "SemanticIndex",
    "SemanticResult",
]
