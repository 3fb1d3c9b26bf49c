"""Meilisearch service for the product search index.

This service manages the full-text/faceted product index and projects
materialized products into search documents. Writes are enqueue-and-forget:
the Meilisearch task uid is returned without waiting for indexing, and
readers that need the write applied wait on that uid.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Callable
from typing import Any

from meilisearch import Client
from meilisearch.errors import (
    MeilisearchApiError,
    MeilisearchCommunicationError,
    MeilisearchTimeoutError,
)
from sqlalchemy.orm import Session

from catalog_sync.core.errors import ItemValidationError, TransientError
from catalog_sync.db.models import SyncedProductDB, SyncedVariantDB
from catalog_sync.db.repositories import ProductRepository, VariantRepository

logger = logging.getLogger(__name__)

PRODUCTS_INDEX = "products"

# How long the semantic stage waits for a search write before retrying
TASK_WAIT_TIMEOUT_MS = 5000

PENDING_TASK_STATUSES = ("enqueued", "processing")

_RETRYABLE = (MeilisearchApiError, MeilisearchCommunicationError, MeilisearchTimeoutError)


def _loads(raw: str | None, default: Any) -> Any:
    return json.loads(raw) if raw else default


def build_product_document(product: SyncedProductDB, variants: list[SyncedVariantDB]) -> dict[str, Any]:
    """
    Build the search document for a product and its variants.

    Multilingual fields are flattened to one attribute per language so
    every language is searchable.
    """
    name = _loads(product.name_json, {})
    description = _loads(product.description_json, {})
    price_tiers = _loads(product.price_tiers_json, [])
    attributes = _loads(product.attributes_json, {})
    active_variants = [v for v in variants if v.is_active]

    document: dict[str, Any] = {
        "id": product.id,
        "family_key": product.family_key,
        "supplier_id": product.supplier_id,
        "name": name.get("en") or next(iter(name.values()), ""),
        "description": description.get("en") or next(iter(description.values()), ""),
        "brand": product.brand,
        "category": product.category,
        "colors": _loads(product.available_colors_json, []),
        "sizes": _loads(product.available_sizes_json, []),
        "hex_colors": sorted({v.hex_color for v in active_variants if v.hex_color}),
        "skus": [v.variant_key for v in active_variants],
        "material": attributes.get("material"),
        "country_of_origin": attributes.get("country_of_origin"),
        "price_min": min((t["price"] for t in price_tiers if t.get("price") is not None), default=None),
        "main_image": product.main_image_ref,
        "variant_count": len(active_variants),
        "is_active": product.is_active,
        "updated_at": int(product.updated_at.timestamp()) if product.updated_at else None,
    }
    for lang, text in name.items():
        document[f"name_{lang}"] = text
    for lang, text in description.items():
        document[f"description_{lang}"] = text
    return document


class SearchIndex:
    """Adapter over a Meilisearch index of product documents."""

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        index_name: str | None = None,
        client: Client | None = None,
    ):
        """
        Initialize the search index adapter.

        Args:
            url: Meilisearch server URL (default: MEILISEARCH_URL env or localhost:7700)
            api_key: Meilisearch API key (default: MEILISEARCH_API_KEY env or None)
            index_name: Index uid (default: MEILISEARCH_INDEX env or "products")
            client: Pre-built client, mainly for tests
        """
        self.url = url or os.getenv("MEILISEARCH_URL", "http://localhost:7700")
        self.api_key = api_key or os.getenv("MEILISEARCH_API_KEY")
        self.index_name = index_name or os.getenv("MEILISEARCH_INDEX", PRODUCTS_INDEX)
        self.client = client or Client(self.url, self.api_key)

    @property
    def index(self):
        return self.client.index(self.index_name)

    def is_available(self) -> bool:
        """Check if Meilisearch is reachable."""
        try:
            self.client.health()
            return True
        except _RETRYABLE:
            return False

    def setup_index(self) -> None:
        """Configure searchable, filterable and sortable attributes."""
        self.index.update_settings({
            "searchableAttributes": [
                "name",
                "name_en",
                "name_nl",
                "name_de",
                "name_fr",
                "family_key",
                "skus",
                "brand",
                "category",
                "colors",
                "description",
            ],
            "filterableAttributes": [
                "supplier_id",
                "brand",
                "category",
                "colors",
                "sizes",
                "is_active",
            ],
            "sortableAttributes": [
                "price_min",
                "updated_at",
                "name",
            ],
        })
        logger.info(f"Search index '{self.index_name}' configured")

    # =========================================================================
    # Indexing Methods
    # =========================================================================

    async def upsert(self, document: dict[str, Any]) -> int | None:
        """
        Add or replace a document.

        Returns:
            Meilisearch task uid
        """
        try:
            task = await asyncio.to_thread(self.index.add_documents, [document], "id")
        except _RETRYABLE as e:
            raise TransientError(f"Search upsert failed for {document.get('id')}: {e}") from e
        logger.debug(f"Enqueued search upsert for {document.get('id')} (task {task.task_uid})")
        return task.task_uid

    async def delete(self, document_id: str) -> int | None:
        """
        Delete a document.

        Returns:
            Meilisearch task uid
        """
        try:
            task = await asyncio.to_thread(self.index.delete_document, document_id)
        except _RETRYABLE as e:
            raise TransientError(f"Search delete failed for {document_id}: {e}") from e
        return task.task_uid

    async def wait_for_task(self, task_uid: int, timeout_ms: int = TASK_WAIT_TIMEOUT_MS) -> None:
        """
        Wait until a write task has been applied to the index.

        Raises:
            TransientError: The task is still queued or Meilisearch is unreachable
            ItemValidationError: Meilisearch rejected the write
        """
        try:
            task = await asyncio.to_thread(self.client.wait_for_task, task_uid, timeout_ms)
        except _RETRYABLE as e:
            raise TransientError(f"Search task {task_uid} not finished: {e}") from e

        if task.status in PENDING_TASK_STATUSES:
            raise TransientError(f"Search task {task_uid} still {task.status}")
        if task.status != "succeeded":
            raise ItemValidationError(
                f"Search task {task_uid} {task.status}: {task.error}", {"task_uid": task_uid}
            )

    async def get_document(self, document_id: str) -> dict[str, Any] | None:
        """
        Fetch a document by id.

        Returns:
            The document, or None if the index does not contain it
        """
        try:
            document = await asyncio.to_thread(self.index.get_document, document_id)
        except MeilisearchApiError as e:
            if e.status_code == 404 or getattr(e, "code", None) == "document_not_found":
                return None
            raise TransientError(f"Search lookup failed for {document_id}: {e}") from e
        except (MeilisearchCommunicationError, MeilisearchTimeoutError) as e:
            raise TransientError(f"Search lookup failed for {document_id}: {e}") from e
        return dict(document)


class SearchIndexer:
    """Projects materialized products into the search index."""

    def __init__(self, index: SearchIndex, session_factory: Callable[[], Session]) -> None:
        self.index = index
        self.session_factory = session_factory

    def load_document(self, product_id: str) -> dict[str, Any] | None:
        """Build the current document for a product, or None if it does not exist."""
        with self.session_factory() as session:
            product = ProductRepository(session).get_by_id(product_id)
            if product is None:
                return None
            variants = VariantRepository(session).list_for_product(product_id)
            return build_product_document(product, variants)

    async def upsert_product(self, product_id: str) -> int | None:
        """
        Index a product.

        Returns:
            Task uid, or None when the product is not in the store
        """
        document = self.load_document(product_id)
        if document is None:
            return None
        return await self.index.upsert(document)

    async def delete_product(self, product_id: str) -> int | None:
        """Remove a product from the index."""
        return await self.index.delete(product_id)
