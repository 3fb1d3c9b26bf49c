"""Pinecone service for the semantic product index.

The semantic index is derived from the search index, not from the product
store: a product that is missing from the search index is skipped with a
warning until the search index is repaired.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any

from pinecone import Pinecone

from catalog_sync.services.search_service import SearchIndex

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "products"

# Record fields copied from the search document as filterable metadata
METADATA_FIELDS = ("family_key", "supplier_id", "brand", "category", "colors", "sizes", "price_min", "main_image")


@dataclass
class SemanticResult:
    """Outcome of a semantic index operation."""

    source_id: str
    skipped: bool = False
    reason: str | None = None


def render_text(document: dict[str, Any]) -> str:
    """Text embedded for a search document."""
    parts = [document.get("name") or ""]
    for label, key in (("Brand", "brand"), ("Category", "category")):
        if document.get(key):
            parts.append(f"{label}: {document[key]}")
    if document.get("colors"):
        parts.append("Colors: " + ", ".join(document["colors"]))
    if document.get("sizes"):
        parts.append("Sizes: " + ", ".join(document["sizes"]))
    if document.get("description"):
        parts.append(document["description"])
    return "\n".join(p for p in parts if p)


def build_record(document: dict[str, Any]) -> dict[str, Any]:
    """Pinecone record for server-side embedding."""
    record: dict[str, Any] = {"_id": str(document["id"]), "text": render_text(document)}
    for key in METADATA_FIELDS:
        value = document.get(key)
        if value is None or value == []:
            continue
        if isinstance(value, list):
            value = [str(v) for v in value]
        record[key] = value
    return record


class SemanticIndex:
    """Adapter over a Pinecone index with integrated embeddings."""

    def __init__(
        self,
        search_index: SearchIndex,
        index: Any = None,
        namespace: str | None = None,
        api_key: str | None = None,
        index_name: str | None = None,
    ) -> None:
        """
        Initialize the semantic index adapter.

        Args:
            search_index: Source of canonical documents
            index: Pre-built Pinecone index handle, mainly for tests
            namespace: Record namespace (default: PINECONE_NAMESPACE env or "products")
            api_key: Pinecone API key (default: PINECONE_API_KEY env)
            index_name: Pinecone index name (default: PINECONE_INDEX env or "catalog-products")
        """
        self.search_index = search_index
        self.namespace = namespace or os.getenv("PINECONE_NAMESPACE", DEFAULT_NAMESPACE)
        if index is None:
            pc = Pinecone(api_key=api_key or os.getenv("PINECONE_API_KEY"))
            index = pc.Index(index_name or os.getenv("PINECONE_INDEX", "catalog-products"))
        self.index = index

    async def upsert(self, source_id: str, task_uid: int | None = None) -> SemanticResult:
        """
        Re-project a document from the search index.

        Args:
            source_id: Document id in the search index
            task_uid: Search write that must be applied before the document
                is read back

        Returns:
            SemanticResult; skipped when the search index lacks the document

        Raises:
            TransientError: The search write is still pending
        """
        if task_uid is not None:
            await self.search_index.wait_for_task(task_uid)
        document = await self.search_index.get_document(source_id)
        if document is None:
            logger.warning(
                f"Document {source_id} not found in search index; "
                "repair the search index before syncing semantic records"
            )
            return SemanticResult(source_id=source_id, skipped=True, reason="missing_in_search_index")

        record = build_record(document)
        await asyncio.to_thread(self.index.upsert_records, namespace=self.namespace, records=[record])
        logger.debug(f"Upserted semantic record {source_id}")
        return SemanticResult(source_id=source_id)

    async def delete(self, source_id: str) -> SemanticResult:
        """Remove a record."""
        await asyncio.to_thread(self.index.delete, ids=[source_id], namespace=self.namespace)
        return SemanticResult(source_id=source_id)
