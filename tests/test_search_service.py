"""Tests for the search and semantic index services."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from meilisearch.errors import MeilisearchApiError, MeilisearchCommunicationError, MeilisearchTimeoutError

from catalog_sync.core.errors import ItemValidationError, TransientError
from catalog_sync.ingestion.grouping import build_family
from catalog_sync.ingestion.raw_item import RawItem
from catalog_sync.services.materializer import FamilyMaterializer
from catalog_sync.services.search_service import SearchIndex, SearchIndexer
from catalog_sync.services.semantic_service import SemanticIndex, build_record, render_text


def api_error(status_code: int, code: str) -> MeilisearchApiError:
    response = MagicMock()
    response.status_code = status_code
    response.text = f'{{"message": "{code}", "code": "{code}", "type": "invalid_request", "link": ""}}'
    return MeilisearchApiError("error", response)


@pytest.fixture
def mock_meilisearch_client():
    """Create a mock Meilisearch client."""
    mock_client = MagicMock()
    mock_client.health.return_value = True

    mock_index = MagicMock()
    mock_index.add_documents.return_value = MagicMock(task_uid=7)
    mock_index.delete_document.return_value = MagicMock(task_uid=8)
    mock_index.get_document.return_value = {"id": "p1", "name": "Classic Tee"}

    mock_client.index.return_value = mock_index
    return mock_client


@pytest.fixture
def search_index(mock_meilisearch_client) -> SearchIndex:
    return SearchIndex(url="http://localhost:7700", index_name="products", client=mock_meilisearch_client)


@pytest.fixture
def product_id(session_factory) -> str:
    items = [
        RawItem.from_payload(
            {
                "sku": f"T-{size}",
                "a_number": "FAM-1",
                "name": "Classic Tee",
                "color_code": "BLK",
                "color_name": "Black",
                "size": size,
                "brand": "Acme",
                "price_1": "4.50",
            }
        )
        for size in ("M", "S")
    ]
    family = build_family("FAM-1", items, sort_sizes=True)
    return FamilyMaterializer(session_factory).materialize(family, "A113", "h1").product_id


class TestSearchIndex:
    """Tests for the Meilisearch adapter."""

    def test_is_available(self, search_index, mock_meilisearch_client) -> None:
        assert search_index.is_available() is True
        mock_meilisearch_client.health.side_effect = MeilisearchCommunicationError("down")
        assert search_index.is_available() is False

    def test_setup_index(self, search_index, mock_meilisearch_client) -> None:
        search_index.setup_index()
        settings = mock_meilisearch_client.index.return_value.update_settings.call_args[0][0]
        assert "supplier_id" in settings["filterableAttributes"]
        assert "skus" in settings["searchableAttributes"]

    @pytest.mark.asyncio
    async def test_upsert_returns_task_uid(self, search_index, mock_meilisearch_client) -> None:
        assert await search_index.upsert({"id": "p1"}) == 7
        mock_meilisearch_client.index.return_value.add_documents.assert_called_once_with([{"id": "p1"}], "id")

    @pytest.mark.asyncio
    async def test_upsert_failure_is_transient(self, search_index, mock_meilisearch_client) -> None:
        mock_meilisearch_client.index.return_value.add_documents.side_effect = MeilisearchCommunicationError("down")
        with pytest.raises(TransientError):
            await search_index.upsert({"id": "p1"})

    @pytest.mark.asyncio
    async def test_get_document_missing(self, search_index, mock_meilisearch_client) -> None:
        mock_meilisearch_client.index.return_value.get_document.side_effect = api_error(404, "document_not_found")
        assert await search_index.get_document("p1") is None

    @pytest.mark.asyncio
    async def test_get_document_server_error(self, search_index, mock_meilisearch_client) -> None:
        mock_meilisearch_client.index.return_value.get_document.side_effect = api_error(500, "internal")
        with pytest.raises(TransientError):
            await search_index.get_document("p1")

    @pytest.mark.asyncio
    async def test_wait_for_task_succeeded(self, search_index, mock_meilisearch_client) -> None:
        mock_meilisearch_client.wait_for_task.return_value = MagicMock(status="succeeded", error=None)
        await search_index.wait_for_task(7)
        mock_meilisearch_client.wait_for_task.assert_called_once_with(7, 5000)

    @pytest.mark.asyncio
    async def test_wait_for_pending_task_is_transient(self, search_index, mock_meilisearch_client) -> None:
        mock_meilisearch_client.wait_for_task.side_effect = MeilisearchTimeoutError("task 7 still processing")
        with pytest.raises(TransientError):
            await search_index.wait_for_task(7)

        mock_meilisearch_client.wait_for_task.side_effect = None
        mock_meilisearch_client.wait_for_task.return_value = MagicMock(status="enqueued", error=None)
        with pytest.raises(TransientError):
            await search_index.wait_for_task(7)

    @pytest.mark.asyncio
    async def test_wait_for_failed_task(self, search_index, mock_meilisearch_client) -> None:
        mock_meilisearch_client.wait_for_task.return_value = MagicMock(
            status="failed", error={"code": "invalid_document_id"}
        )
        with pytest.raises(ItemValidationError):
            await search_index.wait_for_task(7)


class TestSearchIndexer:
    """Tests for projecting products into search documents."""

    def test_load_document(self, search_index, session_factory, product_id) -> None:
        document = SearchIndexer(search_index, session_factory).load_document(product_id)

        assert document["id"] == product_id
        assert document["family_key"] == "FAM-1"
        assert document["name"] == "Classic Tee"
        assert document["name_en"] == "Classic Tee"
        assert document["sizes"] == ["S", "M"]
        assert sorted(document["skus"]) == ["T-M", "T-S"]
        assert document["variant_count"] == 2
        assert document["brand"] == "Acme"

    @pytest.mark.asyncio
    async def test_upsert_product(self, search_index, session_factory, product_id, mock_meilisearch_client) -> None:
        assert await SearchIndexer(search_index, session_factory).upsert_product(product_id) == 7
        sent = mock_meilisearch_client.index.return_value.add_documents.call_args[0][0]
        assert sent[0]["id"] == product_id

    @pytest.mark.asyncio
    async def test_upsert_missing_product(self, search_index, session_factory, mock_meilisearch_client) -> None:
        assert await SearchIndexer(search_index, session_factory).upsert_product("missing") is None
        mock_meilisearch_client.index.return_value.add_documents.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_product(self, search_index, session_factory, mock_meilisearch_client) -> None:
        assert await SearchIndexer(search_index, session_factory).delete_product("p1") == 8
        mock_meilisearch_client.index.return_value.delete_document.assert_called_once_with("p1")


class TestSemanticIndex:
    """Tests for the Pinecone adapter."""

    def test_render_text(self) -> None:
        text = render_text({"name": "Tee", "brand": "Acme", "colors": ["Black"], "sizes": ["S", "M"]})
        assert text == "Tee\nBrand: Acme\nColors: Black\nSizes: S, M"

    def test_build_record_drops_empty_metadata(self) -> None:
        record = build_record({"id": "p1", "name": "Tee", "brand": None, "colors": [], "sizes": ["S"]})
        assert record == {"_id": "p1", "text": "Tee\nSizes: S", "sizes": ["S"]}

    @pytest.mark.asyncio
    async def test_upsert_from_search_document(self, search_index) -> None:
        pinecone_index = MagicMock()
        semantic = SemanticIndex(search_index, index=pinecone_index, namespace="test")

        result = await semantic.upsert("p1")

        assert result.skipped is False
        pinecone_index.upsert_records.assert_called_once_with(
            namespace="test", records=[{"_id": "p1", "text": "Classic Tee"}]
        )

    @pytest.mark.asyncio
    async def test_upsert_waits_for_search_write(self, search_index, mock_meilisearch_client) -> None:
        mock_meilisearch_client.wait_for_task.return_value = MagicMock(status="succeeded", error=None)
        pinecone_index = MagicMock()
        semantic = SemanticIndex(search_index, index=pinecone_index, namespace="test")

        result = await semantic.upsert("p1", task_uid=7)

        assert result.skipped is False
        mock_meilisearch_client.wait_for_task.assert_called_once_with(7, 5000)
        pinecone_index.upsert_records.assert_called_once()

    @pytest.mark.asyncio
    async def test_pending_search_write_is_retried(self, search_index, mock_meilisearch_client) -> None:
        """Test that an unapplied search write is not mistaken for a missing document."""
        mock_meilisearch_client.wait_for_task.return_value = MagicMock(status="processing", error=None)
        pinecone_index = MagicMock()
        semantic = SemanticIndex(search_index, index=pinecone_index, namespace="test")

        with pytest.raises(TransientError):
            await semantic.upsert("p1", task_uid=7)

        mock_meilisearch_client.index.return_value.get_document.assert_not_called()
        pinecone_index.upsert_records.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_search_document_is_skipped(self) -> None:
        search_index = MagicMock()
        search_index.get_document = AsyncMock(return_value=None)
        pinecone_index = MagicMock()
        semantic = SemanticIndex(search_index, index=pinecone_index, namespace="test")

        result = await semantic.upsert("p1")

        assert result.skipped is True
        assert result.reason == "missing_in_search_index"
        pinecone_index.upsert_records.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete(self, search_index) -> None:
        pinecone_index = MagicMock()
        semantic = SemanticIndex(search_index, index=pinecone_index, namespace="test")

        await semantic.delete("p1")

        pinecone_index.delete.assert_called_once_with(ids=["p1"], namespace="test")
