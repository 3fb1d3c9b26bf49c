"""Asset deduplication and upload.

Assets are content-addressed by their deterministic target file name: an
object that already exists under that name is reused without downloading
or uploading anything.
"""

from __future__ import annotations

import asyncio
import logging
import tempfile
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.orm import Session

from catalog_sync.core.enums import EntityType
from catalog_sync.core.errors import ItemValidationError, TransientError
from catalog_sync.core.schema import AssetJob
from catalog_sync.db.repositories import MediaAssetRepository, ProductRepository, VariantRepository
from catalog_sync.ingestion.client import CatalogClient
from catalog_sync.services.object_storage import ObjectStorage

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "image/jpeg"

# Downloads larger than this spill from memory to a temporary file
SPOOL_MAX_SIZE = 5 * 1024 * 1024


def detect_content_type(head: bytes, fallback: str | None = None) -> str:
    """
    Detect an image MIME type from its leading bytes.

    Args:
        head: First bytes of the file (12 or more)
        fallback: Type to use when the signature is unknown

    Returns:
        MIME type
    """
    if head.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if head.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"
    if fallback and fallback != "application/octet-stream":
        return fallback
    return DEFAULT_CONTENT_TYPE


@dataclass
class AssetRef:
    """A stored asset and how it was obtained."""

    file_name: str
    ref: str
    deduplicated: bool
    content_type: str | None = None
    size_bytes: int = 0


class AssetUploader:
    """Uploads assets to object storage at most once per file name."""

    def __init__(
        self,
        storage: ObjectStorage,
        client: CatalogClient,
        session_factory: Callable[[], Session],
        spool_max_size: int = SPOOL_MAX_SIZE,
    ) -> None:
        self.storage = storage
        self.client = client
        self.session_factory = session_factory
        self.spool_max_size = spool_max_size

    async def upload(self, source_url: str, target_file_name: str) -> AssetRef:
        """
        Store an asset unless an object with the same name exists.

        Args:
            source_url: Where to download the asset from
            target_file_name: Deterministic object key

        Returns:
            AssetRef for the stored object

        Raises:
            TransientError: Download or upload failed and may be retried
            ItemValidationError: The source returned an empty body
        """
        existing = await asyncio.to_thread(self.storage.exists, target_file_name)
        if existing.exists and existing.ref:
            logger.debug(f"Dedup hit for {target_file_name}")
            self._register(target_file_name, existing.ref, source_url)
            return AssetRef(file_name=target_file_name, ref=existing.ref, deduplicated=True)

        buffer = tempfile.SpooledTemporaryFile(max_size=self.spool_max_size)
        try:
            header_type = await self.client.download(source_url, buffer)
            size = buffer.tell()
            if size == 0:
                raise ItemValidationError(f"Empty asset at {source_url}", {"url": source_url})
            buffer.seek(0)
            content_type = detect_content_type(buffer.read(16), header_type)
            buffer.seek(0)
            result = await asyncio.to_thread(self.storage.upload, buffer, target_file_name, content_type)
        finally:
            buffer.close()

        if not result.success or not result.ref:
            raise TransientError(
                f"Upload of {target_file_name} failed: {result.error or 'no reference returned'}",
                {"file_name": target_file_name},
            )

        self._register(target_file_name, result.ref, source_url, content_type, size)
        logger.info(f"Uploaded {target_file_name} ({size} bytes, {content_type})")
        return AssetRef(
            file_name=target_file_name,
            ref=result.ref,
            deduplicated=False,
            content_type=content_type,
            size_bytes=size,
        )

    def _register(
        self,
        file_name: str,
        ref: str,
        source_url: str,
        content_type: str = "",
        size_bytes: int = 0,
    ) -> None:
        with self.session_factory() as session:
            MediaAssetRepository(session).register(file_name, ref, source_url, content_type, size_bytes)
            session.commit()

    def attach(self, job: AssetJob, asset: AssetRef) -> None:
        """
        Link a stored asset to the entity that references it.

        The job flagged update_parent also becomes the product's main image.
        """
        with self.session_factory() as session:
            products = ProductRepository(session)
            if job.entity_type == EntityType.VARIANT:
                try:
                    VariantRepository(session).attach_image(job.entity_id, job.role, asset.ref)
                except ValueError as e:
                    raise ItemValidationError(str(e), {"variant_id": job.entity_id}) from e
                if job.update_parent and job.product_id:
                    products.set_main_image(job.product_id, asset.ref)
            else:
                products.set_main_image(job.entity_id, asset.ref)
            session.commit()
