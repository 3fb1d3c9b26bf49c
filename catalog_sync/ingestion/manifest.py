"""Parsing of the supplier manifest (one `url|hash` line per raw item)."""

import logging
import re
from urllib.parse import urlparse

from catalog_sync.core.schema import CatalogEntry

logger = logging.getLogger(__name__)

# Category listing referenced from the manifest; not a product line
CATEGORY_FILE_NAME = "CAT.csv"

SUPPLIER_CODE_PATTERN = re.compile(r"/([A-Z]\d+)/")


def extract_supplier_code(url: str) -> str | None:
    """Return the first `/A123/`-style path segment of a URL."""
    match = SUPPLIER_CODE_PATTERN.search(urlparse(url).path + "/")
    return match.group(1) if match else None


def extract_item_key(url: str) -> str:
    """Return the item key (SKU) encoded in a payload URL's filename."""
    filename = urlparse(url).path.rsplit("/", 1)[-1]
    return filename[:-5] if filename.lower().endswith(".json") else filename


def parse_line(line: str) -> CatalogEntry | None:
    """
    Parse one manifest line.

    Returns:
        CatalogEntry, or None for blank, malformed and category lines
    """
    line = line.strip()
    if not line or CATEGORY_FILE_NAME in line:
        return None

    url, sep, content_hash = line.partition("|")
    url = url.strip()
    content_hash = content_hash.strip()
    if not sep or not url or not content_hash:
        logger.debug(f"Skipping malformed manifest line: {line[:100]}")
        return None

    return CatalogEntry(
        url=url,
        hash=content_hash,
        item_key=extract_item_key(url),
        supplier_code=extract_supplier_code(url),
    )


def parse_manifest(text: str, supplier_code: str | None = None) -> list[CatalogEntry]:
    """
    Parse manifest text into catalog entries.

    Args:
        text: Manifest body
        supplier_code: If given, keep only entries belonging to this supplier

    Returns:
        Entries in manifest order
    """
    entries = []
    for line in text.splitlines():
        entry = parse_line(line)
        if entry is None:
            continue
        if supplier_code is not None and entry.supplier_code != supplier_code:
            continue
        entries.append(entry)
    return entries
