"""Shared fixtures for Catalog Sync tests."""

from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker

from catalog_sync.db.engine import create_db_engine, create_session_factory
from catalog_sync.db.models import Base
from catalog_sync.ingestion.registry import SupplierConfig, SupplierRegistry


@pytest.fixture
def engine(tmp_path: Path):
    """Create a file-backed test database engine."""
    engine = create_db_engine(tmp_path / "test.db")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    """Session factory bound to the test database."""
    return create_session_factory(engine)


@pytest.fixture
def registry() -> SupplierRegistry:
    """Registry with a single enabled supplier A113."""
    registry = SupplierRegistry()
    registry.add_supplier(SupplierConfig(code="A113", name="Test Textiles"))
    return registry
