"""Tests for the supplier registry module."""

from pathlib import Path

import pytest
import yaml

from catalog_sync.core.enums import BackoffKind, Stage
from catalog_sync.ingestion.registry import (
    DEFAULT_STAGE_POLICIES,
    GlobalConfig,
    RateLimitConfig,
    StagePolicy,
    SupplierConfig,
    SupplierRegistry,
    get_default_registry,
    reset_default_registry,
)


class TestRateLimitConfig:
    """Tests for RateLimitConfig."""

    def test_from_dict(self) -> None:
        config = RateLimitConfig.from_dict({"requests_per_second": 2.5, "burst_limit": 3})
        assert config.requests_per_second == 2.5
        assert config.burst_limit == 3

    def test_from_dict_none(self) -> None:
        config = RateLimitConfig.from_dict(None)
        assert config.requests_per_second == 5.0
        assert config.burst_limit == 10


class TestStagePolicy:
    """Tests for StagePolicy."""

    def test_exponential_delay(self) -> None:
        policy = StagePolicy(backoff=BackoffKind.EXPONENTIAL, backoff_delay=10.0)
        assert policy.retry_delay(1) == 10.0
        assert policy.retry_delay(2) == 20.0
        assert policy.retry_delay(3) == 40.0

    def test_fixed_delay(self) -> None:
        policy = StagePolicy(backoff=BackoffKind.FIXED, backoff_delay=30.0)
        assert policy.retry_delay(1) == 30.0
        assert policy.retry_delay(4) == 30.0

    def test_overlay_keeps_base_values(self) -> None:
        """Test that unspecified keys inherit from the base policy."""
        base = DEFAULT_STAGE_POLICIES[Stage.ASSETS]
        policy = StagePolicy.from_dict({"concurrency": 2}, base)
        assert policy.concurrency == 2
        assert policy.attempts == base.attempts
        assert policy.backoff == BackoffKind.FIXED

    def test_default_policies(self) -> None:
        """Test the documented defaults for each stage."""
        assert DEFAULT_STAGE_POLICIES[Stage.DIFF].concurrency == 1
        assert DEFAULT_STAGE_POLICIES[Stage.DIFF].attempts == 2
        assert DEFAULT_STAGE_POLICIES[Stage.MATERIALIZE].concurrency == 3
        assert DEFAULT_STAGE_POLICIES[Stage.ASSETS].concurrency == 10
        assert DEFAULT_STAGE_POLICIES[Stage.ASSETS].backoff == BackoffKind.FIXED
        assert DEFAULT_STAGE_POLICIES[Stage.SEARCH].rate_limit_max is None


class TestSupplierConfig:
    """Tests for SupplierConfig."""

    def test_from_dict_minimal(self) -> None:
        config = SupplierConfig.from_dict({"code": "A113"})
        assert config.code == "A113"
        assert config.enabled is True
        assert config.sort_sizes is False
        assert config.rate_limit is None

    def test_from_dict_full(self) -> None:
        config = SupplierConfig.from_dict(
            {
                "code": "A58",
                "name": "Promo",
                "enabled": False,
                "sort_sizes": True,
                "rate_limit": {"requests_per_second": 2.0, "burst_limit": 4},
            }
        )
        assert config.enabled is False
        assert config.sort_sizes is True
        assert config.rate_limit.requests_per_second == 2.0


class TestGlobalConfig:
    """Tests for GlobalConfig."""

    def test_manifest_url(self) -> None:
        config = GlobalConfig.from_dict({"base_url": "https://cat.test/", "manifest_path": "/Import/Import.txt"})
        assert config.manifest_url == "https://cat.test/Import/Import.txt"

    def test_nightly_sync_hour(self) -> None:
        assert GlobalConfig.from_dict({}).nightly_sync_hour == 2
        assert GlobalConfig.from_dict({"nightly_sync_hour": "5"}).nightly_sync_hour == 5
        assert GlobalConfig.from_dict({"nightly_sync_hour": None}).nightly_sync_hour is None


class TestSupplierRegistry:
    """Tests for SupplierRegistry."""

    @pytest.fixture
    def config_file(self, tmp_path: Path) -> Path:
        data = {
            "global": {"base_url": "https://cat.test", "batch_size": 20},
            "stages": {"assets": {"concurrency": 4}},
            "suppliers": [
                {"code": "A113", "name": "Textiles"},
                {"code": "A24", "name": "Drinkware", "enabled": False},
            ],
        }
        path = tmp_path / "suppliers.yaml"
        path.write_text(yaml.dump(data))
        return path

    def test_load_config(self, config_file: Path) -> None:
        registry = SupplierRegistry()
        registry.load_config(config_file)

        assert registry.config_path == config_file.resolve()
        assert registry.global_config.batch_size == 20
        assert [s.code for s in registry.list_suppliers()] == ["A113", "A24"]
        assert [s.code for s in registry.list_enabled_suppliers()] == ["A113"]
        assert registry.get_supplier("A24").enabled is False
        assert registry.get_supplier("ZZZ") is None

    def test_stage_overrides(self, config_file: Path) -> None:
        registry = SupplierRegistry()
        registry.load_config(config_file)

        assert registry.stage_policy(Stage.ASSETS).concurrency == 4
        assert registry.stage_policy(Stage.ASSETS).attempts == 5
        assert registry.stage_policy(Stage.SEARCH) == DEFAULT_STAGE_POLICIES[Stage.SEARCH]

    def test_env_overrides_base_url(self, config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CATALOG_BASE_URL", "https://mirror.test/")
        registry = SupplierRegistry()
        registry.load_config(config_file)
        assert registry.global_config.base_url == "https://mirror.test"

    def test_missing_file(self, tmp_path: Path) -> None:
        registry = SupplierRegistry()
        with pytest.raises(FileNotFoundError):
            registry.load_config(tmp_path / "missing.yaml")

    def test_default_registry_from_env(self, config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        reset_default_registry()
        monkeypatch.setenv("SUPPLIERS_CONFIG_PATH", str(config_file))
        try:
            registry = get_default_registry()
            assert registry.get_supplier("A113") is not None
            assert get_default_registry() is registry
        finally:
            reset_default_registry()

    def test_bundled_config_loads(self) -> None:
        """Test that the shipped config/suppliers.yaml parses."""
        path = Path(__file__).parent.parent / "config" / "suppliers.yaml"
        registry = SupplierRegistry()
        registry.load_config(path)
        assert registry.get_supplier("A58").rate_limit.burst_limit == 4
        assert registry.stage_policy(Stage.DIFF).timeout == 1800
