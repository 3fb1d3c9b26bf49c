"""
Supplier Registry Module
========================

Manages supplier and pipeline configuration loaded from YAML files.
Suppliers define which catalog slices can be synced; stage policies
define concurrency, retry and rate limiting for each pipeline stage.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from catalog_sync.core.enums import BackoffKind, Stage


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


@dataclass
class RateLimitConfig:
    """Rate limiting configuration for remote catalog requests."""

    requests_per_second: float = 5.0
    burst_limit: int = 10

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RateLimitConfig:
        """Create from dictionary, using defaults for missing values."""
        if data is None:
            return cls()
        return cls(
            requests_per_second=float(data.get("requests_per_second", 5.0)),
            burst_limit=int(data.get("burst_limit", 10)),
        )


@dataclass
class StagePolicy:
    """Worker pool, retry and rate limiting policy of one pipeline stage."""

    concurrency: int = 5
    attempts: int = 3
    backoff: BackoffKind = BackoffKind.EXPONENTIAL
    backoff_delay: float = 5.0
    rate_limit_max: int | None = None
    rate_limit_window: float = 1.0
    timeout: int = 300

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, base: StagePolicy | None = None) -> StagePolicy:
        """Create from dictionary, overlaying values on a base policy."""
        policy = base or cls()
        if not data:
            return policy
        rate_limit_max = data.get("rate_limit_max", policy.rate_limit_max)
        return replace(
            policy,
            concurrency=int(data.get("concurrency", policy.concurrency)),
            attempts=int(data.get("attempts", policy.attempts)),
            backoff=BackoffKind(data.get("backoff", policy.backoff)),
            backoff_delay=float(data.get("backoff_delay", policy.backoff_delay)),
            rate_limit_max=int(rate_limit_max) if rate_limit_max is not None else None,
            rate_limit_window=float(data.get("rate_limit_window", policy.rate_limit_window)),
            timeout=int(data.get("timeout", policy.timeout)),
        )

    def retry_delay(self, attempt: int) -> float:
        """
        Delay before retrying after a failed attempt.

        Args:
            attempt: 1-based number of the attempt that just failed

        Returns:
            Seconds to wait before the next attempt
        """
        if self.backoff == BackoffKind.FIXED:
            return self.backoff_delay
        return self.backoff_delay * (2 ** max(attempt - 1, 0))


DEFAULT_STAGE_POLICIES: dict[Stage, StagePolicy] = {
    Stage.DIFF: StagePolicy(
        concurrency=1, attempts=2, backoff=BackoffKind.EXPONENTIAL, backoff_delay=30.0,
        rate_limit_max=1, rate_limit_window=1.0, timeout=1800,
    ),
    Stage.MATERIALIZE: StagePolicy(
        concurrency=3, attempts=3, backoff=BackoffKind.EXPONENTIAL, backoff_delay=10.0,
        rate_limit_max=5, rate_limit_window=1.0, timeout=300,
    ),
    Stage.ASSETS: StagePolicy(
        concurrency=10, attempts=5, backoff=BackoffKind.FIXED, backoff_delay=30.0,
        rate_limit_max=20, rate_limit_window=1.0, timeout=120,
    ),
    Stage.SEARCH: StagePolicy(
        concurrency=5, attempts=3, backoff=BackoffKind.EXPONENTIAL, backoff_delay=5.0,
    ),
    Stage.SEMANTIC: StagePolicy(
        concurrency=5, attempts=3, backoff=BackoffKind.EXPONENTIAL, backoff_delay=5.0,
    ),
}


@dataclass
class SupplierConfig:
    """Configuration for a single supplier."""

    code: str
    name: str = ""
    enabled: bool = True
    sort_sizes: bool = False
    rate_limit: RateLimitConfig | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SupplierConfig:
        """Create from dictionary."""
        rate_limit_data = data.get("rate_limit")
        return cls(
            code=str(data["code"]),
            name=data.get("name", ""),
            enabled=data.get("enabled", True),
            sort_sizes=data.get("sort_sizes", False),
            rate_limit=RateLimitConfig.from_dict(rate_limit_data) if rate_limit_data else None,
        )


@dataclass
class GlobalConfig:
    """Global configuration settings."""

    base_url: str = "https://catalog.example.com"
    manifest_path: str = "Import/Import.txt"
    default_rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    user_agent: str = "CatalogSync/0.1"
    request_timeout: int = 30
    max_retries: int = 3
    fetch_concurrency: int = 5
    batch_size: int = 50
    nightly_sync_hour: int | None = 2

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> GlobalConfig:
        """Create from dictionary."""
        if data is None:
            return cls()
        defaults = cls()
        return cls(
            base_url=data.get("base_url", defaults.base_url).rstrip("/"),
            manifest_path=data.get("manifest_path", defaults.manifest_path),
            default_rate_limit=RateLimitConfig.from_dict(data.get("default_rate_limit")),
            user_agent=data.get("user_agent", defaults.user_agent),
            request_timeout=int(data.get("request_timeout", defaults.request_timeout)),
            max_retries=int(data.get("max_retries", defaults.max_retries)),
            fetch_concurrency=int(data.get("fetch_concurrency", defaults.fetch_concurrency)),
            batch_size=int(data.get("batch_size", defaults.batch_size)),
            nightly_sync_hour=_optional_int(data.get("nightly_sync_hour", defaults.nightly_sync_hour)),
        )

    @property
    def manifest_url(self) -> str:
        """Absolute URL of the supplier manifest."""
        return f"{self.base_url}/{self.manifest_path.lstrip('/')}"


class SupplierRegistry:
    """
    Registry for supplier and stage configuration.

    Loads definitions from a YAML file and provides methods to query them.
    """

    def __init__(self) -> None:
        self._suppliers: dict[str, SupplierConfig] = {}
        self._global_config: GlobalConfig = GlobalConfig()
        self._stage_policies: dict[Stage, StagePolicy] = dict(DEFAULT_STAGE_POLICIES)
        self._config_path: Path | None = None

    @property
    def global_config(self) -> GlobalConfig:
        """Get global configuration."""
        return self._global_config

    @property
    def config_path(self) -> Path | None:
        """Path the configuration was loaded from, if any."""
        return self._config_path

    def load_config(self, config_path: Path | str) -> None:
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to the suppliers.yaml file
        """
        config_path = Path(config_path).expanduser().resolve()
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        self._config_path = config_path
        self._global_config = GlobalConfig.from_dict(data.get("global"))

        env_base_url = os.environ.get("CATALOG_BASE_URL")
        if env_base_url:
            self._global_config.base_url = env_base_url.rstrip("/")

        self._stage_policies = dict(DEFAULT_STAGE_POLICIES)
        for stage_name, stage_data in (data.get("stages") or {}).items():
            stage = Stage(stage_name)
            self._stage_policies[stage] = StagePolicy.from_dict(stage_data, DEFAULT_STAGE_POLICIES[stage])

        self._suppliers.clear()
        for supplier_data in data.get("suppliers", []):
            supplier = SupplierConfig.from_dict(supplier_data)
            self._suppliers[supplier.code] = supplier

    def get_supplier(self, code: str) -> SupplierConfig | None:
        """
        Get a supplier configuration by code.

        Args:
            code: Supplier code (e.g. "A113")

        Returns:
            SupplierConfig if found, None otherwise
        """
        return self._suppliers.get(code)

    def add_supplier(self, supplier: SupplierConfig) -> None:
        """Register a supplier programmatically."""
        self._suppliers[supplier.code] = supplier

    def list_suppliers(self) -> list[SupplierConfig]:
        """Get all registered suppliers."""
        return list(self._suppliers.values())

    def list_enabled_suppliers(self) -> list[SupplierConfig]:
        """Get all enabled suppliers."""
        return [s for s in self._suppliers.values() if s.enabled]

    def stage_policy(self, stage: Stage) -> StagePolicy:
        """Get the effective policy for a stage."""
        return self._stage_policies[stage]

    @property
    def stage_policies(self) -> dict[Stage, StagePolicy]:
        """All effective stage policies."""
        return dict(self._stage_policies)


# Global registry instance
_default_registry: SupplierRegistry | None = None


def get_default_registry() -> SupplierRegistry:
    """
    Get the default supplier registry instance.

    Loads configuration from the path specified in SUPPLIERS_CONFIG_PATH
    environment variable, or falls back to config/suppliers.yaml.

    Returns:
        The global SupplierRegistry instance
    """
    global _default_registry

    if _default_registry is None:
        _default_registry = SupplierRegistry()

        config_path = os.environ.get("SUPPLIERS_CONFIG_PATH")
        if config_path:
            path = Path(config_path)
        else:
            module_dir = Path(__file__).parent
            project_root = module_dir.parent.parent
            path = project_root / "config" / "suppliers.yaml"

        if path.exists():
            _default_registry.load_config(path)

    return _default_registry


def reset_default_registry() -> None:
    """Reset the default registry (useful for testing)."""
    global _default_registry
    _default_registry = None
