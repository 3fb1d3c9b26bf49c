"""Enums for sync pipeline stages, statuses and job payload fields."""

from enum import Enum


class Stage(str, Enum):
    """Pipeline stages in fixed dependency order."""

    DIFF = "diff"
    MATERIALIZE = "materialize"
    ASSETS = "assets"
    SEARCH = "search"
    SEMANTIC = "semantic"


STAGE_ORDER: tuple[Stage, ...] = (
    Stage.DIFF,
    Stage.MATERIALIZE,
    Stage.ASSETS,
    Stage.SEARCH,
    Stage.SEMANTIC,
)


class StageStatus(str, Enum):
    """Status of a single stage record within a session."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class SessionStatus(str, Enum):
    """Overall status of a sync session."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class EntityType(str, Enum):
    """Entity kinds that assets and index documents attach to."""

    PRODUCT = "product"
    VARIANT = "variant"


class AssetRole(str, Enum):
    """Role of an image asset for its entity."""

    PRIMARY = "primary"
    GALLERY = "gallery"


class IndexOperation(str, Enum):
    """Operation carried by search and semantic jobs."""

    UPSERT = "upsert"
    DELETE = "delete"


class BackoffKind(str, Enum):
    """Retry backoff strategy."""

    EXPONENTIAL = "exponential"
    FIXED = "fixed"
