"""
Sync Lock Module
================

Per-supplier distributed lock and cooperative stop flag. A second
orchestration run for a supplier that is already syncing gets None from
acquire() instead of an error.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Protocol

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

LOCK_TTL_SECONDS = 3600
STOP_TTL_SECONDS = 300


def lock_key(supplier_code: str) -> str:
    return f"sync:lock:{supplier_code}"


def stop_key(supplier_code: str) -> str:
    return f"sync:stop:{supplier_code}"


def default_owner() -> str:
    """Identity recorded in lock info."""
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass
class LockInfo:
    """Metadata stored as the lock value."""

    locked_at: str
    locked_by: str
    session_id: str | None = None

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> LockInfo:
        data = json.loads(raw)
        return cls(
            locked_at=data.get("locked_at", ""),
            locked_by=data.get("locked_by", ""),
            session_id=data.get("session_id"),
        )

    @classmethod
    def new(cls, owner: str | None = None, session_id: str | None = None) -> LockInfo:
        return cls(
            locked_at=datetime.now(UTC).isoformat(),
            locked_by=owner or default_owner(),
            session_id=session_id,
        )


class SyncLock(Protocol):
    """Lock and stop-flag operations used by the orchestrator and workers."""

    async def acquire(self, supplier_code: str, owner: str | None = None) -> LockInfo | None: ...

    async def attach_session(self, supplier_code: str, session_id: str) -> None: ...

    async def release(self, supplier_code: str, session_id: str | None = None) -> bool: ...

    async def is_locked(self, supplier_code: str) -> bool: ...

    async def get_lock_info(self, supplier_code: str) -> LockInfo | None: ...

    async def request_stop(self, supplier_code: str) -> bool: ...

    async def is_stop_requested(self, supplier_code: str) -> bool: ...


class RedisSyncLock:
    """Lock backed by Redis SET NX EX."""

    def __init__(
        self,
        redis: Redis,
        lock_ttl: int = LOCK_TTL_SECONDS,
        stop_ttl: int = STOP_TTL_SECONDS,
    ) -> None:
        self.redis = redis
        self.lock_ttl = lock_ttl
        self.stop_ttl = stop_ttl

    async def acquire(self, supplier_code: str, owner: str | None = None) -> LockInfo | None:
        """
        Acquire the supplier lock.

        Returns:
            LockInfo if acquired, None if another run holds it
        """
        info = LockInfo.new(owner)
        acquired = await self.redis.set(lock_key(supplier_code), info.to_json(), nx=True, ex=self.lock_ttl)
        if not acquired:
            logger.info(f"Sync already running for supplier {supplier_code}")
            return None
        # A stale stop request must not cancel the new run
        await self.redis.delete(stop_key(supplier_code))
        return info

    async def attach_session(self, supplier_code: str, session_id: str) -> None:
        """Record the session id in the held lock without touching its TTL."""
        info = await self.get_lock_info(supplier_code)
        if info is None:
            return
        info.session_id = session_id
        await self.redis.set(lock_key(supplier_code), info.to_json(), xx=True, keepttl=True)

    async def release(self, supplier_code: str, session_id: str | None = None) -> bool:
        """
        Release the lock and clear the stop flag.

        Args:
            supplier_code: Supplier code
            session_id: If given, only release a lock held for this session
        """
        if session_id is not None:
            info = await self.get_lock_info(supplier_code)
            if info is not None and info.session_id not in (None, session_id):
                logger.warning(
                    f"Not releasing lock for {supplier_code}: held by session {info.session_id}"
                )
                return False
        deleted = await self.redis.delete(lock_key(supplier_code), stop_key(supplier_code))
        return bool(deleted)

    async def is_locked(self, supplier_code: str) -> bool:
        return bool(await self.redis.exists(lock_key(supplier_code)))

    async def get_lock_info(self, supplier_code: str) -> LockInfo | None:
        raw = await self.redis.get(lock_key(supplier_code))
        return LockInfo.from_json(raw) if raw else None

    async def request_stop(self, supplier_code: str) -> bool:
        """
        Ask a running sync to stop at its next batch boundary.

        Returns:
            False if no sync is running for the supplier
        """
        if not await self.is_locked(supplier_code):
            return False
        await self.redis.set(stop_key(supplier_code), "1", ex=self.stop_ttl)
        logger.info(f"Stop requested for supplier {supplier_code}")
        return True

    async def is_stop_requested(self, supplier_code: str) -> bool:
        return bool(await self.redis.exists(stop_key(supplier_code)))


class LocalSyncLock:
    """In-process lock with the same semantics, for local runs and tests."""

    def __init__(self, lock_ttl: int = LOCK_TTL_SECONDS, stop_ttl: int = STOP_TTL_SECONDS) -> None:
        self.lock_ttl = lock_ttl
        self.stop_ttl = stop_ttl
        self._locks: dict[str, tuple[LockInfo, float]] = {}
        self._stops: dict[str, float] = {}

    def _live_lock(self, supplier_code: str) -> LockInfo | None:
        entry = self._locks.get(supplier_code)
        if entry is None:
            return None
        info, expires_at = entry
        if time.monotonic() >= expires_at:
            del self._locks[supplier_code]
            return None
        return info

    async def acquire(self, supplier_code: str, owner: str | None = None) -> LockInfo | None:
        if self._live_lock(supplier_code) is not None:
            logger.info(f"Sync already running for supplier {supplier_code}")
            return None
        info = LockInfo.new(owner)
        self._locks[supplier_code] = (info, time.monotonic() + self.lock_ttl)
        self._stops.pop(supplier_code, None)
        return info

    async def attach_session(self, supplier_code: str, session_id: str) -> None:
        info = self._live_lock(supplier_code)
        if info is not None:
            info.session_id = session_id

    async def release(self, supplier_code: str, session_id: str | None = None) -> bool:
        info = self._live_lock(supplier_code)
        if info is None:
            self._stops.pop(supplier_code, None)
            return False
        if session_id is not None and info.session_id not in (None, session_id):
            return False
        del self._locks[supplier_code]
        self._stops.pop(supplier_code, None)
        return True

    async def is_locked(self, supplier_code: str) -> bool:
        return self._live_lock(supplier_code) is not None

    async def get_lock_info(self, supplier_code: str) -> LockInfo | None:
        return self._live_lock(supplier_code)

    async def request_stop(self, supplier_code: str) -> bool:
        if self._live_lock(supplier_code) is None:
            return False
        self._stops[supplier_code] = time.monotonic() + self.stop_ttl
        return True

    async def is_stop_requested(self, supplier_code: str) -> bool:
        expires_at = self._stops.get(supplier_code)
        return expires_at is not None and time.monotonic() < expires_at
