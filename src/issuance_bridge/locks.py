"""
Exclusive per-resource locks for multi-step network operations.

A vault adjustment reads issuance and then mutates trust lines and
balances with no atomicity across those calls, so concurrent adjustments
for the same (tenant, asset) must be serialized.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, Optional

from .exceptions import LockTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class LockRecord:
    """Record of a held lock."""
    resource_type: str
    resource_id: str
    holder_id: str
    lock_id: str = field(default_factory=lambda: f"lock_{uuid.uuid4().hex[:12]}")
    acquired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    released_at: Optional[datetime] = None


@dataclass
class LockManager:
    """
    Lock manager for exclusive resource locks.

    Locks are held until released; they do not expire, since an adjustment
    that outlives an expiry would silently lose its exclusion.
    """

    default_timeout: float = 30.0  # seconds
    poll_interval: float = 0.01

    _locks: Dict[str, LockRecord] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock)

    @staticmethod
    def _make_key(resource_type: str, resource_id: str) -> str:
        return f"{resource_type}:{resource_id}"

    def try_acquire(self, resource_type: str, resource_id: str, holder_id: str) -> Optional[LockRecord]:
        """Take the lock if it is free (or already ours). Never waits."""
        key = self._make_key(resource_type, resource_id)
        with self._lock:
            existing = self._locks.get(key)
            if existing is None:
                record = LockRecord(resource_type, resource_id, holder_id)
                self._locks[key] = record
                logger.debug(f"Lock acquired: {key} by {holder_id}")
                return record
            if existing.holder_id == holder_id:
                return existing
            return None

    async def acquire_async(
        self,
        resource_type: str,
        resource_id: str,
        holder_id: str,
        timeout: Optional[float] = None,
    ) -> LockRecord:
        """
        Acquire a lock, waiting up to `timeout` seconds.

        Raises:
            LockTimeoutError: If the lock cannot be acquired within timeout
        """
        timeout = timeout if timeout is not None else self.default_timeout
        start_time = time.monotonic()

        while True:
            record = self.try_acquire(resource_type, resource_id, holder_id)
            if record is not None:
                return record

            elapsed = time.monotonic() - start_time
            if elapsed >= timeout:
                raise LockTimeoutError(resource_type, resource_id, timeout)

            await asyncio.sleep(min(self.poll_interval, timeout - elapsed))

    def release(self, resource_type: str, resource_id: str, holder_id: str) -> bool:
        """Release a lock. Returns False if it is not held by `holder_id`."""
        key = self._make_key(resource_type, resource_id)
        with self._lock:
            existing = self._locks.get(key)
            if existing is None:
                return False
            if existing.holder_id != holder_id:
                logger.warning(f"Lock release denied: {key} owned by {existing.holder_id}, not {holder_id}")
                return False
            existing.released_at = datetime.now(timezone.utc)
            del self._locks[key]
            logger.debug(f"Lock released: {key} by {holder_id}")
            return True

    def is_locked(self, resource_type: str, resource_id: str) -> bool:
        with self._lock:
            return self._make_key(resource_type, resource_id) in self._locks

    @asynccontextmanager
    async def lock_async(
        self,
        resource_type: str,
        resource_id: str,
        holder_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> AsyncGenerator[LockRecord, None]:
        """
        Async context manager for acquiring and releasing locks.

        Usage:
            async with lock_manager.lock_async("vault", "tenant:EUR") as lock:
                ...
        """
        holder = holder_id or f"holder_{uuid.uuid4().hex[:12]}"
        record = await self.acquire_async(resource_type, resource_id, holder, timeout)
        try:
            yield record
        finally:
            self.release(resource_type, resource_id, holder)
