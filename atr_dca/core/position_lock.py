"""
Keyed Lock Manager - Mutex per symbol / position.

Prevents two logical operations on the same entity from overlapping
(e.g. two initializations for one symbol, or a fill arriving while the
next level of the same ladder is being placed). Different keys proceed
concurrently.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class LockInfo:
    """Information about a held lock."""
    key: str
    holder: str  # Component/operation that holds the lock
    acquired_at: datetime

    @property
    def held_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.acquired_at).total_seconds()


def symbol_key(symbol: str) -> str:
    return f"symbol:{symbol}"


def position_key(position_id: str) -> str:
    return f"position:{position_id}"


class KeyedLockManager:
    """
    Manages one asyncio.Lock per key.

    Usage:
        locks = KeyedLockManager()

        async with locks.acquire_lock(position_key(pid), "fill_handler") as locked:
            if locked:
                # Safe to mutate the ladder
                ...
            else:
                logger.warning("Could not acquire lock, skipping")

    Locks are never force-released; a holder keeps the lock until its
    block exits. ``wait_forever=True`` ignores every timeout.
    """

    STALE_WARNING_SECONDS = 60.0

    def __init__(self, default_max_wait: Optional[float] = None):
        self.default_max_wait = default_max_wait
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_info: Dict[str, LockInfo] = {}
        self._waiters: Dict[str, int] = {}

    def _get_or_create_lock(self, key: str) -> asyncio.Lock:
        # Single-threaded event loop: no await between check and insert
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def acquire_lock(
        self,
        key: str,
        holder: str,
        max_wait: Optional[float] = None,
        wait_forever: bool = False,
    ):
        """
        Acquire the lock for a key.

        Args:
            key: Entity key (see symbol_key / position_key)
            holder: Name of the operation acquiring the lock (for debugging)
            max_wait: Maximum seconds to wait; None uses the manager default
            wait_forever: Ignore any timeout and wait until the lock frees

        Yields:
            True if lock acquired, False if max_wait elapsed
        """
        if wait_forever:
            max_wait = None
        else:
            max_wait = max_wait if max_wait is not None else self.default_max_wait
        lock = self._get_or_create_lock(key)
        acquired = False

        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            if max_wait is None:
                await lock.acquire()
                acquired = True
            else:
                try:
                    acquired = await asyncio.wait_for(lock.acquire(), timeout=max_wait)
                except asyncio.TimeoutError:
                    current = self._lock_info.get(key)
                    logger.warning(
                        f"⏳ Could not acquire lock for {key} within {max_wait}s | "
                        f"Current holder: {current.holder if current else 'unknown'}"
                    )
                    acquired = False
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]

        if acquired:
            self._lock_info[key] = LockInfo(
                key=key,
                holder=holder,
                acquired_at=datetime.now(timezone.utc),
            )
            logger.debug(f"🔒 Lock acquired: {key} by {holder}")

        try:
            yield acquired
        finally:
            if acquired:
                info = self._lock_info.pop(key, None)
                if info and info.held_seconds > self.STALE_WARNING_SECONDS:
                    logger.warning(f"Lock {key} was held by {holder} for {info.held_seconds:.1f}s")
                lock.release()
                logger.debug(f"🔓 Lock released: {key} by {holder}")

    def is_locked(self, key: str) -> bool:
        """Check if a key is currently locked."""
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def get_lock_holder(self, key: str) -> Optional[str]:
        """Get the holder of a lock."""
        info = self._lock_info.get(key)
        return info.holder if info else None

    def get_all_locks(self) -> Dict[str, LockInfo]:
        """Get information about all held locks."""
        return dict(self._lock_info)

    def prune_idle_locks(self) -> int:
        """Drop lock objects nobody holds or waits on (call periodically)."""
        idle = [
            key for key, lock in self._locks.items()
            if not lock.locked() and key not in self._waiters
        ]
        for key in idle:
            del self._locks[key]
        if idle:
            logger.debug(f"🧹 Pruned {len(idle)} idle locks")
        return len(idle)
