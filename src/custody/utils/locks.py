"""In-process row locks.

Serializes operations on the same ledger row (a user's balance, a deposit, a
withdrawal) inside one process. Together with SELECT ... FOR UPDATE in the
repository this gives the lock-then-recheck pattern the ledger relies on.

Locks must be taken before the database session opens and released after it
commits. When several rows are needed, take the entity row (deposit or
withdrawal) before the balance row.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable, Optional

from custody.errors import CustodyError

logger = logging.getLogger(__name__)


class LockTimeoutError(CustodyError):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


class RowLockRegistry:
    """Registry of asyncio locks keyed by (table, key).

    Example:
        async with registry.row_lock("balances", user_id, operation="debit"):
            async with database.session() as session:
                ...
    """

    def __init__(self, default_timeout: Optional[float] = 30.0):
        self.default_timeout = default_timeout
        self._locks: dict[tuple[str, Hashable], asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()

    async def get_lock(self, table: str, key: Hashable) -> asyncio.Lock:
        """Get or create the lock for a row."""
        async with self._registry_lock:
            lock = self._locks.get((table, key))
            if lock is None:
                lock = asyncio.Lock()
                self._locks[(table, key)] = lock
            return lock

    @asynccontextmanager
    async def row_lock(
        self,
        table: str,
        key: Hashable,
        timeout: Optional[float] = None,
        operation: str = "row_operation",
    ) -> AsyncIterator[None]:
        """Hold the exclusive lock for one row.

        Args:
            table: Table name (balances, deposits, withdrawals, wallets)
            key: Row key within the table
            timeout: Seconds to wait (defaults to the registry timeout, None = forever)
            operation: Description of the operation for logging
        """
        lock = await self.get_lock(table, key)
        timeout = self.default_timeout if timeout is None else timeout

        try:
            if timeout:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            else:
                await lock.acquire()
        except asyncio.TimeoutError:
            logger.warning(f"Lock timeout for {table}:{key} after {timeout}s: {operation}")
            raise LockTimeoutError(
                f"Could not acquire lock for {table}:{key} within {timeout}s"
            )

        logger.debug(f"Lock acquired for {table}:{key}: {operation}")
        try:
            yield
        finally:
            lock.release()
            logger.debug(f"Lock released for {table}:{key}: {operation}")

    def is_locked(self, table: str, key: Hashable) -> bool:
        lock = self._locks.get((table, key))
        return bool(lock and lock.locked())

    def clear(self) -> None:
        """Drop all idle locks."""
        self._locks = {k: v for k, v in self._locks.items() if v.locked()}
