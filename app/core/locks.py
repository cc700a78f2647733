"""Per-repository write locks for check-then-insert sequences.

The locks are process-local. Across processes the unique (repository, email)
index on membership entries turns a lost race into a rejected write.
"""

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator


class RepositoryLocks:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, repository_id: str) -> AsyncIterator[None]:
        key = str(repository_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                # last holder or waiter gone
                del self._holders[key]
                del self._locks[key]

    def is_locked(self, repository_id: str) -> bool:
        lock = self._locks.get(str(repository_id))
        return bool(lock and lock.locked())


_registry = RepositoryLocks()


def repository_lock(repository_id: str):
    """`async with repository_lock(repo_id):` serializes writers of one repository."""
    return _registry.hold(repository_id)


@asynccontextmanager
async def repository_locks(*repository_ids: str) -> AsyncIterator[None]:
    """Hold several repositories at once. Locks are taken in sorted id order."""
    async with AsyncExitStack() as stack:
        for key in sorted({str(r) for r in repository_ids}):
            await stack.enter_async_context(_registry.hold(key))
        yield
