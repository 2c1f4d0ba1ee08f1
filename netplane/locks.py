"""Per-VPC locking and in-flight action tracking for the orchestrator.

All switch mutations for one bridge (one VPC) are serialized through a
per-VPC asyncio.Lock. Locks are keyed by VPC id, so unrelated VPCs
provision in parallel. Address leasing runs under the same lock. VPC
creation has no id to lock yet and holds an owner-scoped key instead.

Separately, a resource key that already has an action in flight is
rejected immediately instead of queueing behind the lock.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager
from typing import Iterator

from netplane.errors import ConflictError

logger = logging.getLogger(__name__)


class VPCLockRegistry:
    """Lazily created asyncio locks keyed by VPC id.

    Locks are dropped once no holder or waiter references them.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, vpc_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(vpc_id, asyncio.Lock())
        self._users[vpc_id] = self._users.get(vpc_id, 0) + 1
        try:
            async with lock:
                logger.debug(f"Acquired VPC lock {vpc_id}")
                yield
        finally:
            self._users[vpc_id] -= 1
            if self._users[vpc_id] == 0:
                del self._users[vpc_id]
                del self._locks[vpc_id]
            logger.debug(f"Released VPC lock {vpc_id}")

    def is_locked(self, vpc_id: str) -> bool:
        lock = self._locks.get(vpc_id)
        return lock is not None and lock.locked()


class InFlightRegistry:
    """Resource keys with an action between validate and a terminal state."""

    def __init__(self) -> None:
        self._keys: set[str] = set()

    @contextmanager
    def claim(self, resource_key: str) -> Iterator[None]:
        """Claim a resource key for the duration of an action.

        Raises:
            ConflictError: If another action holds the key
        """
        if resource_key in self._keys:
            logger.warning(f"Rejected concurrent action on {resource_key}")
            raise ConflictError(
                f"Another operation on {resource_key} is in progress",
                code="ACTION_IN_PROGRESS",
            )
        self._keys.add(resource_key)
        try:
            yield
        finally:
            self._keys.discard(resource_key)

    def __contains__(self, resource_key: str) -> bool:
        return resource_key in self._keys
