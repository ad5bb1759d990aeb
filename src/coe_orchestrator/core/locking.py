"""In-process exclusive locks with lazy expiry and canonical lock ordering.

Any operation that needs more than one resource must acquire them in the
order returned by ``lock_order``. ``acquire_all`` and ``hold`` do this for
callers, so two operations over overlapping resource sets can never wait on
each other in a cycle.
"""

import logging
import time
from collections.abc import Callable, Iterable
from contextlib import contextmanager

from coe_orchestrator.db.models import LockInfo
from coe_orchestrator.errors import LockUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 5.0


def lock_order(resource_ids: Iterable[str]) -> list[str]:
    """Return the canonical acquisition order: a sorted, de-duplicated copy."""
    return sorted(set(resource_ids))


class LockManager:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._locks: dict[str, LockInfo] = {}

    def _expire(self, resource_id: str) -> LockInfo | None:
        """Drop the lock on ``resource_id`` if its timeout has elapsed."""
        lock = self._locks.get(resource_id)
        if lock and lock.expired(self._clock()):
            logger.warning(
                "Lock on %s held by %s expired after %.1fs",
                resource_id, lock.holder, lock.timeout_seconds,
            )
            del self._locks[resource_id]
            return None
        return lock

    def acquire(
        self, resource_id: str, holder: str, timeout_seconds: float = DEFAULT_LOCK_TIMEOUT
    ) -> bool:
        """Take the lock on a resource. Re-acquiring by the same holder refreshes it."""
        lock = self._expire(resource_id)
        if lock and lock.holder != holder:
            logger.debug("Lock on %s refused to %s (held by %s)", resource_id, holder, lock.holder)
            return False
        self._locks[resource_id] = LockInfo(
            resource_id=resource_id,
            holder=holder,
            acquired_at=self._clock(),
            timeout_seconds=timeout_seconds,
        )
        return True

    def release(self, resource_id: str, holder: str) -> bool:
        lock = self._expire(resource_id)
        if not lock or lock.holder != holder:
            return False
        del self._locks[resource_id]
        return True

    def is_locked(self, resource_id: str) -> bool:
        return self._expire(resource_id) is not None

    def get_holder(self, resource_id: str) -> str | None:
        lock = self._expire(resource_id)
        return lock.holder if lock else None

    def force_release(self, resource_id: str) -> bool:
        """Administrative override: drop the lock whoever holds it."""
        lock = self._locks.pop(resource_id, None)
        if lock:
            logger.warning("Force-released lock on %s held by %s", resource_id, lock.holder)
        return True

    def get_all_locks(self) -> list[LockInfo]:
        for resource_id in list(self._locks):
            self._expire(resource_id)
        return list(self._locks.values())

    def acquire_all(
        self,
        resource_ids: Iterable[str],
        holder: str,
        timeout_seconds: float = DEFAULT_LOCK_TIMEOUT,
    ) -> bool:
        """Acquire every resource in canonical order, or none of them."""
        taken: list[str] = []
        for resource_id in lock_order(resource_ids):
            if self.get_holder(resource_id) == holder:
                continue
            if not self.acquire(resource_id, holder, timeout_seconds):
                for held in reversed(taken):
                    self.release(held, holder)
                return False
            taken.append(resource_id)
        return True

    def release_all(self, resource_ids: Iterable[str], holder: str) -> None:
        for resource_id in reversed(lock_order(resource_ids)):
            self.release(resource_id, holder)

    @contextmanager
    def hold(
        self,
        resource_ids: Iterable[str],
        holder: str,
        timeout_seconds: float = DEFAULT_LOCK_TIMEOUT,
    ):
        """Hold several locks for the duration of a block.

        Raises LockUnavailableError naming the first contended resource.
        """
        ordered = lock_order(resource_ids)
        if not self.acquire_all(ordered, holder, timeout_seconds):
            contended = next(r for r in ordered if self.get_holder(r) not in (None, holder))
            raise LockUnavailableError(contended, self.get_holder(contended))
        try:
            yield ordered
        finally:
            self.release_all(ordered, holder)
