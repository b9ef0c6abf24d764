"""Per-instance advisory locks with a time-to-live.

Acquisition is a single compare-and-set under one mutex: a lock held by a
different owner and younger than the TTL is refused immediately; an older
one is treated as abandoned and taken over. Release only succeeds for the
token that acquired the lock, so a reclaimed lock cannot be released by its
previous holder.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from workflow_orchestrator.orchestrator.rbac.context import Clock, utc_now
from workflow_orchestrator.orchestrator.workflow.errors import LockConflict

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class InstanceLock:
    instance_id: str
    owner_id: str
    token: str
    acquired_at: datetime


class LockManager:
    def __init__(self, *, ttl: timedelta = timedelta(seconds=30), clock: Clock = utc_now) -> None:
        self._ttl = ttl
        self._clock = clock
        self._mutex = threading.Lock()
        self._locks: dict[str, InstanceLock] = {}

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def acquire(self, instance_id: str, owner_id: str) -> InstanceLock:
        """Take the lock on ``instance_id`` for ``owner_id``.

        The same owner may re-acquire a lock it already holds; the lock is
        refreshed with a new token.

        Raises:
            LockConflict: another owner holds a lock younger than the TTL.
        """

        now = self._clock()
        with self._mutex:
            current = self._locks.get(instance_id)
            if current is not None and current.owner_id != owner_id:
                age = now - current.acquired_at
                if age < self._ttl:
                    raise LockConflict(
                        instance_id=instance_id,
                        holder_id=current.owner_id,
                        retry_after_seconds=(self._ttl - age).total_seconds(),
                    )
                logger.warning(
                    "Reclaiming abandoned instance lock",
                    extra={
                        "instance_id": instance_id,
                        "previous_owner": current.owner_id,
                        "owner": owner_id,
                        "age_seconds": age.total_seconds(),
                    },
                )
            lock = InstanceLock(
                instance_id=instance_id,
                owner_id=owner_id,
                token=uuid.uuid4().hex,
                acquired_at=now,
            )
            self._locks[instance_id] = lock
            return lock

    def release(self, lock: InstanceLock) -> bool:
        with self._mutex:
            current = self._locks.get(lock.instance_id)
            if current is None or current.token != lock.token:
                return False
            del self._locks[lock.instance_id]
            return True

    @contextmanager
    def hold(self, instance_id: str, owner_id: str) -> Iterator[InstanceLock]:
        lock = self.acquire(instance_id, owner_id)
        try:
            yield lock
        finally:
            self.release(lock)

    def holder(self, instance_id: str) -> str | None:
        """Owner of a live (non-expired) lock on ``instance_id``, if any."""

        now = self._clock()
        with self._mutex:
            current = self._locks.get(instance_id)
            if current is None or now - current.acquired_at >= self._ttl:
                return None
            return current.owner_id

    def held_count(self) -> int:
        now = self._clock()
        with self._mutex:
            return sum(1 for lock in self._locks.values() if now - lock.acquired_at < self._ttl)

    def clear(self) -> None:
        with self._mutex:
            self._locks.clear()
