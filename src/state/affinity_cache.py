# SpotAffinity/src/state/affinity_cache.py
# @ai-rules:
# 1. [Pattern]: Every mutation runs under the asyncio.Lock of the affected replica group (see _locked).
# 2. [Constraint]: No awaits between reading and writing inside a locked section. Commit is a plain dict assignment.
# 3. [Gotcha]: Pending records are keyed by admission request UID (pods have no UID at CREATE). The watch consumes them.
# 4. [Pattern]: Group locks are refcounted and dropped when unused, so deleted ReplicaSets leave nothing behind.
"""
Replica Affinity Cache.

Maps a ReplicaSet UID to the pods known for it and the node pool each one
is pinned to, plus the set of ReplicaSets that must not be mutated.
Fed continuously by the WatchIngestor and read/written synchronously by the
AdmissionDecisionEngine.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional

from ..models import NodePool

logger = logging.getLogger(__name__)

PENDING_PREFIX = "admission:"


@dataclass
class PodRecord:
    """One pod of a replica group and the pool it is pinned to."""

    pod_id: str
    group_id: str
    pool: NodePool
    pending: bool = False
    expires_at: Optional[float] = None

    def expired(self, now: float) -> bool:
        return self.pending and self.expires_at is not None and now >= self.expires_at


@dataclass
class _GroupLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class GroupTransaction:
    """Read-modify-write view of one replica group. Valid only while the group lock is held."""

    def __init__(self, cache: "ReplicaAffinityCache", group_id: str, now: float) -> None:
        self._cache = cache
        self.group_id = group_id
        self.now = now

    @property
    def eligible(self) -> bool:
        return self.group_id not in self._cache._ineligible

    def records(self) -> list[PodRecord]:
        return list(self._cache._groups.get(self.group_id, {}).values())

    def has_on_demand(self, exclude: Optional[str] = None) -> bool:
        """True when a member other than *exclude* is pinned to on-demand."""
        return any(
            r.pool is NodePool.ON_DEMAND and r.pod_id != exclude
            for r in self.records()
        )

    def commit(self, record: PodRecord) -> None:
        """Insert or replace *record*. Single step: either fully applied or not at all."""
        self._cache._groups.setdefault(self.group_id, {})[record.pod_id] = record
        self._cache._pod_groups[record.pod_id] = self.group_id


class ReplicaAffinityCache:
    """Concurrency-safe store of replica group membership and node pool assignments."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._groups: dict[str, dict[str, PodRecord]] = {}
        self._ineligible: set[str] = set()
        # pod id -> group id, to move or drop pods whose owner changes
        self._pod_groups: dict[str, str] = {}
        self._locks: dict[str, _GroupLock] = {}
        self._clock = clock

    @asynccontextmanager
    async def _locked(self, group_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(group_id)
        if entry is None:
            entry = self._locks[group_id] = _GroupLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(group_id, None)
            if not self._groups.get(group_id):
                self._groups.pop(group_id, None)

    def _prune_expired(self, group_id: str, now: float) -> None:
        members = self._groups.get(group_id)
        if not members:
            return
        for pod_id in [pid for pid, r in members.items() if r.expired(now)]:
            del members[pod_id]
            self._pod_groups.pop(pod_id, None)
            logger.debug("Pruned expired pending record %s (group=%s)", pod_id, group_id)

    @asynccontextmanager
    async def transaction(self, group_id: str) -> AsyncIterator[GroupTransaction]:
        """Hold the group lock for a decision. Expired pending records are pruned first."""
        async with self._locked(group_id):
            now = self._clock()
            self._prune_expired(group_id, now)
            yield GroupTransaction(self, group_id, now)

    # =========================================================================
    # Replica group eligibility
    # =========================================================================

    async def mark_ineligible(self, group_id: str) -> None:
        async with self._locked(group_id):
            if group_id not in self._ineligible:
                self._ineligible.add(group_id)
                logger.debug("ReplicaSet %s marked ineligible", group_id)

    async def mark_eligible(self, group_id: str) -> None:
        async with self._locked(group_id):
            self._ineligible.discard(group_id)

    async def forget_group(self, group_id: str) -> None:
        """ReplicaSet deleted: drop its exclusion entry. Member pods leave via their own delete events."""
        async with self._locked(group_id):
            self._ineligible.discard(group_id)

    def is_eligible(self, group_id: str) -> bool:
        """Unknown groups are eligible until the watch says otherwise."""
        return group_id not in self._ineligible

    # =========================================================================
    # Pod records (watch path)
    # =========================================================================

    async def upsert_pod(self, pod_id: str, group_id: str, pool: NodePool) -> None:
        """
        Track a pod observed by the watch.

        A pod seen for the first time consumes one pending admission record of
        the same group and pool: that record was the placeholder committed when
        this pod was admitted.
        """
        previous = self._pod_groups.get(pod_id)
        if previous is not None and previous != group_id:
            await self.remove_pod(pod_id)

        async with self._locked(group_id):
            self._prune_expired(group_id, self._clock())
            members = self._groups.setdefault(group_id, {})
            if pod_id not in members and pool is not NodePool.UNASSIGNED:
                placeholder = next(
                    (r for r in members.values() if r.pending and r.pool is pool),
                    None,
                )
                if placeholder is not None:
                    del members[placeholder.pod_id]
                    self._pod_groups.pop(placeholder.pod_id, None)
                    logger.debug(
                        "Pod %s confirmed pending record %s (group=%s, pool=%s)",
                        pod_id, placeholder.pod_id, group_id, pool.value,
                    )
            members[pod_id] = PodRecord(pod_id=pod_id, group_id=group_id, pool=pool)
            self._pod_groups[pod_id] = group_id

    async def remove_pod(self, pod_id: str) -> Optional[PodRecord]:
        group_id = self._pod_groups.get(pod_id)
        if group_id is None:
            return None
        async with self._locked(group_id):
            if self._pod_groups.get(pod_id) != group_id:
                return None
            del self._pod_groups[pod_id]
            record = self._groups.get(group_id, {}).pop(pod_id, None)
        if record is not None and record.pool is NodePool.ON_DEMAND:
            logger.info("On-demand pod %s of ReplicaSet %s removed", pod_id, group_id)
        return record

    def tracked_pod_ids(self) -> set[str]:
        """Ids of pods known from the watch (pending placeholders excluded)."""
        return {pid for pid in self._pod_groups if not pid.startswith(PENDING_PREFIX)}

    def ineligible_group_ids(self) -> set[str]:
        return set(self._ineligible)

    # =========================================================================
    # Introspection
    # =========================================================================

    def members(self, group_id: str) -> list[PodRecord]:
        """Snapshot of a group's records."""
        return list(self._groups.get(group_id, {}).values())

    def stats(self) -> dict[str, int]:
        pending = sum(1 for pid in self._pod_groups if pid.startswith(PENDING_PREFIX))
        return {
            "replica_groups": len(self._groups),
            "tracked_pods": len(self._pod_groups) - pending,
            "pending_pods": pending,
            "ineligible_groups": len(self._ineligible),
        }
