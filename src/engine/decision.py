# SpotAffinity/src/engine/decision.py
# @ai-rules:
# 1. [Constraint]: Ineligible or non-ReplicaSet pods are a no-op decision, never an error.
# 2. [Pattern]: Steps 2-4 (locate, choose, commit) run inside one cache.transaction() -- no await in between.
# 3. [Gotcha]: A decision for the same pod id (or the same retried admission UID) ignores its own record, so replays agree.
# 4. [Constraint]: The patch is built and encoded before commit. A build/encode failure leaves the cache untouched.
"""
Admission Decision Engine.

Given one incoming pod, applies the eligibility filter and the allocation
rule: the first pod of a replica group goes to on-demand, every sibling
admitted while an on-demand member is tracked goes to spot.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError

from ..models import KubeObject, NodePool, replicaset_owner
from ..state.affinity_cache import PENDING_PREFIX, PodRecord, ReplicaAffinityCache
from .errors import DeadlineExceeded, DecodeError
from .patch import REQUIRED_FIELD, build_patch, encode_patch_b64

logger = logging.getLogger(__name__)

# How long an admitted-but-not-yet-observed pod holds its slot
PENDING_RECORD_TTL_SECONDS = float(os.getenv("PENDING_RECORD_TTL_SECONDS", "60"))


@dataclass(frozen=True)
class Decision:
    """Outcome for one pod. pool is None for a no-op (allowed, unmutated)."""

    pool: Optional[NodePool]
    group_id: Optional[str] = None
    reason: str = ""
    patch: Optional[str] = None  # base64 JSON Patch, set whenever pool is

    @property
    def is_noop(self) -> bool:
        return self.pool is None


def decode_pod(raw: Any) -> KubeObject:
    """Decode the pod embedded in an admission request. Raises DecodeError."""
    if raw is None:
        raise DecodeError("admission request carries no object")
    if isinstance(raw, (bytes, str)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise DecodeError(f"object is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise DecodeError(f"object must be a JSON object, got {type(raw).__name__}")
    try:
        pod = KubeObject.model_validate(raw)
    except ValidationError as e:
        raise DecodeError(f"object is not a valid pod: {e.error_count()} validation error(s)") from e
    if pod.kind and pod.kind != "Pod":
        raise DecodeError(f"expected kind Pod, got {pod.kind}")
    _check_node_affinity(pod.spec)
    return pod


def _expect(value: Any, kind: type, path: str) -> Any:
    if value is not None and not isinstance(value, kind):
        raise DecodeError(f"{path} must be {'an object' if kind is dict else 'a list'}, got {type(value).__name__}")
    return value


def _check_node_affinity(spec: dict[str, Any]) -> None:
    """Reject affinity fragments the patch builder would have to walk but cannot."""
    affinity = _expect(spec.get("affinity"), dict, "spec.affinity")
    node_affinity = _expect((affinity or {}).get("nodeAffinity"), dict, "spec.affinity.nodeAffinity")
    required = _expect((node_affinity or {}).get(REQUIRED_FIELD), dict, f"nodeAffinity.{REQUIRED_FIELD}")
    terms = _expect((required or {}).get("nodeSelectorTerms"), list, "nodeSelectorTerms")
    for i, term in enumerate(terms or []):
        _expect(term, dict, f"nodeSelectorTerms[{i}]")
        expressions = _expect((term or {}).get("matchExpressions"), list, f"nodeSelectorTerms[{i}].matchExpressions")
        for j, expression in enumerate(expressions or []):
            _expect(expression, dict, f"nodeSelectorTerms[{i}].matchExpressions[{j}]")


class AdmissionDecisionEngine:
    """Chooses on-demand or spot for incoming ReplicaSet pods."""

    def __init__(
        self,
        cache: ReplicaAffinityCache,
        pending_ttl: float = PENDING_RECORD_TTL_SECONDS,
    ) -> None:
        self.cache = cache
        self.pending_ttl = pending_ttl

    async def decide(self, pod: KubeObject, request_uid: str) -> Decision:
        owner = replicaset_owner(pod)
        if owner is None:
            return Decision(pool=None, reason="not owned by a ReplicaSet")

        group_id = owner.uid
        async with self.cache.transaction(group_id) as txn:
            if not txn.eligible:
                return Decision(pool=None, group_id=group_id, reason="ReplicaSet not managed by a Deployment")

            # Pods created through a ReplicaSet get their UID after admission
            pending = not pod.metadata.uid
            pod_id = f"{PENDING_PREFIX}{request_uid}" if pending else pod.metadata.uid
            pool = NodePool.SPOT if txn.has_on_demand(exclude=pod_id) else NodePool.ON_DEMAND
            # Raises EncodeError before anything is committed
            patch = encode_patch_b64(build_patch(pool, pod))
            record = PodRecord(
                pod_id=pod_id,
                group_id=group_id,
                pool=pool,
                pending=pending,
                expires_at=txn.now + self.pending_ttl if pending else None,
            )
            txn.commit(record)

        logger.info(
            "Pod %s (ReplicaSet %s/%s) -> %s",
            pod.display_name, owner.name, group_id, record.pool.value,
        )
        reason = "on-demand sibling tracked" if pool is NodePool.SPOT else "no on-demand sibling"
        return Decision(pool=pool, group_id=group_id, reason=reason, patch=patch)

    async def admit(self, pod: KubeObject, request_uid: str, timeout: Optional[float]) -> Decision:
        """decide() bounded by the webhook deadline. Expiry raises DeadlineExceeded."""
        if timeout is None:
            return await self.decide(pod, request_uid)
        try:
            return await asyncio.wait_for(self.decide(pod, request_uid), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise DeadlineExceeded(f"decision for request {request_uid} exceeded {timeout:.2f}s") from e
