# SpotAffinity/src/engine/patch.py
# @ai-rules:
# 1. [Constraint]: Only spec.affinity.nodeAffinity.requiredDuringSchedulingIgnoredDuringExecution is ever written.
# 2. [Pattern]: Add at the shallowest missing level so existing pod/podAnti affinity survives.
# 3. [Constraint]: Output bytes must be stable for identical input -- dict insertion order + compact separators.
"""
Patch Builder.

Turns a node pool decision into JSON Patch operations that require the pod
to land on nodes labelled node.kubernetes.io/capacity=<pool>.
"""
from __future__ import annotations

import base64
import json
from typing import Any

from ..models import CAPACITY_LABEL_KEY, KubeObject, NodePool, PatchOperation
from .errors import EncodeError

REQUIRED_FIELD = "requiredDuringSchedulingIgnoredDuringExecution"


def capacity_expression(pool: NodePool, label_key: str = CAPACITY_LABEL_KEY) -> dict[str, Any]:
    return {"key": label_key, "operator": "In", "values": [pool.value]}


def _node_selector(pool: NodePool, label_key: str) -> dict[str, Any]:
    return {"nodeSelectorTerms": [{"matchExpressions": [capacity_expression(pool, label_key)]}]}


def build_patch(
    pool: NodePool,
    pod: KubeObject,
    label_key: str = CAPACITY_LABEL_KEY,
) -> list[PatchOperation]:
    """
    Build the operations pinning *pod* to *pool*.

    Returns a single add operation unless the pod already carries a required
    node selector. Its terms are ORed, so the capacity expression then has
    to go into every term (replacing a capacity expression already there).
    """
    if pool is NodePool.UNASSIGNED:
        raise ValueError("cannot build a patch for an unassigned pool")

    affinity = pod.spec.get("affinity")
    if not affinity:
        return [PatchOperation(
            op="add",
            path="/spec/affinity",
            value={"nodeAffinity": {REQUIRED_FIELD: _node_selector(pool, label_key)}},
        )]

    node_affinity = affinity.get("nodeAffinity")
    if not node_affinity:
        return [PatchOperation(
            op="add",
            path="/spec/affinity/nodeAffinity",
            value={REQUIRED_FIELD: _node_selector(pool, label_key)},
        )]

    required_path = f"/spec/affinity/nodeAffinity/{REQUIRED_FIELD}"
    required = node_affinity.get(REQUIRED_FIELD)
    terms = (required or {}).get("nodeSelectorTerms") or []
    if not required:
        return [PatchOperation(op="add", path=required_path, value=_node_selector(pool, label_key))]
    if not terms:
        return [PatchOperation(
            op="add",
            path=f"{required_path}/nodeSelectorTerms",
            value=_node_selector(pool, label_key)["nodeSelectorTerms"],
        )]

    expression = capacity_expression(pool, label_key)
    operations: list[PatchOperation] = []
    for i, term in enumerate(terms):
        term_path = f"{required_path}/nodeSelectorTerms/{i}/matchExpressions"
        expressions = (term or {}).get("matchExpressions")
        if not expressions:
            operations.append(PatchOperation(op="add", path=term_path, value=[expression]))
            continue
        existing = next(
            (j for j, e in enumerate(expressions) if (e or {}).get("key") == label_key),
            None,
        )
        if existing is None:
            operations.append(PatchOperation(op="add", path=f"{term_path}/-", value=expression))
        else:
            operations.append(PatchOperation(op="replace", path=f"{term_path}/{existing}", value=expression))
    return operations


def encode_patch(operations: list[PatchOperation]) -> bytes:
    """Serialize operations to compact JSON. Identical operations give identical bytes."""
    try:
        payload = [op.model_dump(mode="json") for op in operations]
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, allow_nan=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise EncodeError(f"failed to encode patch: {e}") from e


def encode_patch_b64(operations: list[PatchOperation]) -> str:
    """Patch as carried in AdmissionResponse.patch."""
    return base64.b64encode(encode_patch(operations)).decode("ascii")
