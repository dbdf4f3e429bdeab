# SpotAffinity/src/models.py
# @ai-rules:
# 1. [Constraint]: All wire models are Pydantic BaseModel. Use Field() with camelCase aliases; populate_by_name stays on.
# 2. [Pattern]: Pod payloads are parsed leniently (extra="allow") -- only metadata and spec.affinity are ever read.
# 3. [Gotcha]: At CREATE time a ReplicaSet pod has no metadata.uid and usually no metadata.name (generateName only).
"""Pydantic schemas for the admission webhook wire format."""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

CAPACITY_LABEL_KEY = "node.kubernetes.io/capacity"

REPLICASET_API_VERSION = "apps/v1"
REPLICASET_KIND = "ReplicaSet"
DEPLOYMENT_API_VERSION = "apps/v1"
DEPLOYMENT_KIND = "Deployment"

JSON_PATCH_TYPE = "JSONPatch"


class NodePool(str, Enum):
    """Node pool a pod is steered to via the capacity label."""
    ON_DEMAND = "on-demand"
    SPOT = "spot"
    UNASSIGNED = "unassigned"


# =============================================================================
# Kubernetes object fragments
# =============================================================================

class OwnerReference(BaseModel):
    """metadata.ownerReferences[] entry."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    api_version: str = Field("", alias="apiVersion")
    kind: str = ""
    name: str = ""
    uid: str = ""
    controller: Optional[bool] = None

    def is_kind(self, api_version: str, kind: str) -> bool:
        return self.api_version == api_version and self.kind == kind


class ObjectMeta(BaseModel):
    """The subset of metadata the webhook reads."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str = ""
    generate_name: str = Field("", alias="generateName")
    namespace: str = ""
    uid: str = ""
    resource_version: str = Field("", alias="resourceVersion")
    owner_references: list[OwnerReference] = Field(default_factory=list, alias="ownerReferences")


class KubeObject(BaseModel):
    """A pod or ReplicaSet as it appears in admission payloads and watch streams."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    api_version: str = Field("", alias="apiVersion")
    kind: str = ""
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: dict[str, Any] = Field(default_factory=dict)

    @property
    def display_name(self) -> str:
        """Name for log lines; falls back to generateName for not-yet-named pods."""
        name = self.metadata.name or f"{self.metadata.generate_name}<pending>"
        if self.metadata.namespace:
            return f"{self.metadata.namespace}/{name}"
        return name


def controlling_owner(owners: list[OwnerReference]) -> Optional[OwnerReference]:
    """
    Return the owner reference that controls the object.

    The reference flagged controller=true wins; objects written without the
    flag fall back to their first reference.
    """
    if not owners:
        return None
    for owner in owners:
        if owner.controller:
            return owner
    return owners[0]


def replicaset_owner(obj: KubeObject) -> Optional[OwnerReference]:
    """The owning ReplicaSet reference, or None when the pod is not ReplicaSet-managed."""
    owner = controlling_owner(obj.metadata.owner_references)
    if owner is None or not owner.uid:
        return None
    if not owner.is_kind(REPLICASET_API_VERSION, REPLICASET_KIND):
        return None
    return owner


def observed_node_pool(spec: dict[str, Any], label_key: str = CAPACITY_LABEL_KEY) -> NodePool:
    """
    Read the pool already pinned on a pod spec.

    Looks for a required node affinity expression on the capacity label with
    operator In. on-demand takes precedence when both values are listed.
    """
    affinity = spec.get("affinity") or {}
    node_affinity = affinity.get("nodeAffinity") or {}
    required = node_affinity.get("requiredDuringSchedulingIgnoredDuringExecution") or {}
    seen: set[str] = set()
    for term in required.get("nodeSelectorTerms") or []:
        for expression in (term or {}).get("matchExpressions") or []:
            if expression.get("key") != label_key or expression.get("operator") != "In":
                continue
            seen.update(expression.get("values") or [])
    if NodePool.ON_DEMAND.value in seen:
        return NodePool.ON_DEMAND
    if NodePool.SPOT.value in seen:
        return NodePool.SPOT
    return NodePool.UNASSIGNED


# =============================================================================
# AdmissionReview envelope (admission.k8s.io/v1 and v1beta1)
# =============================================================================

class AdmissionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    uid: str = Field(..., min_length=1)
    operation: str = "CREATE"
    namespace: str = ""
    object: Optional[dict[str, Any]] = None


class AdmissionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    uid: str
    allowed: bool = True
    patch_type: Optional[str] = Field(None, alias="patchType")
    patch: Optional[str] = Field(None, description="base64 encoded JSON Patch")


class AdmissionReview(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    api_version: str = Field("admission.k8s.io/v1", alias="apiVersion")
    kind: str = "AdmissionReview"
    request: Optional[AdmissionRequest] = None
    response: Optional[AdmissionResponse] = None


# =============================================================================
# JSON Patch (RFC 6902)
# =============================================================================

class PatchOperation(BaseModel):
    """A single JSON Patch operation. Field order is the serialization order."""
    op: str = Field(..., description="add | replace")
    path: str
    value: Any = None


# =============================================================================
# Probes
# =============================================================================

class HealthResponse(BaseModel):
    status: str
    ready: bool
    replica_groups: int = 0
    tracked_pods: int = 0
    pending_pods: int = 0
    ineligible_groups: int = 0
