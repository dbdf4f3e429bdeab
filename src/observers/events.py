# SpotAffinity/src/observers/events.py
# @ai-rules:
# 1. [Constraint]: Closed set of six event variants. WatchIngestor.apply() must handle every one of them.
# 2. [Pattern]: Raw watch dicts are normalized once here; nothing downstream touches raw payloads.
"""Typed watch events for pods and ReplicaSets."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic import ValidationError

from ..models import KubeObject

logger = logging.getLogger(__name__)

PODS = "pods"
REPLICASETS = "replicasets"


@dataclass(frozen=True)
class PodAdded:
    obj: KubeObject


@dataclass(frozen=True)
class PodUpdated:
    obj: KubeObject


@dataclass(frozen=True)
class PodDeleted:
    obj: KubeObject


@dataclass(frozen=True)
class ReplicaSetAdded:
    obj: KubeObject


@dataclass(frozen=True)
class ReplicaSetUpdated:
    obj: KubeObject


@dataclass(frozen=True)
class ReplicaSetDeleted:
    obj: KubeObject


PodEvent = Union[PodAdded, PodUpdated, PodDeleted]
ReplicaSetEvent = Union[ReplicaSetAdded, ReplicaSetUpdated, ReplicaSetDeleted]
WatchEvent = Union[PodEvent, ReplicaSetEvent]

_VARIANTS: dict[tuple[str, str], type] = {
    (PODS, "ADDED"): PodAdded,
    (PODS, "MODIFIED"): PodUpdated,
    (PODS, "DELETED"): PodDeleted,
    (REPLICASETS, "ADDED"): ReplicaSetAdded,
    (REPLICASETS, "MODIFIED"): ReplicaSetUpdated,
    (REPLICASETS, "DELETED"): ReplicaSetDeleted,
}


def from_watch(kind: str, event_type: str, raw_object: Any) -> Optional[WatchEvent]:
    """
    Normalize one watch notification.

    Returns None for notifications that carry no cache mutation (BOOKMARK)
    and for objects that fail to parse, which are logged and skipped.
    """
    variant = _VARIANTS.get((kind, event_type))
    if variant is None:
        logger.debug(f"Ignoring {event_type} notification for {kind}")
        return None
    try:
        obj = KubeObject.model_validate(raw_object)
    except ValidationError as e:
        logger.warning(f"Skipping malformed {kind} {event_type} object: {e.error_count()} error(s)")
        return None
    return variant(obj)
