"""State management layer for the spot affinity webhook."""
from .affinity_cache import GroupTransaction, PodRecord, ReplicaAffinityCache

__all__ = ["GroupTransaction", "PodRecord", "ReplicaAffinityCache"]
