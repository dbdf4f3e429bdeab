"""Cluster observers feeding the replica affinity cache."""
from .events import WatchEvent, from_watch
from .kubernetes import WatchIngestor

__all__ = ["WatchEvent", "WatchIngestor", "from_watch"]
