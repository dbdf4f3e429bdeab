# SpotAffinity/src/dependencies.py
"""FastAPI dependency injection for the spot affinity webhook."""
from __future__ import annotations

from typing import Optional

from .engine.decision import AdmissionDecisionEngine
from .observers.kubernetes import WatchIngestor

# Global instances (initialized in main.py lifespan)
_engine: Optional[AdmissionDecisionEngine] = None
_ingestor: Optional[WatchIngestor] = None


def set_components(engine: AdmissionDecisionEngine, ingestor: WatchIngestor) -> None:
    """Set the global decision engine and watch ingestor."""
    global _engine, _ingestor
    _engine = engine
    _ingestor = ingestor


async def get_engine() -> AdmissionDecisionEngine:
    """
    Get the decision engine.

    FastAPI dependency.
    """
    if _engine is None:
        raise RuntimeError("Decision engine not initialized. Check startup sequence.")
    return _engine


async def get_ingestor() -> WatchIngestor:
    """Get the watch ingestor (readiness gate)."""
    if _ingestor is None:
        raise RuntimeError("Watch ingestor not initialized. Check startup sequence.")
    return _ingestor
