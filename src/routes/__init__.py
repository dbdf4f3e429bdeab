# SpotAffinity/src/routes/__init__.py
"""API routes for the spot affinity webhook."""
from .mutate import router as mutate_router

__all__ = [
    "mutate_router",
]
