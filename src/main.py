# SpotAffinity/src/main.py
# @ai-rules:
# 1. [Pattern]: Cache, engine and ingestor are built in lifespan(); engine and ingestor are published via dependencies.set_components().
# 2. [Constraint]: /readyz stays 503 until both initial listings are applied; the mutate route enforces the same gate.
# 3. [Gotcha]: Certificates and self-registration run in __main__.py before uvicorn starts, not here.
"""
Spot Affinity Webhook - FastAPI Application

Mutating admission webhook that keeps one pod per Deployment ReplicaSet on
on-demand capacity and steers its siblings to spot nodes.
"""
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException

from .dependencies import set_components
from .engine.decision import AdmissionDecisionEngine
from .models import HealthResponse
from .observers.kubernetes import WatchIngestor
from .routes import mutate_router
from .state.affinity_cache import ReplicaAffinityCache

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if os.getenv("DEBUG") else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Squelch noisy loggers
for noisy in ("kubernetes.client.rest", "urllib3.connectionpool"):
    logging.getLogger(noisy).setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Builds the cache and decision engine, starts the pod/ReplicaSet watches
    on startup and stops them on shutdown.
    """
    logger.info("Spot affinity webhook starting up...")

    cache = ReplicaAffinityCache()
    engine = AdmissionDecisionEngine(cache)
    ingestor = WatchIngestor(cache)
    set_components(engine, ingestor)
    app.state.cache = cache
    app.state.ingestor = ingestor

    if await ingestor.start():
        logger.info("WatchIngestor started; admissions wait for initial listings")

    logger.info("Spot affinity webhook ready to accept connections")

    yield  # Application runs here

    logger.info("Spot affinity webhook shutting down...")
    await ingestor.stop()


# Create FastAPI application
app = FastAPI(
    title="Spot Affinity Webhook",
    description="Admission-time on-demand/spot node pool steering for ReplicaSet pods",
    version="1.0.0",
    lifespan=lifespan,
)


# =============================================================================
# Probes
# =============================================================================

@app.get("/healthz", response_model=HealthResponse, tags=["health"])
async def health_check() -> HealthResponse:
    """Liveness probe with cache statistics."""
    cache = getattr(app.state, "cache", None)
    ingestor = getattr(app.state, "ingestor", None)
    if cache is None or ingestor is None:
        raise HTTPException(status_code=503, detail="Webhook not initialized")
    return HealthResponse(status="ok", ready=ingestor.is_ready(), **cache.stats())


@app.get("/readyz", tags=["health"])
async def readiness_check() -> dict:
    """
    Readiness probe.

    Returns 503 until both the pod and ReplicaSet listings are in the cache.
    """
    ingestor = getattr(app.state, "ingestor", None)
    if ingestor is None or not ingestor.is_ready():
        raise HTTPException(status_code=503, detail="watch cache not synced")
    return {"status": "ready"}


# =============================================================================
# Mount Routers
# =============================================================================

app.include_router(mutate_router)
