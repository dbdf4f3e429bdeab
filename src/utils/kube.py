# SpotAffinity/src/utils/kube.py
"""Kubernetes client configuration shared by the watch ingestor and the self-registrar."""
from __future__ import annotations

import logging

from kubernetes import config

logger = logging.getLogger(__name__)


def load_kube_config() -> bool:
    """
    Load cluster credentials.

    Tries in-cluster config first (when running in a pod), then falls back
    to kubeconfig for local development. Returns False when neither exists.
    """
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
        return True
    except config.ConfigException:
        pass
    try:
        config.load_kube_config()
        logger.info("Loaded kubeconfig")
        return True
    except config.ConfigException as e:
        logger.warning(f"No Kubernetes config available: {e}")
        return False
