"""Utility modules for the spot affinity webhook."""

from .kube import load_kube_config

__all__ = ["load_kube_config"]
