# SpotAffinity/src/config.py
# @ai-rules:
# 1. [Pattern]: Env vars read once into module-level constants, like every other module. No secrets here.
# 2. [Constraint]: Only settings shared by more than one module live here; module-local knobs stay in their module.
"""Process-wide settings shared by the HTTP gateway, the certificate provider and the self-registrar."""
from __future__ import annotations

import os

# Network identity of the webhook (Service name/namespace the API server calls)
SERVICE_NAME = os.getenv("SERVICE_NAME", "spot-affinity-webhook")
SERVICE_NAMESPACE = os.getenv("SERVICE_NAMESPACE", os.getenv("POD_NAMESPACE", "default"))

# HTTPS listener
PORT = int(os.getenv("PORT", "18443"))
MUTATE_PATH = os.getenv("MUTATE_PATH", "/mutate")
CERT_DIR = os.getenv("CERT_DIR", "/etc/webhook/certs")

# The API server gives up on the webhook after this long; also written into the webhook configuration
WEBHOOK_TIMEOUT_SECONDS = int(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))

NO_SELF_REGISTER = os.getenv("NO_SELF_REGISTER", "false").lower() == "true"
