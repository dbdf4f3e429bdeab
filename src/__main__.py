# SpotAffinity/src/__main__.py
"""
Entrypoint: python -m src

Issues the serving certificate, registers the Service and webhook
configuration (unless NO_SELF_REGISTER=true), then serves HTTPS.
"""
from __future__ import annotations

import logging
import os

import uvicorn
from kubernetes.client.rest import ApiException

from .bootstrap.certs import provision_serving_certificate
from .bootstrap.registration import RegistrationSettings, register
from .config import CERT_DIR, NO_SELF_REGISTER, PORT
from .main import app
from .utils.kube import load_kube_config

logger = logging.getLogger("src.entrypoint")


def main() -> None:
    certificate = provision_serving_certificate(CERT_DIR)

    if NO_SELF_REGISTER:
        logger.info("Self-registration disabled (NO_SELF_REGISTER=true)")
    elif not load_kube_config():
        logger.error("Self-registration skipped: no Kubernetes config available")
    else:
        try:
            register(RegistrationSettings(), certificate.ca_pem)
        except ApiException as e:
            # Serving continues; without a webhook configuration the API server simply never calls us
            logger.error(f"Self-registration failed: {e.status} {e.reason}")

    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=PORT,
        ssl_certfile=str(certificate.cert_path),
        ssl_keyfile=str(certificate.key_path),
        log_level="debug" if os.getenv("DEBUG") else "info",
    )


if __name__ == "__main__":
    main()
