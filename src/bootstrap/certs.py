# SpotAffinity/src/bootstrap/certs.py
# @ai-rules:
# 1. [Constraint]: The CA private key never leaves generate_serving_certificate(). Only the CA certificate is returned (for caBundle).
# 2. [Pattern]: Files are written before uvicorn starts; nothing on the admission path reads them.
"""
Certificate Provider.

Issues a self-signed CA and a server certificate for the webhook Service
DNS names, and persists tls.crt / tls.key (plus ca.crt) for the HTTPS
listener.
"""
from __future__ import annotations

import datetime
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from ..config import CERT_DIR, SERVICE_NAME, SERVICE_NAMESPACE

logger = logging.getLogger(__name__)

CERT_FILE = "tls.crt"
KEY_FILE = "tls.key"
CA_FILE = "ca.crt"

CERT_ORGANIZATION = os.getenv("CERT_ORGANIZATION", "spot-affinity")
CERT_KEY_SIZE = int(os.getenv("CERT_KEY_SIZE", "4096"))
CA_VALIDITY_DAYS = int(os.getenv("CA_VALIDITY_DAYS", "3650"))
CERT_VALIDITY_DAYS = int(os.getenv("CERT_VALIDITY_DAYS", "365"))


@dataclass(frozen=True)
class ServingCertificate:
    """PEM material for the HTTPS listener and the webhook caBundle."""

    cert_pem: bytes
    key_pem: bytes
    ca_pem: bytes
    cert_path: Optional[Path] = None
    key_path: Optional[Path] = None


def service_dns_names(service: str, namespace: str) -> list[str]:
    """Names the API server may use to reach the Service."""
    return [service, f"{service}.{namespace}", f"{service}.{namespace}.svc"]


def generate_serving_certificate(
    service: str = SERVICE_NAME,
    namespace: str = SERVICE_NAMESPACE,
    organization: str = CERT_ORGANIZATION,
    key_size: int = CERT_KEY_SIZE,
    ca_validity_days: int = CA_VALIDITY_DAYS,
    cert_validity_days: int = CERT_VALIDITY_DAYS,
) -> ServingCertificate:
    """Create a throwaway CA and sign a server certificate for the Service."""
    now = datetime.datetime.now(datetime.timezone.utc)
    dns_names = service_dns_names(service, namespace)

    ca_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    ca_name = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
        x509.NameAttribute(NameOID.COMMON_NAME, f"{service}-ca"),
    ])
    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(ca_name)
        .issuer_name(ca_name)
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=ca_validity_days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=True, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
        .sign(ca_key, hashes.SHA256())
    )

    server_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    server_cert = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
            x509.NameAttribute(NameOID.COMMON_NAME, dns_names[-1]),
        ]))
        .issuer_name(ca_name)
        .public_key(server_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=cert_validity_days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(n) for n in dns_names]), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]),
            critical=False,
        )
        .sign(ca_key, hashes.SHA256())
    )

    return ServingCertificate(
        cert_pem=server_cert.public_bytes(serialization.Encoding.PEM),
        key_pem=server_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ),
        ca_pem=ca_cert.public_bytes(serialization.Encoding.PEM),
    )


def write_serving_certificate(cert: ServingCertificate, cert_dir: str = CERT_DIR) -> ServingCertificate:
    """Persist the material; the key file is written owner-read-only."""
    directory = Path(cert_dir)
    directory.mkdir(parents=True, exist_ok=True)

    cert_path = directory / CERT_FILE
    key_path = directory / KEY_FILE
    cert_path.write_bytes(cert.cert_pem)
    (directory / CA_FILE).write_bytes(cert.ca_pem)
    key_path.touch(mode=0o600, exist_ok=True)
    key_path.write_bytes(cert.key_pem)
    os.chmod(key_path, 0o600)

    logger.info(f"Serving certificate written to {directory} ({CERT_FILE}, {KEY_FILE}, {CA_FILE})")
    return ServingCertificate(
        cert_pem=cert.cert_pem,
        key_pem=cert.key_pem,
        ca_pem=cert.ca_pem,
        cert_path=cert_path,
        key_path=key_path,
    )


def provision_serving_certificate(cert_dir: str = CERT_DIR) -> ServingCertificate:
    """Generate and persist in one step. Called once at startup."""
    return write_serving_certificate(generate_serving_certificate(), cert_dir)
