"""One-shot startup steps: serving certificate and self-registration."""
from .certs import ServingCertificate, provision_serving_certificate
from .registration import RegistrationSettings, register

__all__ = ["RegistrationSettings", "ServingCertificate", "provision_serving_certificate", "register"]
