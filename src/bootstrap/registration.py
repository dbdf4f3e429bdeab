# SpotAffinity/src/bootstrap/registration.py
# @ai-rules:
# 1. [Pattern]: One-shot at startup, before the listener accepts traffic. Gated on NO_SELF_REGISTER.
# 2. [Gotcha]: 409 Conflict is expected on restart -- the existing objects are patched so caBundle tracks the new CA.
# 3. [Constraint]: Pure object construction in build_* functions; only register() talks to the API server.
"""
Self-Registrar.

Creates the Service fronting the webhook pods and the
MutatingWebhookConfiguration pointing the API server at it.
"""
from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..config import MUTATE_PATH, SERVICE_NAME, SERVICE_NAMESPACE, WEBHOOK_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

HTTP_CONFLICT = 409

FAILURE_POLICY = os.getenv("FAILURE_POLICY", "Fail")
NAMESPACE_LABEL = os.getenv("NAMESPACE_LABEL", "spot-affinity")
SERVICE_SELECTOR_KEY = os.getenv("SERVICE_SELECTOR_KEY", "app")
SERVICE_SELECTOR_VALUE = os.getenv("SERVICE_SELECTOR_VALUE", "spot-affinity-webhook")
SERVICE_PORT = int(os.getenv("SERVICE_PORT", "443"))
TARGET_PORT_NAME = os.getenv("TARGET_PORT_NAME", "admission-api")
WEBHOOK_CONFIG_NAME = os.getenv("WEBHOOK_CONFIG_NAME", "spot-affinity-mutate")
WEBHOOK_NAME = os.getenv("WEBHOOK_NAME", "spot-affinity.webhook.noorganization.io")


@dataclass
class RegistrationSettings:
    """Everything the registrar writes, defaulting to the environment."""

    service_name: str = SERVICE_NAME
    service_namespace: str = SERVICE_NAMESPACE
    selector: dict[str, str] = field(default_factory=lambda: {SERVICE_SELECTOR_KEY: SERVICE_SELECTOR_VALUE})
    service_port: int = SERVICE_PORT
    target_port_name: str = TARGET_PORT_NAME
    config_name: str = WEBHOOK_CONFIG_NAME
    webhook_name: str = WEBHOOK_NAME
    mutate_path: str = MUTATE_PATH
    namespace_label: str = NAMESPACE_LABEL
    failure_policy: str = FAILURE_POLICY
    timeout_seconds: int = WEBHOOK_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if self.failure_policy not in ("Fail", "Ignore"):
            raise ValueError(f"FAILURE_POLICY must be Fail or Ignore, got {self.failure_policy!r}")
        # admissionregistration/v1 bounds
        if not 1 <= self.timeout_seconds <= 30:
            raise ValueError(f"webhook timeout must be within 1..30s, got {self.timeout_seconds}")


def build_service(settings: RegistrationSettings) -> client.V1Service:
    return client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(name=settings.service_name, namespace=settings.service_namespace),
        spec=client.V1ServiceSpec(
            selector=dict(settings.selector),
            ports=[client.V1ServicePort(port=settings.service_port, target_port=settings.target_port_name)],
        ),
    )


def build_webhook_configuration(
    settings: RegistrationSettings,
    ca_bundle: bytes,
) -> client.V1MutatingWebhookConfiguration:
    """Webhook on pod CREATE in namespaces carrying the opt-in label."""
    webhook = client.V1MutatingWebhook(
        name=settings.webhook_name,
        client_config=client.AdmissionregistrationV1WebhookClientConfig(
            service=client.AdmissionregistrationV1ServiceReference(
                name=settings.service_name,
                namespace=settings.service_namespace,
                path=settings.mutate_path,
                port=settings.service_port,
            ),
            ca_bundle=base64.b64encode(ca_bundle).decode("ascii"),
        ),
        rules=[
            client.V1RuleWithOperations(
                operations=["CREATE"],
                api_groups=[""],
                api_versions=["v1"],
                resources=["pods"],
            )
        ],
        failure_policy=settings.failure_policy,
        namespace_selector=client.V1LabelSelector(
            match_expressions=[
                client.V1LabelSelectorRequirement(key=settings.namespace_label, operator="Exists"),
            ]
        ),
        admission_review_versions=["v1", "v1beta1"],
        side_effects="None",
        timeout_seconds=settings.timeout_seconds,
    )
    return client.V1MutatingWebhookConfiguration(
        api_version="admissionregistration.k8s.io/v1",
        kind="MutatingWebhookConfiguration",
        metadata=client.V1ObjectMeta(name=settings.config_name),
        webhooks=[webhook],
    )


def register(
    settings: RegistrationSettings,
    ca_bundle: bytes,
    core_api: Optional[client.CoreV1Api] = None,
    admission_api: Optional[client.AdmissionregistrationV1Api] = None,
) -> None:
    """
    Create (or patch) the Service and the MutatingWebhookConfiguration.

    Raises ApiException for anything other than 409 Conflict.
    """
    core_api = core_api or client.CoreV1Api()
    admission_api = admission_api or client.AdmissionregistrationV1Api()

    service = build_service(settings)
    try:
        core_api.create_namespaced_service(settings.service_namespace, service)
        logger.info(f"Created Service {settings.service_namespace}/{settings.service_name}")
    except ApiException as e:
        if e.status != HTTP_CONFLICT:
            raise
        core_api.patch_namespaced_service(settings.service_name, settings.service_namespace, service)
        logger.info(f"Service {settings.service_namespace}/{settings.service_name} exists; patched")

    configuration = build_webhook_configuration(settings, ca_bundle)
    try:
        admission_api.create_mutating_webhook_configuration(configuration)
        logger.info(f"Created MutatingWebhookConfiguration {settings.config_name}")
    except ApiException as e:
        if e.status != HTTP_CONFLICT:
            raise
        admission_api.patch_mutating_webhook_configuration(settings.config_name, configuration)
        logger.info(f"MutatingWebhookConfiguration {settings.config_name} exists; patched caBundle and rules")
