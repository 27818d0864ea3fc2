"""Service bodies fronting component workloads."""

from __future__ import annotations

from typing import Any

from isvc_operator.builders.common import object_meta, owner_labels
from isvc_operator.builders.pod import DEFAULT_HTTP_PORT, OAUTH_PROXY_PORT, serving_cert_secret
from isvc_operator.clients.base import CRDs
from isvc_operator.domains.inference.models import ComponentType, InferenceService
from isvc_operator.utils.annotations import ServingAnnotations
from isvc_operator.utils.labels import ServingLabels

SERVICE_PORT = 80
HTTPS_SERVICE_PORT = 443
RAY_GCS_PORT = 6379
SERVING_CERT_ANNOTATION = "service.beta.openshift.io/serving-cert-secret-name"


def build_service(isvc: InferenceService, component: ComponentType, name: str) -> dict[str, Any]:
    """ClusterIP Service forwarding port 80 to the serving port."""
    ports: list[dict[str, Any]] = [
        {"name": "http", "port": SERVICE_PORT, "targetPort": DEFAULT_HTTP_PORT, "protocol": "TCP"}
    ]
    annotations: dict[str, str] = {}
    if ServingAnnotations.is_true(isvc.metadata.annotations, ServingAnnotations.ENABLE_AUTH):
        ports.append(
            {
                "name": "https",
                "port": HTTPS_SERVICE_PORT,
                "targetPort": OAUTH_PROXY_PORT,
                "protocol": "TCP",
            }
        )
        annotations[SERVING_CERT_ANNOTATION] = serving_cert_secret(name)

    return {
        "apiVersion": CRDs.SERVICE.api_version,
        "kind": CRDs.SERVICE.kind,
        "metadata": object_meta(isvc, name, owner_labels(isvc, component, name), annotations),
        "spec": {
            "type": "ClusterIP",
            "selector": {ServingLabels.APP: ServingLabels.app_value(name)},
            "ports": ports,
        },
    }


def build_headless_service(
    isvc: InferenceService, name: str, target_app: str, role: str
) -> dict[str, Any]:
    """Headless Service giving multi-node pods stable DNS names."""
    labels = owner_labels(isvc, ComponentType.PREDICTOR, target_app)
    labels[ServingLabels.MULTINODE_ROLE] = role
    return {
        "apiVersion": CRDs.SERVICE.api_version,
        "kind": CRDs.SERVICE.kind,
        "metadata": object_meta(isvc, name, labels),
        "spec": {
            "clusterIP": "None",
            "publishNotReadyAddresses": True,
            "selector": {ServingLabels.APP: ServingLabels.app_value(target_app)},
            "ports": [
                {"name": "gcs", "port": RAY_GCS_PORT, "targetPort": RAY_GCS_PORT, "protocol": "TCP"}
            ],
        },
    }
