"""Deterministic names and hosts for derived objects."""

from __future__ import annotations

import re

from isvc_operator.domains.inference.models import ComponentType

WORKER_SUFFIX = "worker"
HEAD_SUFFIX = "head"
CLUSTER_DOMAIN = "svc.cluster.local"

_TEMPLATE_FIELD = re.compile(r"\{\{\s*\.([A-Za-z]+)(?:\.([A-Za-z0-9_./-]+))?\s*\}\}")


def component_name(isvc_name: str, component: ComponentType) -> str:
    """Name shared by a component's Deployment, Service and autoscaler."""
    return f"{isvc_name}-{component.value}"


def worker_name(isvc_name: str) -> str:
    """Name of the multi-node worker Deployment and headless Service."""
    return f"{isvc_name}-{ComponentType.PREDICTOR.value}-{WORKER_SUFFIX}"


def head_service_name(isvc_name: str) -> str:
    """Headless Service workers use to reach the head node."""
    return f"{isvc_name}-{HEAD_SUFFIX}"


def internal_host(service_name: str, namespace: str) -> str:
    """Fully qualified in-cluster DNS name of a Service."""
    return f"{service_name}.{namespace}.{CLUSTER_DOMAIN}"


def render_template(
    template: str,
    name: str,
    namespace: str,
    ingress_domain: str = "",
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
) -> str:
    """Render a ``{{ .Name }}``-style template.

    Supports ``.Name``, ``.Namespace``, ``.IngressDomain`` and map lookups
    ``.Labels.<key>`` / ``.Annotations.<key>``. Unknown fields render empty.
    """
    labels = labels or {}
    annotations = annotations or {}

    def _sub(match: re.Match[str]) -> str:
        field, key = match.group(1), match.group(2)
        if field == "Name":
            return name
        if field == "Namespace":
            return namespace
        if field == "IngressDomain":
            return ingress_domain
        if field == "Labels" and key:
            return labels.get(key, "")
        if field == "Annotations" and key:
            return annotations.get(key, "")
        return ""

    return _TEMPLATE_FIELD.sub(_sub, template)
