"""Deployment bodies for component workloads."""

from __future__ import annotations

import copy
from typing import Any

from isvc_operator.builders.common import object_meta, owner_labels, propagated_annotations
from isvc_operator.clients.base import CRDs
from isvc_operator.domains.inference.config import InferenceServiceConfig
from isvc_operator.domains.inference.models import (
    AutoscalerClass,
    ComponentSpec,
    ComponentType,
    DeploymentMode,
    InferenceService,
)
from isvc_operator.utils.annotations import ServingAnnotations
from isvc_operator.utils.labels import ServingLabels

RECREATE_STRATEGY: dict[str, Any] = {"type": "Recreate"}


def replica_range(spec: ComponentSpec) -> tuple[int, int]:
    """Effective ``(min, max)`` replicas.

    The minimum is floored at 1 and the maximum is never below the minimum.
    """
    min_replicas = spec.min_replicas if spec.min_replicas is not None else 1
    min_replicas = max(min_replicas, 1)
    max_replicas = max(spec.max_replicas, min_replicas)
    return min_replicas, max_replicas


def build_deployment(
    isvc: InferenceService,
    component: ComponentType,
    name: str,
    pod_template: dict[str, Any],
    replicas: int,
    autoscaler_class: AutoscalerClass,
    config: InferenceServiceConfig,
    strategy: dict[str, Any] | None = None,
    extra_labels: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Deployment selecting pods by the ``app`` label of ``name``."""
    labels = owner_labels(isvc, component, name)
    labels.update(extra_labels or {})
    annotations = propagated_annotations(isvc, config)
    annotations[ServingAnnotations.DEPLOYMENT_MODE] = DeploymentMode.RAW_DEPLOYMENT.value
    annotations[ServingAnnotations.AUTOSCALER_CLASS] = autoscaler_class.value

    spec: dict[str, Any] = {
        "replicas": replicas,
        "selector": {"matchLabels": {ServingLabels.APP: ServingLabels.app_value(name)}},
        "template": copy.deepcopy(pod_template),
    }
    if strategy:
        spec["strategy"] = copy.deepcopy(strategy)

    return {
        "apiVersion": CRDs.DEPLOYMENT.api_version,
        "kind": CRDs.DEPLOYMENT.kind,
        "metadata": object_meta(isvc, name, labels, annotations),
        "spec": spec,
    }
