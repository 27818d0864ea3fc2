"""Metadata helpers shared by all builders."""

from __future__ import annotations

from typing import Any

from isvc_operator.clients.base import CRDDefinition
from isvc_operator.domains.inference.config import InferenceServiceConfig
from isvc_operator.domains.inference.models import ComponentType, InferenceService
from isvc_operator.utils.annotations import ServingAnnotations
from isvc_operator.utils.labels import ServingLabels

# Annotations that steer the operator itself; copying them onto pod
# templates would roll pods on every stop or autoscaler switch.
CONTROL_ANNOTATIONS = frozenset(
    {
        ServingAnnotations.STOP,
        ServingAnnotations.AUTOSCALER_CLASS,
        ServingAnnotations.DEPLOYMENT_MODE,
        ServingAnnotations.LAST_APPLIED,
        ServingAnnotations.DESIRED_HASH,
    }
)


def owner_labels(isvc: InferenceService, component: ComponentType, app_name: str) -> dict[str, str]:
    """Labels every object of a component carries."""
    return {
        ServingLabels.INFERENCE_SERVICE: isvc.name,
        ServingLabels.COMPONENT: component.value,
        ServingLabels.APP: ServingLabels.app_value(app_name),
    }


def propagated_annotations(
    isvc: InferenceService, config: InferenceServiceConfig
) -> dict[str, str]:
    """Service annotations copied onto owned objects."""
    disallowed = set(config.inference_service.service_annotation_disallowed_list)
    return {
        key: value
        for key, value in isvc.metadata.annotations.items()
        if key not in disallowed and key not in CONTROL_ANNOTATIONS
    }


def object_meta(
    isvc: InferenceService,
    name: str,
    labels: dict[str, str],
    annotations: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Metadata with a controller owner reference back to the service."""
    meta: dict[str, Any] = {
        "name": name,
        "namespace": isvc.namespace,
        "labels": dict(labels),
        "ownerReferences": [isvc.owner_reference()],
    }
    if annotations:
        meta["annotations"] = dict(annotations)
    return meta


def skeleton(crd: CRDDefinition, name: str, namespace: str) -> dict[str, Any]:
    """Metadata-only body, enough to look up or delete an object."""
    return {
        "apiVersion": crd.api_version,
        "kind": crd.kind,
        "metadata": {"name": name, "namespace": namespace},
    }
