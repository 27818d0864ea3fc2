"""HorizontalPodAutoscaler and KEDA ScaledObject bodies.

At most one autoscaler object exists per component; which one is decided
by the autoscaler class. Both scale the component Deployment.
"""

from __future__ import annotations

from typing import Any, assert_never

from isvc_operator.builders.common import object_meta, owner_labels
from isvc_operator.builders.deployment import replica_range
from isvc_operator.clients.base import CRDs
from isvc_operator.domains.inference.config import InferenceServiceConfig
from isvc_operator.domains.inference.models import (
    AutoscalerClass,
    ComponentSpec,
    ComponentType,
    InferenceService,
    MetricSourceType,
    MetricSpec,
    MetricTarget,
)
from isvc_operator.utils.annotations import ServingAnnotations
from isvc_operator.utils.errors import InvalidDesiredStateError

RESOURCE_METRICS = ("cpu", "memory")
UTILIZATION = "Utilization"
AVERAGE_VALUE = "AverageValue"
VALUE = "Value"


def _invalid_metric(message: str) -> InvalidDesiredStateError:
    return InvalidDesiredStateError(message, reason="InvalidAutoscalingMetric")


def _target_utilization(isvc: InferenceService, spec: ComponentSpec, config: InferenceServiceConfig) -> int:
    if spec.scale_target is not None:
        utilization = spec.scale_target
    else:
        raw = isvc.metadata.annotations.get(ServingAnnotations.TARGET_UTILIZATION)
        if raw is None:
            utilization = config.autoscaler.default_cpu_utilization
        else:
            try:
                utilization = int(raw)
            except ValueError:
                raise _invalid_metric(
                    f"Annotation {ServingAnnotations.TARGET_UTILIZATION} must be an integer, got {raw!r}"
                )
    if not 1 <= utilization <= 100:
        raise _invalid_metric(f"Target utilization must be between 1 and 100, got {utilization}")
    return utilization


def _legacy_resource_metric(
    isvc: InferenceService, spec: ComponentSpec, config: InferenceServiceConfig
) -> tuple[str, MetricTarget]:
    """Resource metric from ``scaleMetric``/``scaleTarget`` and annotations."""
    name = spec.scale_metric or isvc.metadata.annotations.get(
        ServingAnnotations.AUTOSCALER_METRICS, "cpu"
    )
    if name not in RESOURCE_METRICS:
        raise _invalid_metric(
            f"Scale metric '{name}' is not supported by this autoscaler (use cpu or memory)"
        )
    return name, MetricTarget(
        type=UTILIZATION, average_utilization=_target_utilization(isvc, spec, config)
    )


def metric_target(target: MetricTarget) -> dict[str, Any]:
    """Autoscaling/v2 metric target body."""
    if target.type == UTILIZATION:
        if target.average_utilization is None:
            raise _invalid_metric("A Utilization target needs averageUtilization")
        return {"type": UTILIZATION, "averageUtilization": target.average_utilization}
    if target.type == AVERAGE_VALUE:
        if target.average_value is None:
            raise _invalid_metric("An AverageValue target needs averageValue")
        return {"type": AVERAGE_VALUE, "averageValue": target.average_value}
    if target.type == VALUE:
        if target.value is None:
            raise _invalid_metric("A Value target needs value")
        return {"type": VALUE, "value": target.value}
    raise _invalid_metric(f"Unknown metric target type '{target.type}'")


def hpa_metrics(
    isvc: InferenceService, spec: ComponentSpec, config: InferenceServiceConfig
) -> list[dict[str, Any]]:
    """Metrics for an HPA. Only resource metrics are expressible."""
    declared = spec.auto_scaling.metrics if spec.auto_scaling else []
    if not declared:
        name, target = _legacy_resource_metric(isvc, spec, config)
        return [{"type": "Resource", "resource": {"name": name, "target": metric_target(target)}}]

    metrics = []
    for metric in declared:
        if metric.type != MetricSourceType.RESOURCE or metric.resource is None:
            raise _invalid_metric(
                f"Metric type '{metric.type.value}' requires the keda autoscaler class"
            )
        if metric.resource.name not in RESOURCE_METRICS:
            raise _invalid_metric(f"Resource metric '{metric.resource.name}' is not supported")
        metrics.append(
            {
                "type": "Resource",
                "resource": {
                    "name": metric.resource.name,
                    "target": metric_target(metric.resource.target),
                },
            }
        )
    return metrics


def build_hpa(
    isvc: InferenceService,
    component: ComponentType,
    name: str,
    spec: ComponentSpec,
    config: InferenceServiceConfig,
) -> dict[str, Any]:
    """HPA scaling the component Deployment between min and max replicas."""
    min_replicas, max_replicas = replica_range(spec)
    annotations = {ServingAnnotations.AUTOSCALER_CLASS: AutoscalerClass.HPA.value}
    return {
        "apiVersion": CRDs.HPA.api_version,
        "kind": CRDs.HPA.kind,
        "metadata": object_meta(isvc, name, owner_labels(isvc, component, name), annotations),
        "spec": {
            "scaleTargetRef": {
                "apiVersion": CRDs.DEPLOYMENT.api_version,
                "kind": CRDs.DEPLOYMENT.kind,
                "name": name,
            },
            "minReplicas": min_replicas,
            "maxReplicas": max_replicas,
            "metrics": hpa_metrics(isvc, spec, config),
        },
    }


# -----------------------------------------------------------------------------
# KEDA
# -----------------------------------------------------------------------------


def _target_value(target: MetricTarget) -> tuple[str, str]:
    """``(metricType, value)`` for a KEDA trigger."""
    if target.type == UTILIZATION:
        if target.average_utilization is None:
            raise _invalid_metric("A Utilization target needs averageUtilization")
        return UTILIZATION, str(target.average_utilization)
    if target.type == AVERAGE_VALUE and target.average_value is not None:
        return AVERAGE_VALUE, target.average_value
    if target.type == VALUE and target.value is not None:
        return VALUE, target.value
    raise _invalid_metric(f"Metric target '{target.type}' has no value")


def _keda_trigger(
    metric: MetricSpec, config: InferenceServiceConfig, namespace: str
) -> dict[str, Any]:
    if metric.type == MetricSourceType.RESOURCE:
        if metric.resource is None or metric.resource.name not in RESOURCE_METRICS:
            raise _invalid_metric("Resource metrics must name cpu or memory")
        metric_type, value = _target_value(metric.resource.target)
        if metric_type == VALUE:
            raise _invalid_metric("KEDA resource triggers do not support Value targets")
        return {"type": metric.resource.name, "metricType": metric_type, "metadata": {"value": value}}
    elif metric.type == MetricSourceType.EXTERNAL:
        if metric.external is None:
            raise _invalid_metric("External metric has no source")
        source = metric.external.metric
        if source.backend != "prometheus":
            raise _invalid_metric(f"External metric backend '{source.backend}' is not supported")
        if not source.server_address or not source.query:
            raise _invalid_metric("Prometheus metrics need serverAddress and query")
        metric_type, value = _target_value(metric.external.target)
        return {
            "type": "prometheus",
            "metricType": metric_type,
            "metadata": {
                "serverAddress": source.server_address,
                "query": source.query,
                "threshold": value,
                "namespace": source.namespace or namespace,
            },
        }
    elif metric.type == MetricSourceType.POD_METRIC:
        if metric.pod_metric is None:
            raise _invalid_metric("Pod metric has no source")
        source = metric.pod_metric.metric
        if source.backend != "opentelemetry":
            raise _invalid_metric(f"Pod metric backend '{source.backend}' is not supported")
        if not source.metric_names and not source.query:
            raise _invalid_metric("Pod metrics need metricNames or query")
        metric_type, value = _target_value(metric.pod_metric.target)
        query = source.query or source.metric_names[0]
        return {
            "type": "external",
            "metricType": metric_type,
            "metadata": {
                "scalerAddress": source.server_address or config.otel_collector.metric_scaler_endpoint,
                "metricQuery": query,
                "targetValue": value,
            },
        }
    else:
        assert_never(metric.type)


def keda_triggers(
    isvc: InferenceService, spec: ComponentSpec, config: InferenceServiceConfig
) -> list[dict[str, Any]]:
    declared = spec.auto_scaling.metrics if spec.auto_scaling else []
    if not declared:
        name, target = _legacy_resource_metric(isvc, spec, config)
        return [
            {"type": name, "metricType": UTILIZATION, "metadata": {"value": str(target.average_utilization)}}
        ]
    return [_keda_trigger(metric, config, isvc.namespace) for metric in declared]


def needs_otel_collector(spec: ComponentSpec, autoscaler_class: AutoscalerClass) -> bool:
    """A sidecar collector is needed only for KEDA scaling on pod metrics."""
    if autoscaler_class != AutoscalerClass.KEDA or spec.auto_scaling is None:
        return False
    return any(m.type == MetricSourceType.POD_METRIC for m in spec.auto_scaling.metrics)


def pod_metric_names(spec: ComponentSpec) -> list[str]:
    names: list[str] = []
    for metric in spec.auto_scaling.metrics if spec.auto_scaling else []:
        if metric.type == MetricSourceType.POD_METRIC and metric.pod_metric is not None:
            for name in metric.pod_metric.metric.metric_names:
                if name not in names:
                    names.append(name)
    return names


def build_scaled_object(
    isvc: InferenceService,
    component: ComponentType,
    name: str,
    spec: ComponentSpec,
    config: InferenceServiceConfig,
) -> dict[str, Any]:
    """KEDA ScaledObject scaling the component Deployment."""
    min_replicas, max_replicas = replica_range(spec)
    annotations = {ServingAnnotations.AUTOSCALER_CLASS: AutoscalerClass.KEDA.value}
    return {
        "apiVersion": CRDs.SCALED_OBJECT.api_version,
        "kind": CRDs.SCALED_OBJECT.kind,
        "metadata": object_meta(isvc, name, owner_labels(isvc, component, name), annotations),
        "spec": {
            "scaleTargetRef": {
                "apiVersion": CRDs.DEPLOYMENT.api_version,
                "kind": CRDs.DEPLOYMENT.kind,
                "name": name,
            },
            "minReplicaCount": min_replicas,
            "maxReplicaCount": max_replicas,
            "triggers": keda_triggers(isvc, spec, config),
        },
    }
