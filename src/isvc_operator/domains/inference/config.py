"""Cluster serving configuration read from the ``inferenceservice-config`` ConfigMap.

Each ConfigMap key holds one JSON document. The parsed
``InferenceServiceConfig`` is immutable and is loaded once per reconcile
pass, then passed explicitly to every builder and reconciler.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from isvc_operator.domains.inference.models import AutoscalerClass, CRModel, DeploymentMode
from isvc_operator.utils.errors import ConfigError, NotFoundError
from isvc_operator.utils.labels import ServingLabels

if TYPE_CHECKING:
    from isvc_operator.clients.base import K8sClient

logger = logging.getLogger(__name__)


class RoutingMode(str, Enum):
    """Kind of routing object that exposes services."""

    GATEWAY_API = "GatewayAPI"
    INGRESS = "Ingress"
    DISABLED = "Disabled"


class ConfigSection(CRModel):
    """Frozen base for ConfigMap sections."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
        protected_namespaces=(),
    )


class IngressConfig(ConfigSection):
    """Routing settings."""

    kserve_ingress_gateway: str = "kserve/kserve-ingress-gateway"
    ingress_class_name: str | None = "istio"
    ingress_domain: str = "example.com"
    domain_template: str = "{{ .Name }}-{{ .Namespace }}.{{ .IngressDomain }}"
    url_scheme: str = "http"
    path_template: str = ""
    additional_ingress_domains: list[str] = Field(default_factory=list)
    disable_ingress_creation: bool = False
    enable_gateway_api: bool = False
    route_timeout_seconds: int = Field(default=30, ge=1)
    ingress_timeout_annotation: str = "haproxy.router.openshift.io/timeout"

    @property
    def gateway_namespace(self) -> str:
        namespace, _, _ = self.kserve_ingress_gateway.partition("/")
        return namespace

    @property
    def gateway_name(self) -> str:
        _, _, name = self.kserve_ingress_gateway.partition("/")
        return name or self.kserve_ingress_gateway

    @property
    def path_based(self) -> bool:
        return bool(self.path_template)

    def routing_mode_for(self, labels: dict[str, str]) -> RoutingMode:
        """Routing mode for one service.

        Cluster-local services and clusters with ingress creation disabled
        get no routing objects.
        """
        if self.disable_ingress_creation:
            return RoutingMode.DISABLED
        if labels.get(ServingLabels.VISIBILITY) == ServingLabels.CLUSTER_LOCAL:
            return RoutingMode.DISABLED
        if self.enable_gateway_api:
            return RoutingMode.GATEWAY_API
        return RoutingMode.INGRESS


class StorageInitializerConfig(ConfigSection):
    """Model download init container."""

    image: str = "kserve/storage-initializer:latest"
    cpu_request: str = "100m"
    cpu_limit: str = "1"
    memory_request: str = "100Mi"
    memory_limit: str = "1Gi"
    enable_direct_pvc_volume_mount: bool = True


class OauthProxyConfig(ConfigSection):
    """Auth proxy sidecar injected when auth is enabled."""

    image: str = "quay.io/openshift/origin-oauth-proxy:latest"
    cpu_request: str = "100m"
    cpu_limit: str = "200m"
    memory_request: str = "64Mi"
    memory_limit: str = "128Mi"


class DeployConfig(ConfigSection):
    """Deployment mode defaults."""

    default_deployment_mode: DeploymentMode = DeploymentMode.RAW_DEPLOYMENT


class InferenceServiceSection(ConfigSection):
    """Annotation propagation rules."""

    service_annotation_disallowed_list: list[str] = Field(
        default_factory=lambda: [
            "autoscaling.knative.dev/min-scale",
            "autoscaling.knative.dev/max-scale",
            "internal.serving.kserve.io/storage-initializer-sourceuri",
            "kubectl.kubernetes.io/last-applied-configuration",
        ]
    )


class ResourceDefaults(ConfigSection):
    """CPU and memory applied to containers that declare none."""

    cpu_request: str = "1"
    cpu_limit: str = "1"
    memory_request: str = "2Gi"
    memory_limit: str = "2Gi"


class OtelCollectorConfig(ConfigSection):
    """Telemetry sidecar collector settings."""

    scrape_interval: str = "5s"
    metric_receiver_endpoint: str = "keda-otel-scaler.keda.svc:4317"
    metric_scaler_endpoint: str = "keda-otel-scaler.keda.svc:4318"


class AutoscalerConfig(ConfigSection):
    """Autoscaler defaults."""

    default_class: AutoscalerClass = AutoscalerClass.HPA
    default_cpu_utilization: int = Field(default=80, ge=1, le=100)


class SemanticEqualityConfig(ConfigSection):
    """Paths each reconciler ignores when comparing desired and observed.

    Paths are ``/``-separated, ``*`` matches any list index and ``~1``
    escapes a ``/`` inside a key.
    """

    ignore_fields: dict[str, list[str]] = Field(
        default_factory=lambda: {
            "Deployment": [
                "metadata/annotations/deployment.kubernetes.io~1revision",
            ],
            "Service": ["spec/clusterIP", "spec/clusterIPs"],
            "HorizontalPodAutoscaler": [],
            "ScaledObject": ["metadata/annotations/autoscaling.keda.sh~1paused"],
            "HTTPRoute": [],
            "Ingress": [],
            "OpenTelemetryCollector": [],
        }
    )

    def for_kind(self, kind: str) -> tuple[str, ...]:
        return tuple(self.ignore_fields.get(kind, ()))


class InferenceServiceConfig(ConfigSection):
    """Immutable snapshot of the cluster serving configuration."""

    ingress: IngressConfig = Field(default_factory=IngressConfig)
    storage_initializer: StorageInitializerConfig = Field(default_factory=StorageInitializerConfig)
    oauth_proxy: OauthProxyConfig = Field(default_factory=OauthProxyConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    inference_service: InferenceServiceSection = Field(default_factory=InferenceServiceSection)
    resource: ResourceDefaults = Field(default_factory=ResourceDefaults)
    otel_collector: OtelCollectorConfig = Field(default_factory=OtelCollectorConfig)
    autoscaler: AutoscalerConfig = Field(default_factory=AutoscalerConfig)
    semantic_equality: SemanticEqualityConfig = Field(default_factory=SemanticEqualityConfig)

    @classmethod
    def from_config_map(cls, data: dict[str, str]) -> InferenceServiceConfig:
        """Parse ConfigMap data where each known key holds a JSON document.

        Raises:
            ConfigError: If a section is not valid JSON or fails validation.
        """
        sections: dict[str, Any] = {}
        for field_name, field_info in cls.model_fields.items():
            key = field_info.alias or field_name
            raw = data.get(key)
            if raw is None or not raw.strip():
                continue
            try:
                sections[key] = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ConfigError(f"ConfigMap key '{key}' is not valid JSON: {e}")
        try:
            return cls.model_validate(sections)
        except ValidationError as e:
            raise ConfigError(f"Invalid serving configuration: {e}")


def load_inference_service_config(
    k8s: K8sClient, name: str, namespace: str
) -> InferenceServiceConfig:
    """Load the serving configuration, falling back to defaults when absent."""
    try:
        data = k8s.get_config_map(name, namespace)
    except NotFoundError:
        logger.warning(f"ConfigMap {namespace}/{name} not found, using default serving config")
        return InferenceServiceConfig()
    return InferenceServiceConfig.from_config_map(data)
