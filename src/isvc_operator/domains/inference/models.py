"""Pydantic models for the InferenceService custom resource."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from isvc_operator.utils.annotations import ServingAnnotations
from isvc_operator.utils.errors import InvalidDesiredStateError


class CRModel(BaseModel):
    """Base for models parsed from camelCase Kubernetes objects."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        protected_namespaces=(),
    )

    def to_cr(self) -> dict[str, Any]:
        """Serialize back to the camelCase wire shape."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ComponentType(str, Enum):
    """Logical serving role within an InferenceService.

    Declaration order is the reconcile order.
    """

    PREDICTOR = "predictor"
    TRANSFORMER = "transformer"
    EXPLAINER = "explainer"

    @property
    def condition_type(self) -> str:
        """Readiness condition type for this component."""
        return f"{self.value.capitalize()}Ready"


class AutoscalerClass(str, Enum):
    """Mechanism that governs horizontal scaling of a component."""

    HPA = "hpa"
    KEDA = "keda"
    EXTERNAL = "external"
    NONE = "none"

    @classmethod
    def parse(cls, value: str | None, default: AutoscalerClass) -> AutoscalerClass:
        """Parse the autoscaler-class annotation.

        Raises:
            InvalidDesiredStateError: If the value names no known class.
        """
        if value is None or value == "":
            return default
        try:
            return cls(value.strip().lower())
        except ValueError:
            allowed = ", ".join(c.value for c in cls)
            raise InvalidDesiredStateError(
                f"[{value}] is not a supported autoscaler class type (allowed: {allowed})",
                reason="InvalidAutoscalerClass",
            )

    @property
    def owns_replicas(self) -> bool:
        """True when something other than the Deployment spec sets replicas."""
        return self in (AutoscalerClass.HPA, AutoscalerClass.KEDA, AutoscalerClass.EXTERNAL)


class DeploymentMode(str, Enum):
    """Deployment mode selected per service or cluster-wide."""

    RAW_DEPLOYMENT = "RawDeployment"
    SERVERLESS = "Serverless"
    MODEL_MESH = "ModelMesh"

    @classmethod
    def parse(cls, value: str | None, default: DeploymentMode) -> DeploymentMode:
        """Parse the deployment-mode annotation, case-insensitively."""
        if not value:
            return default
        for mode in cls:
            if mode.value.lower() == value.strip().lower():
                return mode
        raise InvalidDesiredStateError(
            f"[{value}] is not a supported deployment mode",
            reason="InvalidDeploymentMode",
        )


class ComponentState(str, Enum):
    """Lifecycle state of one component."""

    NOT_DECLARED = "NotDeclared"
    STOPPED = "Stopped"
    PROVISIONING = "Provisioning"
    READY = "Ready"
    FAILED = "Failed"


class MetricSourceType(str, Enum):
    """Kind of metric an autoscaling policy targets."""

    RESOURCE = "Resource"
    EXTERNAL = "External"
    POD_METRIC = "PodMetric"


class ConditionType:
    """Service-level condition types."""

    READY = "Ready"
    INGRESS_READY = "IngressReady"
    STOPPED = "Stopped"


# -----------------------------------------------------------------------------
# Spec
# -----------------------------------------------------------------------------


class ModelFormat(CRModel):
    """Model format a predictor serves."""

    name: str
    version: str | None = None


class MetricTarget(CRModel):
    """Target value of an autoscaling metric."""

    type: str = "Utilization"
    average_utilization: int | None = None
    average_value: str | None = None
    value: str | None = None

    @field_validator("average_value", "value", mode="before")
    @classmethod
    def quantity_as_str(cls, v: Any) -> str | None:
        """Quantities may be written as bare numbers in YAML."""
        if v is None:
            return None
        return str(v)


class ResourceMetricSource(CRModel):
    """CPU or memory metric."""

    name: str = "cpu"
    target: MetricTarget = Field(default_factory=MetricTarget)


class ExternalMetric(CRModel):
    """Query against an external metrics backend."""

    backend: str = "prometheus"
    server_address: str | None = None
    query: str = ""
    namespace: str | None = None


class ExternalMetricSource(CRModel):
    """Metric served by an external backend."""

    metric: ExternalMetric
    target: MetricTarget = Field(default_factory=lambda: MetricTarget(type="Value"))


class PodMetric(CRModel):
    """Metric scraped from the serving pods by a sidecar collector."""

    backend: str = "opentelemetry"
    metric_names: list[str] = Field(default_factory=list)
    query: str = ""
    server_address: str | None = None


class PodMetricSource(CRModel):
    """Per-pod metric collected through OpenTelemetry."""

    metric: PodMetric
    target: MetricTarget = Field(default_factory=lambda: MetricTarget(type="Value"))


class MetricSpec(CRModel):
    """One autoscaling metric."""

    type: MetricSourceType
    resource: ResourceMetricSource | None = None
    external: ExternalMetricSource | None = None
    pod_metric: PodMetricSource | None = Field(default=None, alias="podmetric")


class AutoScalingSpec(CRModel):
    """Autoscaling policy of a component."""

    metrics: list[MetricSpec] = Field(default_factory=list)


class ContainerOverrides(CRModel):
    """Container fields a component may set over the runtime defaults."""

    name: str | None = None
    image: str | None = None
    image_pull_policy: str | None = None
    command: list[str] | None = None
    args: list[str] | None = None
    working_dir: str | None = None
    env: list[dict[str, Any]] | None = None
    env_from: list[dict[str, Any]] | None = None
    resources: dict[str, Any] | None = None
    ports: list[dict[str, Any]] | None = None
    volume_mounts: list[dict[str, Any]] | None = None
    readiness_probe: dict[str, Any] | None = None
    liveness_probe: dict[str, Any] | None = None
    startup_probe: dict[str, Any] | None = None
    security_context: dict[str, Any] | None = None

    def container_dict(self) -> dict[str, Any]:
        """Container overrides in Kubernetes wire shape."""
        return self.model_dump(
            by_alias=True,
            exclude_none=True,
            mode="json",
            include=set(ContainerOverrides.model_fields),
        )


class ModelSpec(ContainerOverrides):
    """Predictor model declaration served through a runtime template."""

    model_format: ModelFormat
    runtime: str | None = None
    storage_uri: str | None = None
    protocol_version: str | None = None


class WorkerSpec(CRModel):
    """Worker topology for multi-node serving."""

    pipeline_parallel_size: int | None = Field(default=None, ge=1)
    tensor_parallel_size: int | None = Field(default=None, ge=1)
    containers: list[dict[str, Any]] = Field(default_factory=list)
    volumes: list[dict[str, Any]] | None = None
    node_selector: dict[str, str] | None = None
    tolerations: list[dict[str, Any]] | None = None


class ComponentSpec(CRModel):
    """Fields shared by predictor, transformer and explainer."""

    min_replicas: int | None = None
    max_replicas: int = 0
    scale_target: int | None = None
    scale_metric: str | None = None
    auto_scaling: AutoScalingSpec | None = None
    deployment_strategy: dict[str, Any] | None = None
    timeout: int | None = Field(default=None, ge=1)

    containers: list[dict[str, Any]] = Field(default_factory=list)
    service_account_name: str | None = None
    node_selector: dict[str, str] | None = None
    tolerations: list[dict[str, Any]] | None = None
    affinity: dict[str, Any] | None = None
    volumes: list[dict[str, Any]] | None = None
    image_pull_secrets: list[dict[str, Any]] | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)


class PredictorSpec(ComponentSpec):
    """Predictor: a runtime-backed model or custom containers."""

    model: ModelSpec | None = None
    worker_spec: WorkerSpec | None = None

    @property
    def is_multi_node(self) -> bool:
        """True when a worker topology is declared."""
        return self.worker_spec is not None


class TransformerSpec(ComponentSpec):
    """Pre/post-processing in front of the predictor."""

    pass


class ExplainerSpec(ComponentSpec):
    """Explanation server next to the predictor."""

    pass


class InferenceServiceSpec(CRModel):
    """User-declared intent."""

    predictor: PredictorSpec
    transformer: TransformerSpec | None = None
    explainer: ExplainerSpec | None = None

    def component(self, component: ComponentType) -> ComponentSpec | None:
        """Spec of a component, or None when not declared."""
        if component == ComponentType.PREDICTOR:
            return self.predictor
        if component == ComponentType.TRANSFORMER:
            return self.transformer
        return self.explainer


# -----------------------------------------------------------------------------
# Status
# -----------------------------------------------------------------------------


class Condition(CRModel):
    """Status condition."""

    type: str
    status: str = "Unknown"
    reason: str | None = None
    message: str | None = None
    severity: str = ""
    last_transition_time: str | None = None

    @property
    def is_true(self) -> bool:
        return self.status == "True"


class Addressable(CRModel):
    """In-cluster address."""

    url: str | None = None


class ComponentStatusSpec(CRModel):
    """Per-component status entry."""

    url: str | None = None
    address: Addressable | None = None
    state: ComponentState | None = None


class InferenceServiceStatus(CRModel):
    """Derived output of a reconcile pass."""

    observed_generation: int | None = None
    conditions: list[Condition] = Field(default_factory=list)
    url: str | None = None
    address: Addressable | None = None
    components: dict[str, ComponentStatusSpec] = Field(default_factory=dict)
    deployment_mode: str | None = None

    def get_condition(self, condition_type: str) -> Condition | None:
        """Find a condition by type."""
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None


class ObjectMeta(CRModel):
    """Subset of object metadata the operator reads."""

    name: str
    namespace: str = "default"
    uid: str | None = None
    generation: int | None = None
    resource_version: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    deletion_timestamp: str | None = None

    @field_validator("labels", "annotations", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return v or {}


class InferenceService(CRModel):
    """A parsed InferenceService custom resource."""

    api_version: str = "serving.kserve.io/v1beta1"
    kind: str = "InferenceService"
    metadata: ObjectMeta
    spec: InferenceServiceSpec
    status: InferenceServiceStatus = Field(default_factory=InferenceServiceStatus)

    @field_validator("status", mode="before")
    @classmethod
    def none_status(cls, v: Any) -> Any:
        return v or {}

    @classmethod
    def from_cr(cls, obj: dict[str, Any]) -> InferenceService:
        """Parse an InferenceService from its raw dict form."""
        return cls.model_validate(obj)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def stopped(self) -> bool:
        """True when the stop annotation is set."""
        return ServingAnnotations.is_true(self.metadata.annotations, ServingAnnotations.STOP)

    @property
    def being_deleted(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def declared_components(self) -> list[ComponentType]:
        """Components present in the spec, in reconcile order."""
        return [c for c in ComponentType if self.spec.component(c) is not None]

    def owner_reference(self) -> dict[str, Any]:
        """Controller owner reference pointing at this service."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.metadata.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }
