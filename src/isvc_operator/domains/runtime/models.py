"""Pydantic models for serving runtime templates."""

from __future__ import annotations

from typing import Any

from pydantic import Field, field_validator

from isvc_operator.domains.inference.models import CRModel, ModelFormat
from isvc_operator.utils.errors import RuntimeLookupError

SERVING_CONTAINER_NAME = "kserve-container"
WORKER_CONTAINER_NAME = "worker-container"


class SupportedModelFormat(CRModel):
    """A model format a runtime can serve."""

    name: str
    version: str | None = None
    auto_select: bool = False
    priority: int | None = None

    def matches(self, model_format: ModelFormat) -> bool:
        """Check name and (major) version compatibility."""
        if self.name.lower() != model_format.name.lower():
            return False
        if self.version is None or model_format.version is None:
            return True
        return model_format.version == self.version or model_format.version.startswith(
            f"{self.version}."
        )


class RuntimeWorkerSpec(CRModel):
    """Worker pod template shipped with a multi-node runtime."""

    pipeline_parallel_size: int | None = None
    tensor_parallel_size: int | None = None
    containers: list[dict[str, Any]] = Field(default_factory=list)
    volumes: list[dict[str, Any]] | None = None


class ServingRuntimeSpec(CRModel):
    """Spec of a ServingRuntime / ClusterServingRuntime."""

    supported_model_formats: list[SupportedModelFormat] = Field(default_factory=list)
    protocol_versions: list[str] = Field(default_factory=lambda: ["v1"])
    containers: list[dict[str, Any]] = Field(default_factory=list)
    volumes: list[dict[str, Any]] | None = None
    node_selector: dict[str, str] | None = None
    tolerations: list[dict[str, Any]] | None = None
    affinity: dict[str, Any] | None = None
    image_pull_secrets: list[dict[str, Any]] | None = None
    annotations: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    disabled: bool = False
    multi_model: bool = False
    worker_spec: RuntimeWorkerSpec | None = None

    @field_validator("protocol_versions", mode="before")
    @classmethod
    def default_protocols(cls, v: Any) -> Any:
        return v or ["v1"]


class RuntimeTemplate(CRModel):
    """A resolved runtime template."""

    name: str
    namespace: str | None = None
    spec: ServingRuntimeSpec

    @classmethod
    def from_cr(cls, obj: dict[str, Any]) -> RuntimeTemplate:
        """Build from a raw ServingRuntime or ClusterServingRuntime dict."""
        metadata = obj.get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace"),
            spec=ServingRuntimeSpec.model_validate(obj.get("spec") or {}),
        )

    @property
    def is_cluster_scoped(self) -> bool:
        return self.namespace is None

    @property
    def kind(self) -> str:
        return "ClusterServingRuntime" if self.is_cluster_scoped else "ServingRuntime"

    def format_priority(self, model_format: ModelFormat, auto_select_only: bool) -> int | None:
        """Priority of the best matching format entry, or None when unsupported."""
        best: int | None = None
        for fmt in self.spec.supported_model_formats:
            if auto_select_only and not fmt.auto_select:
                continue
            if fmt.matches(model_format):
                priority = fmt.priority or 0
                best = priority if best is None else max(best, priority)
        return best

    def supports_protocol(self, protocol: str | None) -> bool:
        if protocol is None:
            return True
        return protocol in self.spec.protocol_versions

    def serving_container(self) -> dict[str, Any]:
        """The container named by convention ``kserve-container``.

        Raises:
            RuntimeLookupError: If the runtime defines no such container.
        """
        for container in self.spec.containers:
            if container.get("name") == SERVING_CONTAINER_NAME:
                return container
        raise RuntimeLookupError(
            f"{self.kind} '{self.name}' has no container named '{SERVING_CONTAINER_NAME}'",
            reason="InvalidRuntime",
        )

    def worker_container(self) -> dict[str, Any] | None:
        """First worker container of the runtime worker template, if any."""
        if self.spec.worker_spec and self.spec.worker_spec.containers:
            return self.spec.worker_spec.containers[0]
        return None
