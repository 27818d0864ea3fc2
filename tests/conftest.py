"""Shared fixtures: an in-memory cluster and sample InferenceServices."""

import copy
import itertools
from collections.abc import Callable
from typing import Any

import pytest

from isvc_operator.clients.base import CRDDefinition, CRDs
from isvc_operator.domains.inference.config import InferenceServiceConfig
from isvc_operator.domains.inference.crds import InferenceCRDs
from isvc_operator.domains.inference.models import InferenceService
from isvc_operator.utils.errors import (
    ClusterAPIError,
    ConflictError,
    NotFoundError,
    ResourceExistsError,
)

MUTATING_OPS = ("create", "replace", "replace_status", "delete")


class FakeCluster:
    """In-memory stand-in for K8sClient speaking the same dict interface.

    Enforces resourceVersion preconditions on replace, 404 on missing
    objects and 409 on duplicate creates, and applies a few server-side
    defaults so comparisons see realistic observed objects.
    """

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str | None, str], dict[str, Any]] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.failures: dict[tuple[str, str], ClusterAPIError] = {}
        self._rv = itertools.count(1)
        self._uid = itertools.count(1)

    # -- helpers ---------------------------------------------------------------

    def _next_rv(self) -> str:
        return str(next(self._rv))

    def _maybe_fail(self, op: str, crd: CRDDefinition) -> None:
        error = self.failures.get((op, crd.kind))
        if error is not None:
            raise error

    def _record(self, op: str, crd: CRDDefinition, name: str) -> None:
        self.calls.append((op, crd.kind, name))

    def writes(self) -> list[tuple[str, str, str]]:
        return [call for call in self.calls if call[0] in MUTATING_OPS]

    def reset_calls(self) -> None:
        self.calls.clear()

    def find(self, kind: str, name: str, namespace: str | None = "default") -> dict[str, Any] | None:
        obj = self.objects.get((kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def of_kind(self, kind: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(o) for (k, _, _), o in self.objects.items() if k == kind]

    def put(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Seed an object directly, bypassing defaults."""
        obj = copy.deepcopy(obj)
        meta = obj.setdefault("metadata", {})
        meta["resourceVersion"] = self._next_rv()
        meta.setdefault("uid", f"uid-{next(self._uid)}")
        meta.setdefault("generation", 1)
        self.objects[(obj["kind"], meta.get("namespace"), meta["name"])] = obj
        return copy.deepcopy(obj)

    def set_status(self, kind: str, name: str, status: dict[str, Any], namespace: str = "default") -> None:
        obj = self.objects[(kind, namespace, name)]
        obj["status"] = copy.deepcopy(status)
        obj["metadata"]["resourceVersion"] = self._next_rv()

    def mark_deployment_available(self, name: str, namespace: str = "default") -> None:
        obj = self.objects[("Deployment", namespace, name)]
        self.set_status(
            "Deployment",
            name,
            {
                "observedGeneration": obj["metadata"]["generation"],
                "conditions": [{"type": "Available", "status": "True"}],
            },
            namespace,
        )

    def mark_all_deployments_available(self) -> None:
        for kind, namespace, name in list(self.objects):
            if kind == "Deployment":
                self.mark_deployment_available(name, namespace or "default")

    def mark_route_accepted(self, name: str, namespace: str = "default") -> None:
        self.set_status(
            "HTTPRoute",
            name,
            {"parents": [{"conditions": [{"type": "Accepted", "status": "True"}]}]},
            namespace,
        )

    def mark_all_routes_accepted(self) -> None:
        for kind, namespace, name in list(self.objects):
            if kind == "HTTPRoute":
                self.mark_route_accepted(name, namespace or "default")
            elif kind == "Ingress":
                self.set_status(
                    "Ingress",
                    name,
                    {"loadBalancer": {"ingress": [{"ip": "10.0.0.1"}]}},
                    namespace or "default",
                )

    def _apply_defaults(self, obj: dict[str, Any]) -> None:
        kind = obj["kind"]
        spec = obj.setdefault("spec", {})
        if kind == "Service" and "clusterIP" not in spec:
            spec["clusterIP"] = f"10.96.0.{len(self.objects) + 1}"
            spec["clusterIPs"] = [spec["clusterIP"]]
            spec.setdefault("sessionAffinity", "None")
        elif kind == "Deployment":
            spec.setdefault("progressDeadlineSeconds", 600)
            spec.setdefault("revisionHistoryLimit", 10)
            annotations = obj["metadata"].setdefault("annotations", {})
            annotations.setdefault("deployment.kubernetes.io/revision", "1")

    # -- K8sClient interface ---------------------------------------------------

    def get(self, crd: CRDDefinition, name: str, namespace: str | None = None) -> dict[str, Any]:
        self._record("get", crd, name)
        self._maybe_fail("get", crd)
        obj = self.objects.get((crd.kind, namespace, name))
        if obj is None:
            raise NotFoundError(crd.kind, name, namespace)
        return copy.deepcopy(obj)

    def list_with_version(
        self,
        crd: CRDDefinition,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        self._record("list", crd, crd.plural)
        self._maybe_fail("list", crd)
        items = []
        for (kind, ns, _), obj in self.objects.items():
            if kind != crd.kind or (namespace and ns != namespace):
                continue
            labels = obj["metadata"].get("labels") or {}
            if label_selector:
                key, _, value = label_selector.partition("=")
                if key not in labels or (value and labels[key] != value):
                    continue
            items.append(copy.deepcopy(obj))
        return items, str(next(self._rv))

    def list(
        self,
        crd: CRDDefinition,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        items, _ = self.list_with_version(crd, namespace, label_selector)
        return items

    def create(
        self, crd: CRDDefinition, body: dict[str, Any], namespace: str | None = None
    ) -> dict[str, Any]:
        name = body["metadata"]["name"]
        self._record("create", crd, name)
        self._maybe_fail("create", crd)
        key = (crd.kind, namespace, name)
        if key in self.objects:
            raise ResourceExistsError(crd.kind, name, namespace)
        obj = copy.deepcopy(body)
        obj.pop("status", None)
        meta = obj["metadata"]
        meta["namespace"] = namespace
        meta["resourceVersion"] = self._next_rv()
        meta["uid"] = f"uid-{next(self._uid)}"
        meta["generation"] = 1
        self._apply_defaults(obj)
        self.objects[key] = obj
        return copy.deepcopy(obj)

    def replace(
        self, crd: CRDDefinition, body: dict[str, Any], namespace: str | None = None
    ) -> dict[str, Any]:
        name = body["metadata"]["name"]
        self._record("replace", crd, name)
        self._maybe_fail("replace", crd)
        key = (crd.kind, namespace, name)
        existing = self.objects.get(key)
        if existing is None:
            raise NotFoundError(crd.kind, name, namespace)
        if body["metadata"].get("resourceVersion") != existing["metadata"]["resourceVersion"]:
            raise ConflictError(crd.kind, name)
        obj = copy.deepcopy(body)
        meta = obj["metadata"]
        meta["uid"] = existing["metadata"]["uid"]
        meta["generation"] = existing["metadata"]["generation"]
        if obj.get("spec") != existing.get("spec"):
            meta["generation"] += 1
        meta["resourceVersion"] = self._next_rv()
        if "status" in existing:
            obj["status"] = copy.deepcopy(existing["status"])
        self._apply_defaults(obj)
        self.objects[key] = obj
        return copy.deepcopy(obj)

    def replace_status(
        self, crd: CRDDefinition, body: dict[str, Any], namespace: str | None = None
    ) -> dict[str, Any]:
        name = body["metadata"]["name"]
        self._record("replace_status", crd, name)
        self._maybe_fail("replace_status", crd)
        existing = self.objects.get((crd.kind, namespace, name))
        if existing is None:
            raise NotFoundError(crd.kind, name, namespace)
        if body["metadata"].get("resourceVersion") != existing["metadata"]["resourceVersion"]:
            raise ConflictError(crd.kind, name)
        existing["status"] = copy.deepcopy(body.get("status") or {})
        existing["metadata"]["resourceVersion"] = self._next_rv()
        return copy.deepcopy(existing)

    def delete(self, crd: CRDDefinition, name: str, namespace: str | None = None) -> None:
        self._record("delete", crd, name)
        self._maybe_fail("delete", crd)
        if self.objects.pop((crd.kind, namespace, name), None) is None:
            raise NotFoundError(crd.kind, name, namespace)

    def get_config_map(self, name: str, namespace: str) -> dict[str, str]:
        return dict(self.get(CRDs.CONFIG_MAP, name, namespace).get("data") or {})


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------


SKLEARN_RUNTIME: dict[str, Any] = {
    "apiVersion": "serving.kserve.io/v1alpha1",
    "kind": "ClusterServingRuntime",
    "metadata": {"name": "kserve-sklearnserver"},
    "spec": {
        "supportedModelFormats": [
            {"name": "sklearn", "version": "1", "autoSelect": True, "priority": 1}
        ],
        "protocolVersions": ["v1", "v2"],
        "containers": [
            {
                "name": "kserve-container",
                "image": "kserve/sklearnserver:latest",
                "args": ["--model_name={{.Name}}", "--model_dir=/mnt/models", "--http_port=8080"],
                "resources": {
                    "requests": {"cpu": "1", "memory": "2Gi"},
                    "limits": {"cpu": "1", "memory": "2Gi"},
                },
            }
        ],
    },
}

HUGGINGFACE_MULTINODE_RUNTIME: dict[str, Any] = {
    "apiVersion": "serving.kserve.io/v1alpha1",
    "kind": "ClusterServingRuntime",
    "metadata": {"name": "kserve-huggingfaceserver-multinode"},
    "spec": {
        "supportedModelFormats": [{"name": "huggingface", "version": "1", "autoSelect": True}],
        "protocolVersions": ["v2", "v1"],
        "containers": [
            {
                "name": "kserve-container",
                "image": "kserve/huggingfaceserver:latest-gpu",
                "command": ["bash", "-c"],
                "args": ["ray start --head --disable-usage-stats && python -m huggingfaceserver"],
                "resources": {
                    "requests": {"cpu": "4", "memory": "12Gi"},
                    "limits": {"cpu": "4", "memory": "12Gi"},
                },
            }
        ],
        "workerSpec": {
            "pipelineParallelSize": 2,
            "tensorParallelSize": 1,
            "containers": [
                {
                    "name": "worker-container",
                    "image": "kserve/huggingfaceserver:latest-gpu",
                    "command": ["bash", "-c"],
                    "args": ["ray start --address=$HEAD_SVC:6379 --block"],
                    "resources": {
                        "requests": {"cpu": "4", "memory": "12Gi"},
                        "limits": {"cpu": "4", "memory": "12Gi"},
                    },
                }
            ],
        },
    },
}


@pytest.fixture
def cluster() -> FakeCluster:
    """Empty in-memory cluster."""
    return FakeCluster()


@pytest.fixture
def serving_config() -> InferenceServiceConfig:
    """Default serving configuration."""
    return InferenceServiceConfig()


@pytest.fixture
def gateway_config() -> InferenceServiceConfig:
    """Serving configuration with Gateway API routing enabled."""
    return InferenceServiceConfig.from_config_map(
        {"ingress": '{"enableGatewayApi": true, "ingressDomain": "example.com"}'}
    )


@pytest.fixture
def sklearn_runtime(cluster: FakeCluster) -> dict[str, Any]:
    return cluster.put(SKLEARN_RUNTIME)


@pytest.fixture
def multinode_runtime(cluster: FakeCluster) -> dict[str, Any]:
    return cluster.put(HUGGINGFACE_MULTINODE_RUNTIME)


@pytest.fixture
def sklearn_predictor() -> dict[str, Any]:
    return {
        "model": {
            "modelFormat": {"name": "sklearn"},
            "storageUri": "gs://kfserving-examples/models/sklearn/1.0/model",
        }
    }


@pytest.fixture
def make_isvc(cluster: FakeCluster) -> Callable[..., InferenceService]:
    """Factory storing an InferenceService in the cluster and parsing it back."""

    def _make(
        name: str = "sklearn-iris",
        namespace: str = "default",
        predictor: dict[str, Any] | None = None,
        transformer: dict[str, Any] | None = None,
        explainer: dict[str, Any] | None = None,
        annotations: dict[str, str] | None = None,
        labels: dict[str, str] | None = None,
    ) -> InferenceService:
        spec: dict[str, Any] = {
            "predictor": predictor
            or {"model": {"modelFormat": {"name": "sklearn"}, "storageUri": "gs://bucket/model"}}
        }
        if transformer is not None:
            spec["transformer"] = transformer
        if explainer is not None:
            spec["explainer"] = explainer
        body = {
            "apiVersion": InferenceCRDs.INFERENCE_SERVICE.api_version,
            "kind": InferenceCRDs.INFERENCE_SERVICE.kind,
            "metadata": {
                "name": name,
                "namespace": namespace,
                "annotations": dict(annotations or {}),
                "labels": dict(labels or {}),
            },
            "spec": spec,
        }
        key = (InferenceCRDs.INFERENCE_SERVICE.kind, namespace, name)
        if key in cluster.objects:
            existing = cluster.objects[key]
            existing["metadata"]["annotations"] = body["metadata"]["annotations"]
            existing["metadata"]["labels"] = body["metadata"]["labels"]
            if existing["spec"] != spec:
                existing["spec"] = spec
                existing["metadata"]["generation"] += 1
            existing["metadata"]["resourceVersion"] = str(next(cluster._rv))
            return InferenceService.from_cr(copy.deepcopy(existing))
        return InferenceService.from_cr(cluster.put(body))

    return _make


@pytest.fixture
def refresh(cluster: FakeCluster) -> Callable[[InferenceService], InferenceService]:
    """Re-read an InferenceService from the cluster."""

    def _refresh(isvc: InferenceService) -> InferenceService:
        raw = cluster.get(InferenceCRDs.INFERENCE_SERVICE, isvc.name, isvc.namespace)
        return InferenceService.from_cr(raw)

    return _refresh
