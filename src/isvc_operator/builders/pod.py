"""Pod template assembly for component workloads.

Container fields are merged in three layers: the runtime template, then the
component's own overrides, then fields the operator injects (storage,
parallelism env, probes, sidecars). Later layers win.
"""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any

from isvc_operator.builders.common import owner_labels, propagated_annotations
from isvc_operator.domains.inference.config import InferenceServiceConfig, ResourceDefaults
from isvc_operator.domains.inference.models import (
    ComponentSpec,
    ComponentType,
    InferenceService,
    PredictorSpec,
)
from isvc_operator.domains.runtime.models import (
    SERVING_CONTAINER_NAME,
    WORKER_CONTAINER_NAME,
    RuntimeTemplate,
)
from isvc_operator.utils.annotations import ServingAnnotations
from isvc_operator.utils.errors import InvalidDesiredStateError, StorageURIError
from isvc_operator.utils.labels import ServingLabels
from isvc_operator.utils.naming import component_name, render_template

if TYPE_CHECKING:
    from isvc_operator.builders.placement import PlacementPlan

logger = logging.getLogger(__name__)

MODEL_MOUNT_PATH = "/mnt/models"
DEFAULT_HTTP_PORT = 8080

STORAGE_INITIALIZER_NAME = "storage-initializer"
STORAGE_VOLUME_NAME = "kserve-provision-location"
PVC_VOLUME_NAME = "kserve-pvc-source"
PVC_MOUNT_PATH = "/mnt/pvc"
STORAGE_URI_ENV = "STORAGE_URI"

OAUTH_PROXY_NAME = "oauth-proxy"
OAUTH_PROXY_PORT = 8443
OAUTH_TLS_VOLUME_NAME = "proxy-tls"
OAUTH_TLS_MOUNT_PATH = "/etc/tls/private"

HEAD_SVC_ENV = "HEAD_SVC"
MODEL_NAME_ENV = "MODEL_NAME"
MODEL_DIR_ENV = "MODEL_DIR"

SUPPORTED_STORAGE_SCHEMES = ("gs", "s3", "hf", "http", "https", "oci", "hdfs", "webhdfs", "pvc")

# List fields merged by key instead of replaced wholesale
_KEYED_LIST_FIELDS = {
    "env": "name",
    "ports": "containerPort",
    "volumeMounts": "mountPath",
}

# Matches the API server defaults so the probe never shows as drift
DEFAULT_READINESS_PROBE: dict[str, Any] = {
    "tcpSocket": {"port": DEFAULT_HTTP_PORT},
    "timeoutSeconds": 1,
    "periodSeconds": 10,
    "successThreshold": 1,
    "failureThreshold": 3,
}


# -----------------------------------------------------------------------------
# Merge helpers
# -----------------------------------------------------------------------------


def merge_keyed(
    base: list[dict[str, Any]], overrides: list[dict[str, Any]], key: str = "name"
) -> list[dict[str, Any]]:
    """Merge two lists of dicts; entries with the same key are replaced in place."""
    merged = [copy.deepcopy(item) for item in base]
    index = {item.get(key): i for i, item in enumerate(merged) if item.get(key) is not None}
    for item in overrides:
        item_key = item.get(key)
        if item_key is not None and item_key in index:
            merged[index[item_key]] = copy.deepcopy(item)
        else:
            merged.append(copy.deepcopy(item))
            if item_key is not None:
                index[item_key] = len(merged) - 1
    return merged


def merge_resources(
    base: dict[str, Any] | None, override: dict[str, Any] | None
) -> dict[str, Any]:
    """Merge resource requirements per section (requests, limits)."""
    merged = copy.deepcopy(base or {})
    for section, values in (override or {}).items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(copy.deepcopy(values))
        else:
            merged[section] = copy.deepcopy(values)
    return merged


def merge_container(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Overlay ``override`` onto ``base``.

    Args are appended, env/ports/volumeMounts are merged by key, resources
    are merged per section and every other field is replaced.
    """
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if value is None:
            continue
        if key == "args":
            merged["args"] = list(merged.get("args") or []) + list(value)
        elif key == "resources":
            merged["resources"] = merge_resources(merged.get("resources"), value)
        elif key in _KEYED_LIST_FIELDS:
            merged[key] = merge_keyed(merged.get(key) or [], value, _KEYED_LIST_FIELDS[key])
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def set_env(container: dict[str, Any], name: str, value: str) -> None:
    """Set an env var, replacing any existing entry of the same name."""
    container["env"] = merge_keyed(container.get("env") or [], [{"name": name, "value": value}])


def get_env(container: dict[str, Any], name: str) -> str | None:
    for env in container.get("env") or []:
        if env.get("name") == name:
            return env.get("value")
    return None


def apply_resource_defaults(container: dict[str, Any], defaults: ResourceDefaults) -> None:
    """Fill in cpu and memory requests/limits the container leaves unset.

    A missing limit follows the declared request (and vice versa) so that
    defaults never produce a request above its limit.
    """
    resources = container.setdefault("resources", {})
    requests = resources.setdefault("requests", {})
    limits = resources.setdefault("limits", {})
    for name, default_request, default_limit in (
        ("cpu", defaults.cpu_request, defaults.cpu_limit),
        ("memory", defaults.memory_request, defaults.memory_limit),
    ):
        if name not in requests and name not in limits:
            requests[name] = default_request
            limits[name] = default_limit
        elif name not in limits:
            limits[name] = requests[name]
        elif name not in requests:
            requests[name] = limits[name]


def set_gpu_resource(container: dict[str, Any], resource_name: str, count: int) -> None:
    """Pin a GPU request and limit on the container."""
    resources = container.setdefault("resources", {})
    resources.setdefault("requests", {})[resource_name] = str(count)
    resources.setdefault("limits", {})[resource_name] = str(count)


def render_container(container: dict[str, Any], isvc: InferenceService) -> dict[str, Any]:
    """Expand ``{{ .Name }}``-style placeholders in command, args and env values."""
    rendered = copy.deepcopy(container)

    def _render(value: str) -> str:
        return render_template(
            value,
            name=isvc.name,
            namespace=isvc.namespace,
            labels=isvc.metadata.labels,
            annotations=isvc.metadata.annotations,
        )

    for key in ("command", "args"):
        if rendered.get(key):
            rendered[key] = [_render(str(item)) for item in rendered[key]]
    for env in rendered.get("env") or []:
        if isinstance(env.get("value"), str):
            env["value"] = _render(env["value"])
    return rendered


def _add_volume(pod_spec: dict[str, Any], volume: dict[str, Any]) -> None:
    pod_spec["volumes"] = merge_keyed(pod_spec.get("volumes") or [], [volume])


def _add_volume_mount(container: dict[str, Any], mount: dict[str, Any]) -> None:
    container["volumeMounts"] = merge_keyed(
        container.get("volumeMounts") or [], [mount], key="mountPath"
    )


# -----------------------------------------------------------------------------
# Storage
# -----------------------------------------------------------------------------


def storage_scheme(storage_uri: str) -> str:
    """Scheme of a storage URI.

    Raises:
        StorageURIError: If the URI has no scheme or an unsupported one.
    """
    scheme, sep, rest = storage_uri.partition("://")
    if not sep or not rest:
        raise StorageURIError(f"Storage URI '{storage_uri}' has no scheme")
    if scheme not in SUPPORTED_STORAGE_SCHEMES:
        raise StorageURIError(
            f"Storage URI scheme '{scheme}' is not supported "
            f"(supported: {', '.join(SUPPORTED_STORAGE_SCHEMES)})"
        )
    return scheme


def parse_pvc_uri(storage_uri: str) -> tuple[str, str]:
    """Split ``pvc://<claim>/<path>`` into claim name and sub path."""
    claim, _, sub_path = storage_uri[len("pvc://") :].partition("/")
    if not claim:
        raise StorageURIError(f"Storage URI '{storage_uri}' names no PersistentVolumeClaim")
    return claim, sub_path.strip("/")


def _storage_initializer(
    source: str, config: InferenceServiceConfig, extra_mounts: list[dict[str, Any]]
) -> dict[str, Any]:
    init = config.storage_initializer
    return {
        "name": STORAGE_INITIALIZER_NAME,
        "image": init.image,
        "args": [source, MODEL_MOUNT_PATH],
        "resources": {
            "requests": {"cpu": init.cpu_request, "memory": init.memory_request},
            "limits": {"cpu": init.cpu_limit, "memory": init.memory_limit},
        },
        "volumeMounts": extra_mounts + [{"name": STORAGE_VOLUME_NAME, "mountPath": MODEL_MOUNT_PATH}],
    }


def inject_storage(
    pod_spec: dict[str, Any],
    container: dict[str, Any],
    storage_uri: str,
    config: InferenceServiceConfig,
) -> None:
    """Make the model at ``storage_uri`` available under ``/mnt/models``.

    PVC sources are mounted directly when allowed by configuration; every
    other source is downloaded by the storage-initializer init container
    into a shared emptyDir.
    """
    scheme = storage_scheme(storage_uri)
    if scheme == "pvc":
        claim, sub_path = parse_pvc_uri(storage_uri)
        _add_volume(
            pod_spec,
            {
                "name": PVC_VOLUME_NAME,
                "persistentVolumeClaim": {"claimName": claim, "readOnly": True},
            },
        )
        if config.storage_initializer.enable_direct_pvc_volume_mount:
            mount: dict[str, Any] = {
                "name": PVC_VOLUME_NAME,
                "mountPath": MODEL_MOUNT_PATH,
                "readOnly": True,
            }
            if sub_path:
                mount["subPath"] = sub_path
            _add_volume_mount(container, mount)
            return
        source = f"{PVC_MOUNT_PATH}/{sub_path}" if sub_path else PVC_MOUNT_PATH
        init_mounts = [{"name": PVC_VOLUME_NAME, "mountPath": PVC_MOUNT_PATH, "readOnly": True}]
    else:
        source = storage_uri
        init_mounts = []

    _add_volume(pod_spec, {"name": STORAGE_VOLUME_NAME, "emptyDir": {}})
    pod_spec["initContainers"] = merge_keyed(
        pod_spec.get("initContainers") or [],
        [_storage_initializer(source, config, init_mounts)],
    )
    _add_volume_mount(
        container, {"name": STORAGE_VOLUME_NAME, "mountPath": MODEL_MOUNT_PATH, "readOnly": True}
    )


# -----------------------------------------------------------------------------
# Sidecars
# -----------------------------------------------------------------------------


def serving_cert_secret(service_name: str) -> str:
    """Secret holding the serving certificate for the auth proxy."""
    return f"{service_name}-serving-cert"


def inject_oauth_proxy(
    pod_spec: dict[str, Any], service_name: str, config: InferenceServiceConfig
) -> None:
    """Add the auth proxy sidecar in front of the serving port."""
    proxy = config.oauth_proxy
    service_account = pod_spec.get("serviceAccountName") or "default"
    sidecar = {
        "name": OAUTH_PROXY_NAME,
        "image": proxy.image,
        "args": [
            f"--https-address=:{OAUTH_PROXY_PORT}",
            "--provider=openshift",
            "--skip-provider-button",
            f"--openshift-service-account={service_account}",
            f"--upstream=http://localhost:{DEFAULT_HTTP_PORT}",
            f"--tls-cert={OAUTH_TLS_MOUNT_PATH}/tls.crt",
            f"--tls-key={OAUTH_TLS_MOUNT_PATH}/tls.key",
        ],
        "ports": [{"containerPort": OAUTH_PROXY_PORT, "name": "https", "protocol": "TCP"}],
        "resources": {
            "requests": {"cpu": proxy.cpu_request, "memory": proxy.memory_request},
            "limits": {"cpu": proxy.cpu_limit, "memory": proxy.memory_limit},
        },
        "volumeMounts": [{"name": OAUTH_TLS_VOLUME_NAME, "mountPath": OAUTH_TLS_MOUNT_PATH}],
    }
    pod_spec["containers"] = merge_keyed(pod_spec.get("containers") or [], [sidecar])
    _add_volume(
        pod_spec,
        {"name": OAUTH_TLS_VOLUME_NAME, "secret": {"secretName": serving_cert_secret(service_name)}},
    )


# -----------------------------------------------------------------------------
# Pod templates
# -----------------------------------------------------------------------------


def _finish_serving_container(container: dict[str, Any], config: InferenceServiceConfig) -> None:
    container["name"] = SERVING_CONTAINER_NAME
    if not container.get("image"):
        raise InvalidDesiredStateError(
            "The serving container has no image", reason="MissingContainerImage"
        )
    if not container.get("ports"):
        container["ports"] = [{"containerPort": DEFAULT_HTTP_PORT, "name": "http1", "protocol": "TCP"}]
    if "readinessProbe" not in container:
        container["readinessProbe"] = copy.deepcopy(DEFAULT_READINESS_PROBE)
    apply_resource_defaults(container, config.resource)


def _base_pod_spec(spec: ComponentSpec, runtime: RuntimeTemplate | None) -> dict[str, Any]:
    """Pod-level fields: runtime values overlaid by the component's."""
    pod_spec: dict[str, Any] = {}
    if runtime is not None:
        rt = runtime.spec
        if rt.volumes:
            pod_spec["volumes"] = copy.deepcopy(rt.volumes)
        if rt.node_selector:
            pod_spec["nodeSelector"] = dict(rt.node_selector)
        if rt.tolerations:
            pod_spec["tolerations"] = copy.deepcopy(rt.tolerations)
        if rt.affinity:
            pod_spec["affinity"] = copy.deepcopy(rt.affinity)
        if rt.image_pull_secrets:
            pod_spec["imagePullSecrets"] = copy.deepcopy(rt.image_pull_secrets)

    if spec.volumes:
        pod_spec["volumes"] = merge_keyed(pod_spec.get("volumes") or [], spec.volumes)
    if spec.node_selector:
        pod_spec["nodeSelector"] = {**pod_spec.get("nodeSelector", {}), **spec.node_selector}
    if spec.tolerations:
        pod_spec["tolerations"] = copy.deepcopy(spec.tolerations)
    if spec.affinity:
        pod_spec["affinity"] = copy.deepcopy(spec.affinity)
    if spec.image_pull_secrets:
        pod_spec["imagePullSecrets"] = copy.deepcopy(spec.image_pull_secrets)
    if spec.service_account_name:
        pod_spec["serviceAccountName"] = spec.service_account_name
    return pod_spec


def _template_metadata(
    isvc: InferenceService,
    component: ComponentType,
    app_name: str,
    spec: ComponentSpec,
    runtime: RuntimeTemplate | None,
    config: InferenceServiceConfig,
    extra_labels: dict[str, str] | None = None,
    extra_annotations: dict[str, str] | None = None,
) -> dict[str, Any]:
    labels: dict[str, str] = {}
    annotations: dict[str, str] = {}
    if runtime is not None:
        labels.update(runtime.spec.labels)
        annotations.update(runtime.spec.annotations)
    labels.update(isvc.metadata.labels)
    labels.update(spec.labels)
    labels.update(owner_labels(isvc, component, app_name))
    labels.update(extra_labels or {})
    annotations.update(propagated_annotations(isvc, config))
    annotations.update(spec.annotations)
    annotations.update(extra_annotations or {})

    meta: dict[str, Any] = {"labels": labels}
    if annotations:
        meta["annotations"] = annotations
    return meta


def predictor_container(
    isvc: InferenceService,
    predictor: PredictorSpec,
    runtime: RuntimeTemplate | None,
) -> dict[str, Any]:
    """Serving container as declared: the runtime template overlaid by the predictor."""
    if predictor.model is not None:
        if runtime is None:
            raise InvalidDesiredStateError(
                "A model predictor requires a serving runtime", reason="RuntimeNotRecognized"
            )
        base = render_container(runtime.serving_container(), isvc)
        return merge_container(base, predictor.model.container_dict())
    if not predictor.containers:
        raise InvalidDesiredStateError(
            "Predictor declares neither a model nor containers", reason="MissingPredictor"
        )
    return copy.deepcopy(predictor.containers[0])


def _custom_container(
    isvc: InferenceService, component: ComponentType, spec: ComponentSpec, predictor_host: str | None
) -> dict[str, Any]:
    if not spec.containers:
        raise InvalidDesiredStateError(
            f"The {component.value} declares no containers", reason="MissingContainer"
        )
    container = copy.deepcopy(spec.containers[0])
    args = list(container.get("args") or [])
    injected = [f"--model_name={isvc.name}", f"--http_port={DEFAULT_HTTP_PORT}"]
    if predictor_host:
        injected.insert(1, f"--predictor_host={predictor_host}")
    for arg in injected:
        flag = arg.split("=", 1)[0]
        if not any(a == flag or a.startswith(f"{flag}=") for a in args):
            args.append(arg)
    container["args"] = args
    return container


def build_pod_template(
    isvc: InferenceService,
    component: ComponentType,
    config: InferenceServiceConfig,
    runtime: RuntimeTemplate | None = None,
    predictor_host: str | None = None,
    plan: PlacementPlan | None = None,
    otel_collector: str | None = None,
) -> dict[str, Any]:
    """Build the pod template for a component (the head node when multi-node).

    Args:
        isvc: The owning service.
        component: Which component to build.
        config: Serving configuration snapshot.
        runtime: Resolved runtime template for a model predictor.
        predictor_host: Internal predictor host passed to transformer/explainer.
        plan: Placement plan when the predictor is multi-node.
        otel_collector: Name of the sidecar collector to inject, if any.

    Raises:
        InvalidDesiredStateError: If the component cannot be turned into a pod.
    """
    spec = isvc.spec.component(component)
    if spec is None:
        raise InvalidDesiredStateError(f"The {component.value} is not declared")
    name = component_name(isvc.name, component)

    storage_uri: str | None = None
    if isinstance(spec, PredictorSpec):
        container = predictor_container(isvc, spec, runtime)
        storage_uri = spec.model.storage_uri if spec.model is not None else get_env(
            container, STORAGE_URI_ENV
        )
        pod_spec = _base_pod_spec(spec, runtime)
    else:
        container = _custom_container(isvc, component, spec, predictor_host)
        storage_uri = get_env(container, STORAGE_URI_ENV)
        pod_spec = _base_pod_spec(spec, None)

    _finish_serving_container(container, config)

    extra_labels: dict[str, str] = {}
    if plan is not None:
        extra_labels[ServingLabels.MULTINODE_ROLE] = ServingLabels.ROLE_HEAD
        for env in plan.parallelism_env():
            set_env(container, env["name"], env["value"])
        set_env(container, MODEL_NAME_ENV, isvc.name)
        set_env(container, MODEL_DIR_ENV, MODEL_MOUNT_PATH)
        set_gpu_resource(container, plan.head_gpu_resource, plan.head_gpus)

    if storage_uri:
        inject_storage(pod_spec, container, storage_uri, config)

    sidecars = [copy.deepcopy(c) for c in spec.containers[1:]]
    pod_spec["containers"] = [container] + sidecars

    if ServingAnnotations.is_true(isvc.metadata.annotations, ServingAnnotations.ENABLE_AUTH):
        inject_oauth_proxy(pod_spec, name, config)

    extra_annotations: dict[str, str] = {}
    if otel_collector:
        extra_annotations[ServingAnnotations.OTEL_SIDECAR_INJECT] = otel_collector

    return {
        "metadata": _template_metadata(
            isvc, component, name, spec, runtime, config, extra_labels, extra_annotations
        ),
        "spec": pod_spec,
    }


def worker_container(isvc: InferenceService, runtime: RuntimeTemplate | None) -> dict[str, Any]:
    """Worker container as declared: the runtime worker overlaid by the service's."""
    worker_spec = isvc.spec.predictor.worker_spec
    base: dict[str, Any] = {}
    if runtime is not None and runtime.worker_container() is not None:
        base = render_container(runtime.worker_container() or {}, isvc)
    if worker_spec is None or not worker_spec.containers:
        return base
    return merge_container(base, worker_spec.containers[0])


def build_worker_pod_template(
    isvc: InferenceService,
    config: InferenceServiceConfig,
    runtime: RuntimeTemplate | None,
    plan: PlacementPlan,
    worker_app_name: str,
    head_service: str,
) -> dict[str, Any]:
    """Build the pod template for multi-node worker replicas."""
    predictor = isvc.spec.predictor
    worker_spec = predictor.worker_spec
    if worker_spec is None:
        raise InvalidDesiredStateError("The predictor declares no worker topology")

    container = worker_container(isvc, runtime)
    container["name"] = WORKER_CONTAINER_NAME
    if not container.get("image"):
        raise InvalidDesiredStateError(
            "The worker container has no image", reason="MissingContainerImage"
        )
    apply_resource_defaults(container, config.resource)
    for env in plan.parallelism_env():
        set_env(container, env["name"], env["value"])
    set_env(container, HEAD_SVC_ENV, head_service)
    set_env(container, MODEL_NAME_ENV, isvc.name)
    set_env(container, MODEL_DIR_ENV, MODEL_MOUNT_PATH)
    set_gpu_resource(container, plan.worker_gpu_resource, plan.worker_gpus)

    pod_spec = _base_pod_spec(predictor, runtime)
    if runtime is not None and runtime.spec.worker_spec and runtime.spec.worker_spec.volumes:
        pod_spec["volumes"] = merge_keyed(
            pod_spec.get("volumes") or [], runtime.spec.worker_spec.volumes
        )
    if worker_spec.volumes:
        pod_spec["volumes"] = merge_keyed(pod_spec.get("volumes") or [], worker_spec.volumes)
    if worker_spec.node_selector:
        pod_spec["nodeSelector"] = {**pod_spec.get("nodeSelector", {}), **worker_spec.node_selector}
    if worker_spec.tolerations:
        pod_spec["tolerations"] = copy.deepcopy(worker_spec.tolerations)

    storage_uri = predictor.model.storage_uri if predictor.model is not None else None
    if storage_uri:
        inject_storage(pod_spec, container, storage_uri, config)
    pod_spec["containers"] = [container]

    return {
        "metadata": _template_metadata(
            isvc,
            ComponentType.PREDICTOR,
            worker_app_name,
            predictor,
            runtime,
            config,
            extra_labels={ServingLabels.MULTINODE_ROLE: ServingLabels.ROLE_WORKER},
        ),
        "spec": pod_spec,
    }
