"""Multi-node placement solver.

Given pipeline and tensor parallel degrees and the GPUs each head and
worker container requests, compute how many worker nodes are needed so
that ``head + workers * per_worker >= pipeline * tensor``. The head node
always runs exactly one replica.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any

from isvc_operator.builders.pod import predictor_container, worker_container
from isvc_operator.domains.inference.models import InferenceService
from isvc_operator.domains.runtime.models import RuntimeTemplate
from isvc_operator.utils.annotations import ServingAnnotations
from isvc_operator.utils.errors import InvalidDesiredStateError, PlacementError, StorageURIError

NVIDIA_GPU = "nvidia.com/gpu"
AMD_GPU = "amd.com/gpu"
INTEL_GPU = "intel.com/gpu"
GAUDI_GPU = "habana.ai/gaudi"

GPU_RESOURCE_TYPES = (NVIDIA_GPU, AMD_GPU, INTEL_GPU, GAUDI_GPU)

# Resources that are never accelerators
BASIC_RESOURCE_TYPES = frozenset({"cpu", "memory", "storage", "ephemeral-storage"})
HUGEPAGES_PREFIX = "hugepages-"

DEFAULT_PIPELINE_PARALLEL_SIZE = 2
DEFAULT_TENSOR_PARALLEL_SIZE = 1
DEFAULT_GPUS_PER_NODE = 1

PIPELINE_PARALLEL_SIZE_ENV = "PIPELINE_PARALLEL_SIZE"
TENSOR_PARALLEL_SIZE_ENV = "TENSOR_PARALLEL_SIZE"
RAY_NODE_COUNT_ENV = "RAY_NODE_COUNT"


@dataclass(frozen=True)
class PlacementPlan:
    """Head/worker replica and GPU assignment for one predictor."""

    pipeline_parallel_size: int
    tensor_parallel_size: int
    head_gpus: int
    worker_gpus: int
    head_gpu_resource: str
    worker_gpu_resource: str
    worker_replicas: int
    head_replicas: int = 1

    @property
    def required_gpus(self) -> int:
        return self.pipeline_parallel_size * self.tensor_parallel_size

    @property
    def node_count(self) -> int:
        """Total Ray nodes: the head plus every worker."""
        return self.head_replicas + self.worker_replicas

    def parallelism_env(self) -> list[dict[str, str]]:
        """Env shared by head and worker so both agree on the topology."""
        return [
            {"name": PIPELINE_PARALLEL_SIZE_ENV, "value": str(self.pipeline_parallel_size)},
            {"name": TENSOR_PARALLEL_SIZE_ENV, "value": str(self.tensor_parallel_size)},
            {"name": RAY_NODE_COUNT_ENV, "value": str(self.node_count)},
        ]


def gpu_resource_types(annotations: dict[str, str]) -> list[str]:
    """Known GPU resource names plus custom ones from the annotation.

    The annotation holds a JSON list, e.g. ``["example.com/tpu"]``.
    """
    raw = annotations.get(ServingAnnotations.GPU_RESOURCE_TYPES)
    types = list(GPU_RESOURCE_TYPES)
    if not raw:
        return types
    try:
        custom = json.loads(raw)
    except json.JSONDecodeError:
        custom = None
    if not isinstance(custom, list) or not all(isinstance(t, str) and t for t in custom):
        raise InvalidDesiredStateError(
            f"Annotation {ServingAnnotations.GPU_RESOURCE_TYPES} must be a JSON list of "
            f"resource names, got {raw!r}",
            reason="InvalidGPUResourceTypes",
        )
    for name in custom:
        if name not in types:
            types.append(name)
    return types


def probe_gpu_request(
    resources: dict[str, Any] | None, resource_types: list[str]
) -> tuple[str | None, int | None]:
    """Find the GPU resource a container asks for.

    Limits take precedence over requests, mirroring how the scheduler
    treats extended resources.
    """
    if not resources:
        return None, None
    for section in ("limits", "requests"):
        values = resources.get(section) or {}
        for name in resource_types:
            if name in values:
                try:
                    count = int(str(values[name]))
                except ValueError:
                    raise InvalidDesiredStateError(
                        f"GPU resource {name}={values[name]!r} is not an integer",
                        reason="InvalidGPUResource",
                    )
                if count < 0:
                    raise InvalidDesiredStateError(
                        f"GPU resource {name} must not be negative", reason="InvalidGPUResource"
                    )
                return name, count
    return None, None


def unknown_gpu_resources(
    resources: dict[str, Any] | None, resource_types: list[str]
) -> list[str]:
    """Extended resource names that are neither basic nor a known GPU type."""
    unknown: set[str] = set()
    for section in ("limits", "requests"):
        for name in (resources or {}).get(section) or {}:
            if name in BASIC_RESOURCE_TYPES or name.startswith(HUGEPAGES_PREFIX):
                continue
            if name not in resource_types:
                unknown.add(name)
    return sorted(unknown)


def check_gpu_resources(
    resources: dict[str, Any] | None, resource_types: list[str], where: str
) -> None:
    """Reject GPU resources not listed in the gpu-resource-types annotation.

    Raises:
        InvalidDesiredStateError: If an unknown resource is requested.
    """
    unknown = unknown_gpu_resources(resources, resource_types)
    if unknown:
        raise InvalidDesiredStateError(
            f"The {where} requests unknown GPU resource types {unknown}; list custom types in "
            f"the {ServingAnnotations.GPU_RESOURCE_TYPES} annotation",
            reason="InvalidGPUResource",
        )


def solve_worker_replicas(
    pipeline_parallel_size: int,
    tensor_parallel_size: int,
    head_gpus: int,
    worker_gpus: int,
) -> int:
    """Number of worker nodes needed for ``pipeline * tensor`` GPUs.

    Rounding up may over-provision; that is accepted.

    Raises:
        PlacementError: If workers provide no GPUs and the head alone is short.
    """
    if pipeline_parallel_size < 1 or tensor_parallel_size < 1:
        raise PlacementError(
            "pipelineParallelSize and tensorParallelSize must be at least 1",
            reason="InvalidParallelism",
        )
    required = pipeline_parallel_size * tensor_parallel_size
    if head_gpus >= required:
        return 0
    if worker_gpus <= 0:
        raise PlacementError(
            f"Parallelism requires {required} GPUs (pipeline {pipeline_parallel_size} x "
            f"tensor {tensor_parallel_size}) but only {head_gpus} are available on the head "
            f"node and worker nodes provide 0 GPUs each"
        )
    return math.ceil((required - head_gpus) / worker_gpus)


def plan_placement(
    head_resources: dict[str, Any] | None,
    worker_resources: dict[str, Any] | None,
    annotations: dict[str, str],
    pipeline_parallel_size: int | None = None,
    tensor_parallel_size: int | None = None,
) -> PlacementPlan:
    """Build the placement plan for a multi-node predictor.

    GPU counts are probed independently on the head and worker containers;
    an undeclared count defaults to one GPU of whichever vendor the other
    container uses, or NVIDIA when neither declares one.
    """
    types = gpu_resource_types(annotations)
    head_name, head_count = probe_gpu_request(head_resources, types)
    worker_name, worker_count = probe_gpu_request(worker_resources, types)

    fallback_name = head_name or worker_name or NVIDIA_GPU
    head_name = head_name or fallback_name
    worker_name = worker_name or fallback_name
    head_gpus = DEFAULT_GPUS_PER_NODE if head_count is None else head_count
    worker_gpus = DEFAULT_GPUS_PER_NODE if worker_count is None else worker_count

    pipeline = pipeline_parallel_size or DEFAULT_PIPELINE_PARALLEL_SIZE
    tensor = tensor_parallel_size or DEFAULT_TENSOR_PARALLEL_SIZE

    workers = solve_worker_replicas(pipeline, tensor, head_gpus, worker_gpus)
    return PlacementPlan(
        pipeline_parallel_size=pipeline,
        tensor_parallel_size=tensor,
        head_gpus=head_gpus,
        worker_gpus=worker_gpus,
        head_gpu_resource=head_name,
        worker_gpu_resource=worker_name,
        worker_replicas=workers,
    )


def validate_multi_node(isvc: InferenceService) -> None:
    """Reject multi-node declarations the placement cannot honour.

    Raises:
        InvalidDesiredStateError: On any invalid worker declaration.
    """
    predictor = isvc.spec.predictor
    worker_spec = predictor.worker_spec
    if worker_spec is None:
        return
    if len(worker_spec.containers) > 1:
        raise InvalidDesiredStateError(
            f"InferenceService '{isvc.name}' declares more than one worker container",
            reason="InvalidWorkerSpec",
        )
    if worker_spec.pipeline_parallel_size is not None and worker_spec.pipeline_parallel_size < 2:
        raise InvalidDesiredStateError(
            f"pipelineParallelSize must be at least 2 (head + worker), "
            f"got {worker_spec.pipeline_parallel_size}",
            reason="InvalidWorkerSpec",
        )
    types = gpu_resource_types(isvc.metadata.annotations)
    for container in worker_spec.containers:
        check_gpu_resources(container.get("resources"), types, "worker container")
    model = predictor.model
    if model is None:
        return
    check_gpu_resources(model.resources, types, "model container")
    for env in model.env or []:
        if env.get("name") in (PIPELINE_PARALLEL_SIZE_ENV, TENSOR_PARALLEL_SIZE_ENV):
            raise InvalidDesiredStateError(
                f"Set {env['name']} through workerSpec instead of the model env",
                reason="InvalidWorkerSpec",
            )
    if not model.storage_uri:
        raise StorageURIError(
            f"InferenceService '{isvc.name}' uses multi-node serving but has no storageUri"
        )
    scheme = model.storage_uri.split("://", 1)[0]
    if scheme not in ("pvc", "oci"):
        raise StorageURIError(
            f"Multi-node serving only supports pvc:// and oci:// storage, got '{scheme}'"
        )


def plan_for(isvc: InferenceService, runtime: RuntimeTemplate | None) -> PlacementPlan:
    """Placement plan for a multi-node predictor.

    Parallel degrees come from the service's worker spec, then the
    runtime's worker spec, then the defaults. GPU counts come from the
    head and worker containers after the runtime template is overlaid by
    the service's own declarations.
    """
    predictor = isvc.spec.predictor
    worker_spec = predictor.worker_spec
    if worker_spec is None:
        raise InvalidDesiredStateError("The predictor declares no worker topology")
    validate_multi_node(isvc)

    runtime_workers = runtime.spec.worker_spec if runtime is not None else None
    pipeline = worker_spec.pipeline_parallel_size or (
        runtime_workers.pipeline_parallel_size if runtime_workers else None
    )
    tensor = worker_spec.tensor_parallel_size or (
        runtime_workers.tensor_parallel_size if runtime_workers else None
    )

    # GPUs are probed on the merged containers so runtime defaults count
    head_resources = predictor_container(isvc, predictor, runtime).get("resources")
    worker_resources = worker_container(isvc, runtime).get("resources")

    return plan_placement(
        head_resources,
        worker_resources,
        isvc.metadata.annotations,
        pipeline_parallel_size=pipeline,
        tensor_parallel_size=tensor,
    )
