"""Tests for the multi-node placement solver."""

import copy
from collections.abc import Callable
from typing import Any

import pytest

from isvc_operator.builders.placement import (
    AMD_GPU,
    NVIDIA_GPU,
    gpu_resource_types,
    plan_for,
    plan_placement,
    probe_gpu_request,
    solve_worker_replicas,
    unknown_gpu_resources,
    validate_multi_node,
)
from isvc_operator.domains.inference.models import InferenceService
from isvc_operator.domains.runtime.models import RuntimeTemplate
from isvc_operator.utils.errors import (
    InvalidDesiredStateError,
    PlacementError,
    StorageURIError,
)


class TestSolveWorkerReplicas:
    """Test the worker count equation."""

    @pytest.mark.parametrize(
        ("pipeline", "tensor", "head", "worker", "expected"),
        [
            (2, 1, 1, 1, 1),
            (5, 1, 1, 1, 4),
            (2, 4, 4, 4, 1),
            (3, 2, 2, 4, 1),
            (2, 2, 4, 1, 0),
            (4, 2, 1, 3, 3),
        ],
    )
    def test_worker_count(
        self, pipeline: int, tensor: int, head: int, worker: int, expected: int
    ) -> None:
        """Test that head + workers * per_worker covers pipeline * tensor."""
        workers = solve_worker_replicas(pipeline, tensor, head, worker)
        assert workers == expected
        assert head + workers * worker >= pipeline * tensor

    def test_workers_without_gpus(self) -> None:
        """Test that zero-GPU workers cannot cover the shortfall."""
        with pytest.raises(PlacementError) as exc_info:
            solve_worker_replicas(4, 1, 1, 0)
        assert "requires 4 GPUs" in str(exc_info.value)
        assert exc_info.value.reason == "InsufficientGPUs"

    def test_head_alone_is_enough_even_without_worker_gpus(self) -> None:
        assert solve_worker_replicas(2, 1, 2, 0) == 0

    def test_invalid_parallelism(self) -> None:
        with pytest.raises(PlacementError) as exc_info:
            solve_worker_replicas(0, 1, 1, 1)
        assert exc_info.value.reason == "InvalidParallelism"


class TestProbeGpuRequest:
    """Test GPU request discovery."""

    def test_limits_take_precedence(self) -> None:
        resources = {"requests": {NVIDIA_GPU: "1"}, "limits": {NVIDIA_GPU: "2"}}
        assert probe_gpu_request(resources, [NVIDIA_GPU]) == (NVIDIA_GPU, 2)

    def test_requests_only(self) -> None:
        assert probe_gpu_request({"requests": {AMD_GPU: 1}}, [NVIDIA_GPU, AMD_GPU]) == (AMD_GPU, 1)

    def test_no_gpu(self) -> None:
        assert probe_gpu_request({"limits": {"cpu": "1"}}, [NVIDIA_GPU]) == (None, None)
        assert probe_gpu_request(None, [NVIDIA_GPU]) == (None, None)

    def test_non_integer_count(self) -> None:
        with pytest.raises(InvalidDesiredStateError):
            probe_gpu_request({"limits": {NVIDIA_GPU: "half"}}, [NVIDIA_GPU])


class TestGpuResourceTypes:
    """Test custom GPU resource names."""

    def test_custom_types_are_appended(self) -> None:
        types = gpu_resource_types({"serving.kserve.io/gpu-resource-types": '["example.com/tpu"]'})
        assert types[-1] == "example.com/tpu"
        assert NVIDIA_GPU in types

    def test_invalid_annotation(self) -> None:
        with pytest.raises(InvalidDesiredStateError) as exc_info:
            gpu_resource_types({"serving.kserve.io/gpu-resource-types": "tpu"})
        assert exc_info.value.reason == "InvalidGPUResourceTypes"


class TestPlanPlacement:
    """Test full placement plans."""

    def test_defaults(self) -> None:
        """Test one NVIDIA GPU per node and pipeline 2 by default."""
        plan = plan_placement(None, None, {})
        assert plan.pipeline_parallel_size == 2
        assert plan.tensor_parallel_size == 1
        assert plan.worker_replicas == 1
        assert plan.head_replicas == 1
        assert plan.head_gpu_resource == NVIDIA_GPU
        assert plan.node_count == 2

    def test_pipeline_five(self) -> None:
        """Test five pipeline stages on single-GPU nodes need four workers."""
        plan = plan_placement(None, None, {}, pipeline_parallel_size=5)
        assert plan.worker_replicas == 4
        env = {e["name"]: e["value"] for e in plan.parallelism_env()}
        assert env == {
            "PIPELINE_PARALLEL_SIZE": "5",
            "TENSOR_PARALLEL_SIZE": "1",
            "RAY_NODE_COUNT": "5",
        }

    def test_vendor_follows_declared_container(self) -> None:
        """Test that an undeclared worker GPU uses the head's vendor."""
        plan = plan_placement({"limits": {AMD_GPU: "2"}}, None, {}, 2, 2)
        assert plan.head_gpu_resource == AMD_GPU
        assert plan.worker_gpu_resource == AMD_GPU
        assert plan.head_gpus == 2
        assert plan.worker_gpus == 1
        assert plan.worker_replicas == 2


class TestValidateMultiNode:
    """Test multi-node declaration checks."""

    def _predictor(self, **overrides: Any) -> dict[str, Any]:
        model: dict[str, Any] = {
            "modelFormat": {"name": "huggingface"},
            "storageUri": "pvc://models/llama",
        }
        model.update(overrides.pop("model", {}))
        predictor: dict[str, Any] = {"model": model, "workerSpec": {}}
        predictor["workerSpec"].update(overrides.pop("worker", {}))
        return predictor

    def test_valid(self, make_isvc: Callable[..., InferenceService]) -> None:
        validate_multi_node(make_isvc(predictor=self._predictor()))

    def test_pipeline_below_two(self, make_isvc: Callable[..., InferenceService]) -> None:
        isvc = make_isvc(predictor=self._predictor(worker={"pipelineParallelSize": 1}))
        with pytest.raises(InvalidDesiredStateError, match="at least 2"):
            validate_multi_node(isvc)

    def test_two_worker_containers(self, make_isvc: Callable[..., InferenceService]) -> None:
        isvc = make_isvc(
            predictor=self._predictor(
                worker={"containers": [{"name": "a"}, {"name": "b"}]}
            )
        )
        with pytest.raises(InvalidDesiredStateError) as exc_info:
            validate_multi_node(isvc)
        assert exc_info.value.reason == "InvalidWorkerSpec"

    def test_parallelism_env_in_model(self, make_isvc: Callable[..., InferenceService]) -> None:
        isvc = make_isvc(
            predictor=self._predictor(
                model={"env": [{"name": "TENSOR_PARALLEL_SIZE", "value": "2"}]}
            )
        )
        with pytest.raises(InvalidDesiredStateError, match="workerSpec"):
            validate_multi_node(isvc)

    @pytest.mark.parametrize("uri", [None, "gs://bucket/model", "s3://bucket/model"])
    def test_storage_uri_scheme(
        self, make_isvc: Callable[..., InferenceService], uri: str | None
    ) -> None:
        """Test that only pvc:// and oci:// storage is accepted."""
        isvc = make_isvc(predictor=self._predictor(model={"storageUri": uri}))
        with pytest.raises(StorageURIError):
            validate_multi_node(isvc)

    def test_oci_storage(self, make_isvc: Callable[..., InferenceService]) -> None:
        isvc = make_isvc(predictor=self._predictor(model={"storageUri": "oci://registry/model"}))
        validate_multi_node(isvc)


class TestPlanFor:
    """Test parallel degree precedence."""

    def test_service_overrides_runtime(
        self,
        make_isvc: Callable[..., InferenceService],
        multinode_runtime: dict[str, Any],
    ) -> None:
        """Test that the service's worker spec beats the runtime's."""
        runtime = RuntimeTemplate.from_cr(multinode_runtime)
        isvc = make_isvc(
            predictor={
                "model": {"modelFormat": {"name": "huggingface"}, "storageUri": "pvc://m/llm"},
                "workerSpec": {"tensorParallelSize": 2},
            }
        )

        plan = plan_for(isvc, runtime)

        assert plan.pipeline_parallel_size == 2
        assert plan.tensor_parallel_size == 2
        assert plan.worker_replicas == 3

    def test_head_gpus_from_model_resources(
        self,
        make_isvc: Callable[..., InferenceService],
        multinode_runtime: dict[str, Any],
    ) -> None:
        isvc = make_isvc(
            predictor={
                "model": {
                    "modelFormat": {"name": "huggingface"},
                    "storageUri": "pvc://m/llm",
                    "resources": {"limits": {NVIDIA_GPU: "4"}},
                },
                "workerSpec": {
                    "pipelineParallelSize": 2,
                    "tensorParallelSize": 4,
                    "containers": [{"resources": {"limits": {NVIDIA_GPU: "4"}}}],
                },
            }
        )

        plan = plan_for(isvc, RuntimeTemplate.from_cr(multinode_runtime))

        assert plan.head_gpus == 4
        assert plan.worker_gpus == 4
        assert plan.worker_replicas == 1

    def test_runtime_head_gpus_cover_parallelism(
        self,
        make_isvc: Callable[..., InferenceService],
        multinode_runtime: dict[str, Any],
    ) -> None:
        """Test that GPUs declared by the runtime serving container count for the head."""
        runtime_cr = copy.deepcopy(multinode_runtime)
        resources = runtime_cr["spec"]["containers"][0]["resources"]
        resources["requests"][NVIDIA_GPU] = "2"
        resources["limits"][NVIDIA_GPU] = "2"
        isvc = make_isvc(
            predictor={
                "model": {"modelFormat": {"name": "huggingface"}, "storageUri": "pvc://m/llm"},
                "workerSpec": {"pipelineParallelSize": 2},
            }
        )

        plan = plan_for(isvc, RuntimeTemplate.from_cr(runtime_cr))

        assert plan.head_gpus == 2
        assert plan.worker_replicas == 0
        assert plan.node_count == 1

    def test_service_gpus_override_runtime(
        self,
        make_isvc: Callable[..., InferenceService],
        multinode_runtime: dict[str, Any],
    ) -> None:
        """Test that the service's own GPU requests beat the runtime's."""
        runtime_cr = copy.deepcopy(multinode_runtime)
        runtime_cr["spec"]["containers"][0]["resources"]["limits"][NVIDIA_GPU] = "2"
        runtime_cr["spec"]["workerSpec"]["containers"][0]["resources"]["limits"][NVIDIA_GPU] = "2"
        isvc = make_isvc(
            predictor={
                "model": {
                    "modelFormat": {"name": "huggingface"},
                    "storageUri": "pvc://m/llm",
                    "resources": {"limits": {NVIDIA_GPU: "1"}},
                },
                "workerSpec": {
                    "pipelineParallelSize": 4,
                    "containers": [{"resources": {"requests": {"cpu": "2"}}}],
                },
            }
        )

        plan = plan_for(isvc, RuntimeTemplate.from_cr(runtime_cr))

        assert plan.head_gpus == 1
        assert plan.worker_gpus == 2
        assert plan.worker_replicas == 2


class TestUnknownGpuResources:
    """Test rejection of GPU resources outside the known and custom types."""

    def _isvc(
        self, make_isvc: Callable[..., InferenceService], annotations: dict[str, str] | None = None
    ) -> InferenceService:
        return make_isvc(
            annotations=annotations,
            predictor={
                "model": {
                    "modelFormat": {"name": "huggingface"},
                    "storageUri": "pvc://m/llm",
                    "resources": {"limits": {"cpu": "4", "example.com/tpu": "1"}},
                },
                "workerSpec": {},
            },
        )

    def test_unknown_type_rejected(self, make_isvc: Callable[..., InferenceService]) -> None:
        with pytest.raises(InvalidDesiredStateError) as exc_info:
            validate_multi_node(self._isvc(make_isvc))
        assert exc_info.value.reason == "InvalidGPUResource"
        assert "example.com/tpu" in str(exc_info.value)

    def test_custom_type_from_annotation(self, make_isvc: Callable[..., InferenceService]) -> None:
        isvc = self._isvc(
            make_isvc, {"serving.kserve.io/gpu-resource-types": '["example.com/tpu"]'}
        )
        validate_multi_node(isvc)

    def test_basic_resources_are_not_gpus(self) -> None:
        resources = {
            "requests": {"cpu": "1", "memory": "1Gi", "hugepages-2Mi": "64Mi"},
            "limits": {"ephemeral-storage": "1Gi", NVIDIA_GPU: "1"},
        }
        assert unknown_gpu_resources(resources, [NVIDIA_GPU]) == []

    def test_unknown_worker_resource(self, make_isvc: Callable[..., InferenceService]) -> None:
        isvc = make_isvc(
            predictor={
                "model": {"modelFormat": {"name": "huggingface"}, "storageUri": "pvc://m/llm"},
                "workerSpec": {
                    "containers": [{"resources": {"limits": {"vendor.io/accelerator": "1"}}}]
                },
            }
        )
        with pytest.raises(InvalidDesiredStateError, match="worker container"):
            validate_multi_node(isvc)
