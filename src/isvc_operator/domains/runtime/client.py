"""Serving runtime lookup."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from isvc_operator.domains.inference.crds import InferenceCRDs
from isvc_operator.domains.inference.models import InferenceService, ModelSpec
from isvc_operator.domains.runtime.models import RuntimeTemplate
from isvc_operator.utils.errors import NotFoundError, RuntimeLookupError

if TYPE_CHECKING:
    from isvc_operator.clients.base import K8sClient

logger = logging.getLogger(__name__)


class RuntimeClient:
    """Resolves the runtime template a predictor model runs on."""

    def __init__(self, k8s: K8sClient) -> None:
        self._k8s = k8s

    def resolve(self, isvc: InferenceService) -> RuntimeTemplate | None:
        """Resolve the predictor's runtime.

        Returns None for predictors declared with custom containers.

        Raises:
            RuntimeLookupError: If the named runtime is missing, disabled or
                incompatible, or no runtime auto-selects the model format.
        """
        model = isvc.spec.predictor.model
        if model is None:
            return None
        if model.runtime:
            return self._get_named(model, isvc.namespace, isvc.spec.predictor.is_multi_node)
        return self._auto_select(model, isvc.namespace, isvc.spec.predictor.is_multi_node)

    def _get_named(self, model: ModelSpec, namespace: str, multi_node: bool) -> RuntimeTemplate:
        """Look up a runtime by name, namespaced first."""
        name = model.runtime or ""
        try:
            runtime = RuntimeTemplate.from_cr(
                self._k8s.get(InferenceCRDs.SERVING_RUNTIME, name=name, namespace=namespace)
            )
        except NotFoundError:
            try:
                runtime = RuntimeTemplate.from_cr(
                    self._k8s.get(InferenceCRDs.CLUSTER_SERVING_RUNTIME, name=name)
                )
            except NotFoundError:
                raise RuntimeLookupError(
                    f"No ServingRuntime or ClusterServingRuntime named '{name}' found"
                )

        if runtime.spec.disabled:
            raise RuntimeLookupError(
                f"{runtime.kind} '{name}' is disabled", reason="RuntimeDisabled"
            )
        if runtime.format_priority(model.model_format, auto_select_only=False) is None:
            raise RuntimeLookupError(
                f"{runtime.kind} '{name}' does not support model format "
                f"'{model.model_format.name}'",
                reason="NoSupportingRuntime",
            )
        if not runtime.supports_protocol(model.protocol_version):
            raise RuntimeLookupError(
                f"{runtime.kind} '{name}' does not support protocol "
                f"'{model.protocol_version}'",
                reason="NoSupportingRuntime",
            )
        if multi_node and runtime.spec.multi_model:
            raise RuntimeLookupError(
                f"{runtime.kind} '{name}' is a multi-model runtime and cannot run multi-node",
                reason="InvalidRuntime",
            )
        return runtime

    def _auto_select(self, model: ModelSpec, namespace: str, multi_node: bool) -> RuntimeTemplate:
        """Pick the highest priority runtime that auto-selects the model format.

        Namespaced runtimes win ties over cluster runtimes; names break
        remaining ties so the choice is stable across passes.
        """
        candidates = [
            RuntimeTemplate.from_cr(obj)
            for obj in self._k8s.list(InferenceCRDs.SERVING_RUNTIME, namespace=namespace)
        ]
        candidates.extend(
            RuntimeTemplate.from_cr(obj)
            for obj in self._k8s.list(InferenceCRDs.CLUSTER_SERVING_RUNTIME)
        )

        ranked: list[tuple[int, int, str, RuntimeTemplate]] = []
        for runtime in candidates:
            if runtime.spec.disabled or runtime.spec.multi_model:
                continue
            if multi_node and runtime.spec.worker_spec is None:
                continue
            if not runtime.supports_protocol(model.protocol_version):
                continue
            priority = runtime.format_priority(model.model_format, auto_select_only=True)
            if priority is None:
                continue
            scope_rank = 1 if runtime.is_cluster_scoped else 0
            ranked.append((-priority, scope_rank, runtime.name, runtime))

        if not ranked:
            raise RuntimeLookupError(
                f"No runtime found to support model format '{model.model_format.name}'"
                + (" with a worker spec" if multi_node else ""),
                reason="NoSupportingRuntime",
            )

        ranked.sort(key=lambda item: item[:3])
        selected = ranked[0][3]
        logger.debug(f"Auto-selected {selected.kind} '{selected.name}' for {model.model_format.name}")
        return selected
