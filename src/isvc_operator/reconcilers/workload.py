"""Reconcilers for Deployments and Services."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from isvc_operator.clients.base import CRDs
from isvc_operator.domains.inference.config import InferenceServiceConfig
from isvc_operator.reconcilers.base import ObjectReconciler, condition_true
from isvc_operator.utils.context import ReconcileContext

if TYPE_CHECKING:
    from isvc_operator.clients.base import K8sClient


class DeploymentReconciler(ObjectReconciler):
    """Deployment of a component.

    When an autoscaler owns scaling, the replica count is left to it:
    ``spec.replicas`` is excluded from comparison and the observed value
    is carried over on update.
    """

    crd = CRDs.DEPLOYMENT

    def __init__(
        self,
        k8s: K8sClient,
        desired: dict[str, Any],
        config: InferenceServiceConfig,
        ctx: ReconcileContext | None = None,
        present: bool = True,
        preserve_replicas: bool = False,
    ) -> None:
        super().__init__(k8s, desired, config, ctx, present)
        self.preserve_replicas = preserve_replicas

    def ignore_fields(self) -> tuple[str, ...]:
        fields = super().ignore_fields()
        if self.preserve_replicas:
            return fields + ("spec/replicas",)
        return fields

    def prepare_update(self, existing: dict[str, Any]) -> dict[str, Any]:
        body = super().prepare_update(existing)
        if self.preserve_replicas:
            replicas = (existing.get("spec") or {}).get("replicas")
            if replicas is not None:
                body["spec"]["replicas"] = replicas
        return body

    def is_ready(self) -> bool:
        """Available and the latest generation has been observed."""
        if self.observed is None or not condition_true(self.observed, "Available"):
            return False
        generation = (self.observed.get("metadata") or {}).get("generation")
        observed_generation = (self.observed.get("status") or {}).get("observedGeneration")
        if generation is None or observed_generation is None:
            return True
        return observed_generation >= generation


class ServiceReconciler(ObjectReconciler):
    """Service of a component; the allocated cluster IP is immutable."""

    crd = CRDs.SERVICE

    def prepare_update(self, existing: dict[str, Any]) -> dict[str, Any]:
        body = super().prepare_update(existing)
        existing_spec = existing.get("spec") or {}
        for key in ("clusterIP", "clusterIPs"):
            if key in existing_spec:
                body["spec"][key] = existing_spec[key]
        return body
