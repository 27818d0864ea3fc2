"""Reconcilers for the mutually exclusive autoscaler objects."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from isvc_operator.clients.base import CRDs
from isvc_operator.domains.inference.config import InferenceServiceConfig
from isvc_operator.domains.inference.models import AutoscalerClass
from isvc_operator.reconcilers.base import ObjectReconciler
from isvc_operator.utils.context import ReconcileContext

if TYPE_CHECKING:
    from isvc_operator.clients.base import K8sClient


class AutoscalerReconciler(ObjectReconciler):
    """Autoscaler object that exists only while its class is selected.

    A stopped service or any other class deletes it, so switching classes
    tears down the previous autoscaler in the same pass.
    """

    autoscaler_class: AutoscalerClass

    def __init__(
        self,
        k8s: K8sClient,
        desired: dict[str, Any],
        config: InferenceServiceConfig,
        active_class: AutoscalerClass,
        stopped: bool = False,
        ctx: ReconcileContext | None = None,
    ) -> None:
        super().__init__(
            k8s,
            desired,
            config,
            ctx,
            present=not stopped and active_class == self.autoscaler_class,
        )
        self.active_class = active_class


class HPAReconciler(AutoscalerReconciler):
    crd = CRDs.HPA
    autoscaler_class = AutoscalerClass.HPA


class ScaledObjectReconciler(AutoscalerReconciler):
    crd = CRDs.SCALED_OBJECT
    autoscaler_class = AutoscalerClass.KEDA


class OtelCollectorReconciler(ObjectReconciler):
    """Sidecar collector paired with KEDA pod-metric scaling."""

    crd = CRDs.OTEL_COLLECTOR
