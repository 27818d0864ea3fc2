"""Reconcilers for HTTPRoute and Ingress objects."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from isvc_operator.clients.base import CRDs
from isvc_operator.domains.inference.config import InferenceServiceConfig, RoutingMode
from isvc_operator.reconcilers.base import ObjectReconciler
from isvc_operator.utils.context import ReconcileContext

if TYPE_CHECKING:
    from isvc_operator.clients.base import K8sClient


class RouteReconciler(ObjectReconciler):
    """Routing object that exists only in its own routing mode."""

    routing_mode: RoutingMode

    def __init__(
        self,
        k8s: K8sClient,
        desired: dict[str, Any],
        config: InferenceServiceConfig,
        active_mode: RoutingMode,
        stopped: bool = False,
        ctx: ReconcileContext | None = None,
    ) -> None:
        super().__init__(
            k8s, desired, config, ctx, present=not stopped and active_mode == self.routing_mode
        )


class HTTPRouteReconciler(RouteReconciler):
    crd = CRDs.HTTP_ROUTE
    routing_mode = RoutingMode.GATEWAY_API

    def is_ready(self) -> bool:
        """Every parent gateway has accepted the route."""
        if self.observed is None:
            return False
        parents = (self.observed.get("status") or {}).get("parents") or []
        if not parents:
            return False
        for parent in parents:
            accepted = [
                c for c in parent.get("conditions") or [] if c.get("type") == "Accepted"
            ]
            if not accepted or str(accepted[0].get("status")) != "True":
                return False
        return True


class IngressReconciler(RouteReconciler):
    crd = CRDs.INGRESS
    routing_mode = RoutingMode.INGRESS

    def is_ready(self) -> bool:
        """The ingress controller has published a load balancer address."""
        if self.observed is None:
            return False
        load_balancer = (self.observed.get("status") or {}).get("loadBalancer") or {}
        return bool(load_balancer.get("ingress"))
