"""Per-component orchestration.

A component (predictor, transformer or explainer) owns a fixed set of
objects. Each pass builds all desired bodies first, so an invalid
declaration fails the component before anything is written, then runs the
object reconcilers in dependency order and derives the component state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from isvc_operator.builders.autoscaler import (
    build_hpa,
    build_scaled_object,
    needs_otel_collector,
    pod_metric_names,
)
from isvc_operator.builders.common import skeleton
from isvc_operator.builders.deployment import RECREATE_STRATEGY, build_deployment, replica_range
from isvc_operator.builders.otel import build_otel_collector
from isvc_operator.builders.placement import PlacementPlan, plan_for
from isvc_operator.builders.pod import build_pod_template, build_worker_pod_template
from isvc_operator.builders.routing import (
    build_component_http_route,
    build_component_ingress,
    component_hosts,
    route_url,
)
from isvc_operator.builders.service import build_headless_service, build_service
from isvc_operator.clients.base import CRDs
from isvc_operator.domains.inference.config import InferenceServiceConfig, RoutingMode
from isvc_operator.domains.inference.models import (
    AutoscalerClass,
    ComponentSpec,
    ComponentState,
    ComponentType,
    InferenceService,
)
from isvc_operator.domains.runtime.client import RuntimeClient
from isvc_operator.domains.runtime.models import RuntimeTemplate
from isvc_operator.reconcilers.autoscaling import (
    HPAReconciler,
    OtelCollectorReconciler,
    ScaledObjectReconciler,
)
from isvc_operator.reconcilers.base import ObjectReconciler, Verdict
from isvc_operator.reconcilers.routing import (
    HTTPRouteReconciler,
    IngressReconciler,
    RouteReconciler,
)
from isvc_operator.reconcilers.workload import DeploymentReconciler, ServiceReconciler
from isvc_operator.utils.annotations import ServingAnnotations
from isvc_operator.utils.context import ReconcileContext
from isvc_operator.utils.errors import InvalidDesiredStateError
from isvc_operator.utils.labels import ServingLabels
from isvc_operator.utils.naming import component_name, head_service_name, internal_host, worker_name

if TYPE_CHECKING:
    from isvc_operator.clients.base import K8sClient

logger = logging.getLogger(__name__)

STOPPED_REASON = "Stopped"


@dataclass
class ComponentResult:
    """Outcome of reconciling one component."""

    component: ComponentType
    state: ComponentState
    reason: str | None = None
    message: str | None = None
    url: str | None = None
    address: str | None = None
    verdicts: dict[str, Verdict] = field(default_factory=dict)
    error: Exception | None = None

    @property
    def ready(self) -> bool:
        return self.state == ComponentState.READY


def internal_url(isvc: InferenceService, component: ComponentType) -> str:
    """In-cluster URL of a component Service."""
    return f"http://{internal_host(component_name(isvc.name, component), isvc.namespace)}"


class ComponentReconciler:
    """Reconciles every object of one component."""

    def __init__(
        self,
        k8s: K8sClient,
        isvc: InferenceService,
        component: ComponentType,
        config: InferenceServiceConfig,
        runtimes: RuntimeClient | None = None,
        ctx: ReconcileContext | None = None,
        predictor_host: str | None = None,
    ) -> None:
        self._k8s = k8s
        self.isvc = isvc
        self.component = component
        self._config = config
        self._runtimes = runtimes or RuntimeClient(k8s)
        self._ctx = ctx or ReconcileContext()
        self._predictor_host = predictor_host
        self.verdicts: dict[str, Verdict] = {}

    @property
    def name(self) -> str:
        return component_name(self.isvc.name, self.component)

    def reconcile(self) -> ComponentResult:
        """Run one pass for the component.

        Raises:
            ClusterAPIError: On API failures; the caller records them.
        """
        spec = self.isvc.spec.component(self.component)
        if spec is None:
            self._run(self._teardown_reconcilers())
            return self._result(ComponentState.NOT_DECLARED)
        if self.isvc.stopped:
            self._run(self._teardown_reconcilers())
            return self._result(
                ComponentState.STOPPED,
                reason=STOPPED_REASON,
                message="The InferenceService is stopped",
            )

        try:
            reconcilers = self._desired_reconcilers(spec)
        except InvalidDesiredStateError as e:
            logger.warning(
                f"{self.component.value} of InferenceService "
                f"{self.isvc.namespace}/{self.isvc.name} is invalid: {e}"
            )
            return self._result(ComponentState.FAILED, reason=e.reason, message=str(e))

        self._run(reconcilers)
        return self._readiness(reconcilers)

    def _run(self, reconcilers: list[ObjectReconciler]) -> None:
        for reconciler in reconcilers:
            try:
                reconciler.reconcile()
            finally:
                if reconciler.verdict is not None:
                    self.verdicts[f"{reconciler.kind}/{reconciler.name}"] = reconciler.verdict

    def _result(self, state: ComponentState, **kwargs: str | None) -> ComponentResult:
        return ComponentResult(
            component=self.component, state=state, verdicts=dict(self.verdicts), **kwargs
        )

    # -------------------------------------------------------------------------
    # Desired state
    # -------------------------------------------------------------------------

    def _autoscaler_class(self) -> AutoscalerClass:
        raw = self.isvc.metadata.annotations.get(ServingAnnotations.AUTOSCALER_CLASS)
        autoscaler_class = AutoscalerClass.parse(raw, self._config.autoscaler.default_class)
        if self.component == ComponentType.PREDICTOR and self.isvc.spec.predictor.is_multi_node:
            # Multi-node serving runs one head; nothing may scale it
            if raw and autoscaler_class in (AutoscalerClass.HPA, AutoscalerClass.KEDA):
                raise InvalidDesiredStateError(
                    f"Multi-node predictors do not support the '{autoscaler_class.value}' "
                    f"autoscaler class",
                    reason="InvalidAutoscalerClass",
                )
            if autoscaler_class != AutoscalerClass.EXTERNAL:
                autoscaler_class = AutoscalerClass.NONE
        return autoscaler_class

    def _desired_reconcilers(self, spec: ComponentSpec) -> list[ObjectReconciler]:
        isvc, config, ctx, name = self.isvc, self._config, self._ctx, self.name
        autoscaler_class = self._autoscaler_class()

        runtime: RuntimeTemplate | None = None
        plan: PlacementPlan | None = None
        if self.component == ComponentType.PREDICTOR:
            runtime = self._runtimes.resolve(isvc)
            if isvc.spec.predictor.is_multi_node:
                plan = plan_for(isvc, runtime)

        otel_needed = needs_otel_collector(spec, autoscaler_class)
        otel_desired = (
            build_otel_collector(isvc, self.component, name, pod_metric_names(spec), config)
            if otel_needed
            else skeleton(CRDs.OTEL_COLLECTOR, name, isvc.namespace)
        )

        pod_template = build_pod_template(
            isvc,
            self.component,
            config,
            runtime=runtime,
            predictor_host=self._predictor_host,
            plan=plan,
            otel_collector=name if otel_needed else None,
        )
        min_replicas, _ = replica_range(spec)
        replicas = plan.head_replicas if plan is not None else min_replicas
        strategy = spec.deployment_strategy or (RECREATE_STRATEGY if plan is not None else None)
        head_labels = {ServingLabels.MULTINODE_ROLE: ServingLabels.ROLE_HEAD} if plan else None
        deployment = build_deployment(
            isvc,
            self.component,
            name,
            pod_template,
            replicas,
            autoscaler_class,
            config,
            strategy=strategy,
            extra_labels=head_labels,
        )

        hpa_desired = (
            build_hpa(isvc, self.component, name, spec, config)
            if autoscaler_class == AutoscalerClass.HPA
            else skeleton(CRDs.HPA, name, isvc.namespace)
        )
        scaled_object_desired = (
            build_scaled_object(isvc, self.component, name, spec, config)
            if autoscaler_class == AutoscalerClass.KEDA
            else skeleton(CRDs.SCALED_OBJECT, name, isvc.namespace)
        )

        reconcilers: list[ObjectReconciler] = [
            OtelCollectorReconciler(self._k8s, otel_desired, config, ctx, present=otel_needed),
            DeploymentReconciler(
                self._k8s,
                deployment,
                config,
                ctx,
                preserve_replicas=autoscaler_class.owns_replicas,
            ),
        ]
        if self.component == ComponentType.PREDICTOR:
            reconcilers.extend(self._worker_reconcilers(runtime, plan, strategy))
        reconcilers.extend(
            [
                ServiceReconciler(
                    self._k8s, build_service(isvc, self.component, name), config, ctx
                ),
                HPAReconciler(self._k8s, hpa_desired, config, autoscaler_class, ctx=ctx),
                ScaledObjectReconciler(
                    self._k8s, scaled_object_desired, config, autoscaler_class, ctx=ctx
                ),
            ]
        )
        reconcilers.extend(self._route_reconcilers(stopped=False))
        return reconcilers

    def _worker_reconcilers(
        self,
        runtime: RuntimeTemplate | None,
        plan: PlacementPlan | None,
        strategy: dict | None,
    ) -> list[ObjectReconciler]:
        isvc, config, ctx = self.isvc, self._config, self._ctx
        worker = worker_name(isvc.name)
        head_service = head_service_name(isvc.name)
        if plan is None:
            return [
                DeploymentReconciler(
                    self._k8s, skeleton(CRDs.DEPLOYMENT, worker, isvc.namespace), config, ctx, present=False
                ),
                ServiceReconciler(
                    self._k8s, skeleton(CRDs.SERVICE, head_service, isvc.namespace), config, ctx, present=False
                ),
                ServiceReconciler(
                    self._k8s, skeleton(CRDs.SERVICE, worker, isvc.namespace), config, ctx, present=False
                ),
            ]

        worker_template = build_worker_pod_template(
            isvc, config, runtime, plan, worker, internal_host(head_service, isvc.namespace)
        )
        worker_deployment = build_deployment(
            isvc,
            ComponentType.PREDICTOR,
            worker,
            worker_template,
            plan.worker_replicas,
            AutoscalerClass.NONE,
            config,
            strategy=strategy,
            extra_labels={ServingLabels.MULTINODE_ROLE: ServingLabels.ROLE_WORKER},
        )
        return [
            DeploymentReconciler(self._k8s, worker_deployment, config, ctx),
            ServiceReconciler(
                self._k8s,
                build_headless_service(isvc, head_service, self.name, ServingLabels.ROLE_HEAD),
                config,
                ctx,
            ),
            ServiceReconciler(
                self._k8s,
                build_headless_service(isvc, worker, worker, ServingLabels.ROLE_WORKER),
                config,
                ctx,
            ),
        ]

    def _route_reconcilers(self, stopped: bool) -> list[ObjectReconciler]:
        isvc, config, name = self.isvc, self._config, self.name
        mode = RoutingMode.DISABLED if stopped else config.ingress.routing_mode_for(isvc.metadata.labels)
        http_route = (
            build_component_http_route(isvc, self.component, config)
            if mode == RoutingMode.GATEWAY_API
            else skeleton(CRDs.HTTP_ROUTE, name, isvc.namespace)
        )
        ingress = (
            build_component_ingress(isvc, self.component, config)
            if mode == RoutingMode.INGRESS
            else skeleton(CRDs.INGRESS, name, isvc.namespace)
        )
        return [
            HTTPRouteReconciler(self._k8s, http_route, config, mode, stopped, self._ctx),
            IngressReconciler(self._k8s, ingress, config, mode, stopped, self._ctx),
        ]

    def _teardown_reconcilers(self) -> list[ObjectReconciler]:
        """Delete-if-present reconcilers for every object the component may own."""
        isvc, config, ctx, name, ns = self.isvc, self._config, self._ctx, self.name, self.isvc.namespace
        reconcilers = self._route_reconcilers(stopped=True)
        reconcilers.extend(
            [
                HPAReconciler(
                    self._k8s, skeleton(CRDs.HPA, name, ns), config, AutoscalerClass.NONE, True, ctx
                ),
                ScaledObjectReconciler(
                    self._k8s,
                    skeleton(CRDs.SCALED_OBJECT, name, ns),
                    config,
                    AutoscalerClass.NONE,
                    True,
                    ctx,
                ),
                ServiceReconciler(self._k8s, skeleton(CRDs.SERVICE, name, ns), config, ctx, present=False),
                DeploymentReconciler(
                    self._k8s, skeleton(CRDs.DEPLOYMENT, name, ns), config, ctx, present=False
                ),
            ]
        )
        if self.component == ComponentType.PREDICTOR:
            reconcilers.extend(self._worker_reconcilers(None, None, None))
        reconcilers.append(
            OtelCollectorReconciler(
                self._k8s, skeleton(CRDs.OTEL_COLLECTOR, name, ns), config, ctx, present=False
            )
        )
        return reconcilers

    # -------------------------------------------------------------------------
    # Readiness
    # -------------------------------------------------------------------------

    def _readiness(self, reconcilers: list[ObjectReconciler]) -> ComponentResult:
        deployments = [
            r for r in reconcilers if isinstance(r, DeploymentReconciler) and r.present
        ]
        routes = [r for r in reconcilers if isinstance(r, RouteReconciler) and r.present]
        address = internal_url(self.isvc, self.component)
        url = address
        if routes:
            hosts = component_hosts(self.isvc, self.component, self._config)
            if hosts:
                url = route_url(hosts[0], self._config)

        pending = [d.name for d in deployments if not d.is_ready()]
        if pending:
            return self._result(
                ComponentState.PROVISIONING,
                reason="DeploymentNotReady",
                message=f"Deployment {', '.join(pending)} is not yet available",
                url=url,
                address=address,
            )
        unaccepted = [r.name for r in routes if not r.is_ready()]
        if unaccepted:
            return self._result(
                ComponentState.PROVISIONING,
                reason="RouteNotReady",
                message=f"{routes[0].kind} {', '.join(unaccepted)} is not yet ready",
                url=url,
                address=address,
            )
        return self._result(ComponentState.READY, url=url, address=address)
