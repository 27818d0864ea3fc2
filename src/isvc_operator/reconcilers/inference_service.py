"""Service-level reconcile pass for one InferenceService."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from isvc_operator.builders.common import skeleton
from isvc_operator.builders.routing import (
    build_top_level_http_route,
    build_top_level_ingress,
    hosts_for,
    route_url,
)
from isvc_operator.clients.base import CRDs
from isvc_operator.domains.inference.client import InferenceClient
from isvc_operator.domains.inference.config import InferenceServiceConfig, RoutingMode
from isvc_operator.domains.inference.models import (
    ComponentState,
    ComponentType,
    Condition,
    ConditionType,
    DeploymentMode,
    InferenceService,
    InferenceServiceStatus,
)
from isvc_operator.domains.runtime.client import RuntimeClient
from isvc_operator.reconcilers.base import Verdict
from isvc_operator.reconcilers.component import ComponentReconciler, ComponentResult
from isvc_operator.reconcilers.routing import (
    HTTPRouteReconciler,
    IngressReconciler,
    RouteReconciler,
)
from isvc_operator.reconcilers.status import (
    RouteOutcome,
    compute_status,
    now_timestamp,
    set_condition,
)
from isvc_operator.utils.annotations import ServingAnnotations
from isvc_operator.utils.context import ReconcileContext
from isvc_operator.utils.errors import (
    ClusterAPIError,
    InvalidDesiredStateError,
    ReconcilerBugError,
)
from isvc_operator.utils.naming import component_name, internal_host

if TYPE_CHECKING:
    from isvc_operator.clients.base import K8sClient

logger = logging.getLogger(__name__)

INTERNAL_ERROR_REASON = "InternalError"


@dataclass
class ReconcileResult:
    """What one pass did."""

    verdicts: dict[str, Verdict] = field(default_factory=dict)
    components: dict[ComponentType, ComponentResult] = field(default_factory=dict)
    status: InferenceServiceStatus | None = None
    skipped: bool = False

    @property
    def status_written(self) -> bool:
        return self.status is not None


class InferenceServiceReconciler:
    """Drives every owned object of a service and writes its status.

    Components are reconciled predictor first, so dependants always see a
    predictor address; the top-level route follows. A transient API error
    in one component does not stop the others: the status is still written
    and the first error is re-raised afterwards so the key is retried.
    """

    def __init__(
        self,
        k8s: K8sClient,
        config: InferenceServiceConfig,
        runtimes: RuntimeClient | None = None,
        ctx: ReconcileContext | None = None,
        status_attempts: int = 5,
    ) -> None:
        self._k8s = k8s
        self._config = config
        self._runtimes = runtimes or RuntimeClient(k8s)
        self._ctx = ctx or ReconcileContext()
        self._inference = InferenceClient(k8s)
        self._status_attempts = status_attempts

    def reconcile(self, isvc: InferenceService) -> ReconcileResult:
        """Run one pass.

        Raises:
            ClusterAPIError: After the status write, if any API call failed.
            ReconcileSuperseded: If a newer event arrived mid-pass.
            ReconcilerBugError: After Ready=False with reason InternalError is written.
        """
        result = ReconcileResult()
        if isvc.being_deleted:
            logger.debug(f"InferenceService {isvc.namespace}/{isvc.name} is being deleted")
            result.skipped = True
            return result

        try:
            mode = DeploymentMode.parse(
                isvc.metadata.annotations.get(ServingAnnotations.DEPLOYMENT_MODE),
                self._config.deploy.default_deployment_mode,
            )
        except InvalidDesiredStateError as e:
            logger.warning(f"InferenceService {isvc.namespace}/{isvc.name} is invalid: {e}")
            result.status = self._write_not_ready(isvc, e.reason, str(e))
            return result
        if mode != DeploymentMode.RAW_DEPLOYMENT:
            logger.debug(
                f"InferenceService {isvc.namespace}/{isvc.name} uses {mode.value}, not reconciling"
            )
            result.skipped = True
            return result

        first_error: ClusterAPIError | None = None
        predictor_host = internal_host(
            component_name(isvc.name, ComponentType.PREDICTOR), isvc.namespace
        )
        for component in ComponentType:
            reconciler = ComponentReconciler(
                self._k8s,
                isvc,
                component,
                self._config,
                runtimes=self._runtimes,
                ctx=self._ctx,
                predictor_host=predictor_host,
            )
            try:
                outcome = reconciler.reconcile()
            except ClusterAPIError as e:
                logger.warning(
                    f"Failed to reconcile {component.value} of InferenceService "
                    f"{isvc.namespace}/{isvc.name}: {e}"
                )
                outcome = ComponentResult(
                    component=component,
                    state=ComponentState.PROVISIONING,
                    verdicts=dict(reconciler.verdicts),
                    error=e,
                )
                first_error = first_error or e
            except ReconcilerBugError as e:
                result.status = self._write_not_ready(isvc, INTERNAL_ERROR_REASON, str(e))
                raise
            result.components[component] = outcome
            result.verdicts.update(outcome.verdicts)

        route = self._reconcile_top_level_route(isvc, result)
        if route.error is not None and first_error is None:
            first_error = route.error

        result.status = self._inference.update_status(
            isvc.name,
            isvc.namespace,
            compute=lambda fresh: compute_status(fresh, result.components, route),
            attempts=self._status_attempts,
            before_write=self._ctx.check,
        )
        if result.status is not None:
            ready = result.status.get_condition(ConditionType.READY)
            logger.info(
                f"Updated status of InferenceService {isvc.namespace}/{isvc.name}: "
                f"Ready={ready.status if ready else 'Unknown'}"
            )

        if first_error is not None:
            raise first_error
        return result

    def _reconcile_top_level_route(
        self, isvc: InferenceService, result: ReconcileResult
    ) -> RouteOutcome:
        stopped = isvc.stopped
        mode = (
            RoutingMode.DISABLED
            if stopped
            else self._config.ingress.routing_mode_for(isvc.metadata.labels)
        )
        outcome = RouteOutcome(mode=mode)
        ns = isvc.namespace
        http_route = (
            build_top_level_http_route(isvc, self._config)
            if mode == RoutingMode.GATEWAY_API
            else skeleton(CRDs.HTTP_ROUTE, isvc.name, ns)
        )
        ingress = (
            build_top_level_ingress(isvc, self._config)
            if mode == RoutingMode.INGRESS
            else skeleton(CRDs.INGRESS, isvc.name, ns)
        )
        reconcilers: list[RouteReconciler] = [
            HTTPRouteReconciler(self._k8s, http_route, self._config, mode, stopped, self._ctx),
            IngressReconciler(self._k8s, ingress, self._config, mode, stopped, self._ctx),
        ]
        for reconciler in reconcilers:
            try:
                reconciler.reconcile()
            except ClusterAPIError as e:
                logger.warning(f"Failed to reconcile {reconciler.kind} {ns}/{isvc.name}: {e}")
                outcome.error = e
            finally:
                if reconciler.verdict is not None:
                    result.verdicts[f"{reconciler.kind}/{reconciler.name}"] = reconciler.verdict

        active = [r for r in reconcilers if r.present]
        if active and outcome.error is None:
            outcome.ready = all(r.is_ready() for r in active)
            if any(r.observed is not None for r in active):
                hosts = hosts_for(isvc, isvc.name, self._config)
                if hosts:
                    outcome.url = route_url(hosts[0], self._config)
        return outcome

    def _write_not_ready(
        self, isvc: InferenceService, reason: str, message: str
    ) -> InferenceServiceStatus | None:
        """Surface a service-level failure as Ready=False."""

        def _compute(fresh: InferenceService) -> InferenceServiceStatus | None:
            status = fresh.status.model_copy(deep=True)
            status.conditions = sorted(
                set_condition(
                    status.conditions,
                    Condition(
                        type=ConditionType.READY,
                        status="False",
                        reason=reason,
                        message=message,
                    ),
                    now_timestamp(),
                ),
                key=lambda c: c.type,
            )
            status.observed_generation = fresh.metadata.generation
            if status.to_cr() == fresh.status.to_cr():
                return None
            return status

        return self._inference.update_status(
            isvc.name,
            isvc.namespace,
            compute=_compute,
            attempts=self._status_attempts,
            before_write=self._ctx.check,
        )
