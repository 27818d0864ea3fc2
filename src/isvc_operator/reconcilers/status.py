"""Status derivation for an InferenceService.

Status is a pure function of the freshly read service and the outcomes
of the pass. ``lastTransitionTime`` only moves when a condition's status
flips, so a pass that changes nothing yields an identical status and no
write.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import assert_never

from isvc_operator.builders.routing import entry_component
from isvc_operator.domains.inference.config import RoutingMode
from isvc_operator.domains.inference.models import (
    Addressable,
    ComponentState,
    ComponentStatusSpec,
    ComponentType,
    Condition,
    ConditionType,
    DeploymentMode,
    InferenceService,
    InferenceServiceStatus,
)
from isvc_operator.reconcilers.component import STOPPED_REASON, ComponentResult, internal_url
from isvc_operator.utils.errors import ClusterAPIError

INFO_SEVERITY = "Info"


@dataclass
class RouteOutcome:
    """Outcome of reconciling the top-level routing object."""

    mode: RoutingMode
    ready: bool = False
    url: str | None = None
    error: ClusterAPIError | None = None


def now_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def set_condition(conditions: list[Condition], new: Condition, now: str) -> list[Condition]:
    """Insert or replace a condition, keeping its transition time when the status holds."""
    previous = next((c for c in conditions if c.type == new.type), None)
    if previous is not None and previous.status == new.status and previous.last_transition_time:
        new.last_transition_time = previous.last_transition_time
    else:
        new.last_transition_time = now
    return [c for c in conditions if c.type != new.type] + [new]


def remove_condition(conditions: list[Condition], condition_type: str) -> list[Condition]:
    return [c for c in conditions if c.type != condition_type]


def _bool_status(value: bool) -> str:
    return "True" if value else "False"


def compute_status(
    isvc: InferenceService,
    results: dict[ComponentType, ComponentResult],
    route: RouteOutcome,
    now: str | None = None,
) -> InferenceServiceStatus | None:
    """Next status for ``isvc``, or None when it equals the current one."""
    now = now or now_timestamp()
    current = isvc.status
    status = current.model_copy(deep=True)
    conditions = list(status.conditions)
    components = dict(status.components)
    stopped = isvc.stopped

    for component in ComponentType:
        result = results.get(component)
        if result is None:
            continue
        condition_type = component.condition_type
        if result.error is not None:
            # Keep what we last knew; only fill a gap
            if current.get_condition(condition_type) is None:
                conditions = set_condition(
                    conditions,
                    Condition(
                        type=condition_type,
                        status="Unknown",
                        reason="ReconcileError",
                        message=str(result.error),
                    ),
                    now,
                )
            continue

        state = result.state
        if state == ComponentState.NOT_DECLARED:
            conditions = remove_condition(conditions, condition_type)
            components.pop(component.value, None)
            continue
        if state == ComponentState.READY:
            condition = Condition(type=condition_type, status="True")
        elif state in (ComponentState.STOPPED, ComponentState.FAILED, ComponentState.PROVISIONING):
            condition = Condition(
                type=condition_type, status="False", reason=result.reason, message=result.message
            )
        else:
            assert_never(state)
        conditions = set_condition(conditions, condition, now)

        if state in (ComponentState.STOPPED, ComponentState.FAILED):
            components[component.value] = ComponentStatusSpec(state=state)
        else:
            components[component.value] = ComponentStatusSpec(
                url=result.url,
                address=Addressable(url=result.address) if result.address else None,
                state=state,
            )

    if stopped:
        ingress = Condition(
            type=ConditionType.INGRESS_READY,
            status="False",
            reason=STOPPED_REASON,
            message="The InferenceService is stopped",
        )
        conditions = set_condition(conditions, ingress, now)
    elif route.error is None:
        if route.mode == RoutingMode.DISABLED:
            ingress = Condition(
                type=ConditionType.INGRESS_READY,
                status="True",
                reason="RoutingDisabled",
                message="No external routing is created for this service",
            )
        elif route.ready:
            ingress = Condition(type=ConditionType.INGRESS_READY, status="True")
        else:
            ingress = Condition(
                type=ConditionType.INGRESS_READY,
                status="False",
                reason="RouteNotReady",
                message=f"Waiting for the {route.mode.value} route to become ready",
            )
        conditions = set_condition(conditions, ingress, now)

    conditions = set_condition(
        conditions,
        Condition(
            type=ConditionType.STOPPED,
            status=_bool_status(stopped),
            reason=STOPPED_REASON if stopped else None,
            severity=INFO_SEVERITY,
        ),
        now,
    )

    if stopped:
        ready = Condition(
            type=ConditionType.READY,
            status="False",
            reason=STOPPED_REASON,
            message="The InferenceService is stopped",
        )
    else:
        ready = Condition(type=ConditionType.READY, status="True")
        dependencies = [c.condition_type for c in isvc.declared_components()]
        dependencies.append(ConditionType.INGRESS_READY)
        by_type = {c.type: c for c in conditions}
        for dependency in dependencies:
            condition = by_type.get(dependency)
            if condition is None or not condition.is_true:
                ready = Condition(
                    type=ConditionType.READY,
                    status="False" if condition is None or condition.status == "False" else "Unknown",
                    reason=(condition.reason if condition else None) or f"{dependency}NotTrue",
                    message=condition.message if condition else f"{dependency} is not reported",
                )
                break
    conditions = set_condition(conditions, ready, now)

    status.conditions = sorted(conditions, key=lambda c: c.type)
    status.components = components
    status.observed_generation = isvc.metadata.generation
    status.deployment_mode = DeploymentMode.RAW_DEPLOYMENT.value
    if stopped:
        status.url = None
        status.address = None
    else:
        status.url = route.url or internal_url(isvc, ComponentType.PREDICTOR)
        status.address = Addressable(url=internal_url(isvc, entry_component(isvc)))

    if status.to_cr() == current.to_cr():
        return None
    return status
