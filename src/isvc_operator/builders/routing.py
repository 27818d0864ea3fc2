"""HTTPRoute and Ingress bodies exposing an InferenceService.

A top-level route sends traffic for the service host to the entry
component (the transformer when declared, otherwise the predictor) and
explain requests to the explainer. Every component also gets its own
route on ``<service>-<component>`` hosts.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

from isvc_operator.builders.common import object_meta, owner_labels
from isvc_operator.builders.service import SERVICE_PORT
from isvc_operator.clients.base import CRDs
from isvc_operator.domains.inference.config import InferenceServiceConfig
from isvc_operator.domains.inference.models import ComponentType, InferenceService
from isvc_operator.utils.labels import ServingLabels
from isvc_operator.utils.naming import component_name, render_template

EXPLAIN_PATH_REGEX = r"^/v1/models/[\w-]+:explain$"
PATH_BASED_EXPLAIN_SUFFIX = r"(/v1/models/[\w-]+:explain)$"
PATH_BASED_FALLBACK_SUFFIX = r"(/.*)?$"

ISVC_NAME_HEADER = "KServe-Isvc-Name"
ISVC_NAMESPACE_HEADER = "KServe-Isvc-Namespace"

GATEWAY_API_GROUP = "gateway.networking.k8s.io"


@dataclass(frozen=True)
class RouteBackend:
    """A component Service a route forwards to."""

    component: ComponentType
    service_name: str
    timeout_seconds: int
    port: int = SERVICE_PORT


def entry_component(isvc: InferenceService) -> ComponentType:
    """Component that receives the service's inference traffic."""
    if isvc.spec.transformer is not None:
        return ComponentType.TRANSFORMER
    return ComponentType.PREDICTOR


def route_backends(
    isvc: InferenceService, config: InferenceServiceConfig
) -> dict[ComponentType, RouteBackend]:
    """Backends for every declared component."""
    backends = {}
    for component in isvc.declared_components():
        spec = isvc.spec.component(component)
        timeout = (spec.timeout if spec is not None else None) or config.ingress.route_timeout_seconds
        backends[component] = RouteBackend(
            component=component,
            service_name=component_name(isvc.name, component),
            timeout_seconds=timeout,
        )
    return backends


def hosts_for(isvc: InferenceService, name: str, config: InferenceServiceConfig) -> list[str]:
    """Hosts for ``name`` on the ingress domain and any additional domains."""
    ingress = config.ingress
    hosts: list[str] = []
    for domain in [ingress.ingress_domain, *ingress.additional_ingress_domains]:
        host = render_template(
            ingress.domain_template,
            name=name,
            namespace=isvc.namespace,
            ingress_domain=domain,
            labels=isvc.metadata.labels,
            annotations=isvc.metadata.annotations,
        )
        if host and host not in hosts:
            hosts.append(host)
    return hosts


def component_hosts(
    isvc: InferenceService, component: ComponentType, config: InferenceServiceConfig
) -> list[str]:
    return hosts_for(isvc, component_name(isvc.name, component), config)


def path_route(isvc: InferenceService, config: InferenceServiceConfig) -> tuple[str, str] | None:
    """``(host, path prefix)`` when path-based routing is configured."""
    ingress = config.ingress
    if not ingress.path_based:
        return None
    rendered = render_template(
        ingress.path_template,
        name=isvc.name,
        namespace=isvc.namespace,
        ingress_domain=ingress.ingress_domain,
        labels=isvc.metadata.labels,
        annotations=isvc.metadata.annotations,
    )
    if "://" in rendered:
        parsed = urlsplit(rendered)
        host = parsed.hostname or ingress.ingress_domain
        path = parsed.path
    else:
        host, path = ingress.ingress_domain, rendered
    return host, "/" + path.strip("/")


def route_url(host: str, config: InferenceServiceConfig, path: str = "") -> str:
    return f"{config.ingress.url_scheme}://{host}{path}"


def _regex_literal(path: str) -> str:
    # Names are DNS labels, so only the dot needs escaping
    return path.replace(".", r"\.")


def _top_level_labels(isvc: InferenceService) -> dict[str, str]:
    return {
        ServingLabels.INFERENCE_SERVICE: isvc.name,
        ServingLabels.APP: ServingLabels.app_value(isvc.name),
    }


# -----------------------------------------------------------------------------
# Gateway API
# -----------------------------------------------------------------------------


def _parent_refs(config: InferenceServiceConfig) -> list[dict[str, Any]]:
    return [
        {
            "group": GATEWAY_API_GROUP,
            "kind": "Gateway",
            "name": config.ingress.gateway_name,
            "namespace": config.ingress.gateway_namespace,
        }
    ]


def _http_rule(
    isvc: InferenceService, match_type: str, path: str, backend: RouteBackend
) -> dict[str, Any]:
    return {
        "matches": [{"path": {"type": match_type, "value": path}}],
        "filters": [
            {
                "type": "RequestHeaderModifier",
                "requestHeaderModifier": {
                    "set": [
                        {"name": ISVC_NAME_HEADER, "value": isvc.name},
                        {"name": ISVC_NAMESPACE_HEADER, "value": isvc.namespace},
                    ]
                },
            }
        ],
        "backendRefs": [
            {
                "group": "",
                "kind": "Service",
                "name": backend.service_name,
                "namespace": isvc.namespace,
                "port": backend.port,
                "weight": 1,
            }
        ],
        "timeouts": {"request": f"{backend.timeout_seconds}s"},
    }


def _http_route(
    isvc: InferenceService,
    name: str,
    labels: dict[str, str],
    hostnames: list[str],
    rules: list[dict[str, Any]],
    config: InferenceServiceConfig,
) -> dict[str, Any]:
    return {
        "apiVersion": CRDs.HTTP_ROUTE.api_version,
        "kind": CRDs.HTTP_ROUTE.kind,
        "metadata": object_meta(isvc, name, labels),
        "spec": {"parentRefs": _parent_refs(config), "hostnames": hostnames, "rules": rules},
    }


def build_top_level_http_route(
    isvc: InferenceService, config: InferenceServiceConfig
) -> dict[str, Any]:
    """HTTPRoute named after the service spanning all declared components."""
    backends = route_backends(isvc, config)
    entry = backends[entry_component(isvc)]
    explainer = backends.get(ComponentType.EXPLAINER)
    hostnames = hosts_for(isvc, isvc.name, config)

    rules = []
    if explainer is not None:
        rules.append(_http_rule(isvc, "RegularExpression", EXPLAIN_PATH_REGEX, explainer))
    rules.append(_http_rule(isvc, "PathPrefix", "/", entry))

    path = path_route(isvc, config)
    if path is not None:
        host, prefix = path
        if host not in hostnames:
            hostnames.append(host)
        literal = _regex_literal(prefix)
        if explainer is not None:
            rules.append(
                _http_rule(
                    isvc, "RegularExpression", f"^{literal}{PATH_BASED_EXPLAIN_SUFFIX}", explainer
                )
            )
        rules.append(
            _http_rule(isvc, "RegularExpression", f"^{literal}{PATH_BASED_FALLBACK_SUFFIX}", entry)
        )

    return _http_route(isvc, isvc.name, _top_level_labels(isvc), hostnames, rules, config)


def build_component_http_route(
    isvc: InferenceService, component: ComponentType, config: InferenceServiceConfig
) -> dict[str, Any]:
    """HTTPRoute exposing one component on its own host."""
    backend = route_backends(isvc, config)[component]
    name = backend.service_name
    return _http_route(
        isvc,
        name,
        owner_labels(isvc, component, name),
        component_hosts(isvc, component, config),
        [_http_rule(isvc, "PathPrefix", "/", backend)],
        config,
    )


# -----------------------------------------------------------------------------
# Ingress
# -----------------------------------------------------------------------------


def _ingress_path(path: str, path_type: str, backend: RouteBackend) -> dict[str, Any]:
    return {
        "path": path,
        "pathType": path_type,
        "backend": {"service": {"name": backend.service_name, "port": {"number": backend.port}}},
    }


def _ingress(
    isvc: InferenceService,
    name: str,
    labels: dict[str, str],
    host_paths: dict[str, list[dict[str, Any]]],
    timeout_seconds: int,
    config: InferenceServiceConfig,
) -> dict[str, Any]:
    annotations = {config.ingress.ingress_timeout_annotation: f"{timeout_seconds}s"}
    spec: dict[str, Any] = {
        "rules": [{"host": host, "http": {"paths": paths}} for host, paths in host_paths.items()]
    }
    if config.ingress.ingress_class_name:
        spec["ingressClassName"] = config.ingress.ingress_class_name
    return {
        "apiVersion": CRDs.INGRESS.api_version,
        "kind": CRDs.INGRESS.kind,
        "metadata": object_meta(isvc, name, labels, annotations),
        "spec": spec,
    }


def build_top_level_ingress(
    isvc: InferenceService, config: InferenceServiceConfig
) -> dict[str, Any]:
    """Ingress named after the service spanning all declared components."""
    backends = route_backends(isvc, config)
    entry = backends[entry_component(isvc)]
    explainer = backends.get(ComponentType.EXPLAINER)

    host_paths: dict[str, list[dict[str, Any]]] = {}
    for host in hosts_for(isvc, isvc.name, config):
        paths = []
        if explainer is not None:
            paths.append(_ingress_path(EXPLAIN_PATH_REGEX, "ImplementationSpecific", explainer))
        paths.append(_ingress_path("/", "Prefix", entry))
        host_paths[host] = paths

    path = path_route(isvc, config)
    if path is not None:
        host, prefix = path
        literal = _regex_literal(prefix)
        paths = []
        if explainer is not None:
            paths.append(
                _ingress_path(
                    f"^{literal}{PATH_BASED_EXPLAIN_SUFFIX}", "ImplementationSpecific", explainer
                )
            )
        paths.append(
            _ingress_path(f"^{literal}{PATH_BASED_FALLBACK_SUFFIX}", "ImplementationSpecific", entry)
        )
        host_paths[host] = paths + host_paths.get(host, [])

    return _ingress(
        isvc, isvc.name, _top_level_labels(isvc), host_paths, entry.timeout_seconds, config
    )


def build_component_ingress(
    isvc: InferenceService, component: ComponentType, config: InferenceServiceConfig
) -> dict[str, Any]:
    """Ingress exposing one component on its own host."""
    backend = route_backends(isvc, config)[component]
    name = backend.service_name
    host_paths = {
        host: [_ingress_path("/", "Prefix", backend)]
        for host in component_hosts(isvc, component, config)
    }
    return _ingress(
        isvc, name, owner_labels(isvc, component, name), host_paths, backend.timeout_seconds, config
    )
