"""Base Kubernetes client with CRD definitions for every managed kind."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from kubernetes import client, config
from kubernetes.client import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from kubernetes.dynamic.resource import Resource

from isvc_operator.config import AuthMode, OperatorConfig, get_config
from isvc_operator.utils.errors import (
    AuthenticationError,
    ClusterAPIError,
    ConflictError,
    NotFoundError,
    OperatorError,
    ResourceExistsError,
    TransientAPIError,
)

logger = logging.getLogger(__name__)

_TRANSIENT_STATUSES = {429, 500, 502, 503, 504}


class CRDDefinition:
    """Definition of a (custom or built-in) resource kind."""

    def __init__(
        self,
        group: str,
        version: str,
        plural: str,
        kind: str,
    ) -> None:
        self.group = group
        self.version = version
        self.plural = plural
        self.kind = kind

    @property
    def api_version(self) -> str:
        """Get the full API version string."""
        if self.group:
            return f"{self.group}/{self.version}"
        return self.version

    def __repr__(self) -> str:
        return f"CRDDefinition({self.api_version}, {self.kind})"


class CRDs:
    """Kinds owned by an InferenceService."""

    CONFIG_MAP = CRDDefinition(
        group="",
        version="v1",
        plural="configmaps",
        kind="ConfigMap",
    )

    SERVICE = CRDDefinition(
        group="",
        version="v1",
        plural="services",
        kind="Service",
    )

    DEPLOYMENT = CRDDefinition(
        group="apps",
        version="v1",
        plural="deployments",
        kind="Deployment",
    )

    HPA = CRDDefinition(
        group="autoscaling",
        version="v2",
        plural="horizontalpodautoscalers",
        kind="HorizontalPodAutoscaler",
    )

    # KEDA event-driven autoscaling
    SCALED_OBJECT = CRDDefinition(
        group="keda.sh",
        version="v1alpha1",
        plural="scaledobjects",
        kind="ScaledObject",
    )

    # Gateway API
    HTTP_ROUTE = CRDDefinition(
        group="gateway.networking.k8s.io",
        version="v1",
        plural="httproutes",
        kind="HTTPRoute",
    )

    INGRESS = CRDDefinition(
        group="networking.k8s.io",
        version="v1",
        plural="ingresses",
        kind="Ingress",
    )

    # OpenTelemetry operator
    OTEL_COLLECTOR = CRDDefinition(
        group="opentelemetry.io",
        version="v1beta1",
        plural="opentelemetrycollectors",
        kind="OpenTelemetryCollector",
    )


def _name_of(body: dict[str, Any]) -> str:
    return str(body.get("metadata", {}).get("name", "unknown"))


def _classify(
    e: ApiException,
    crd: CRDDefinition,
    name: str,
    namespace: str | None,
    operation: str,
) -> OperatorError:
    """Map an ApiException onto the operator error taxonomy."""
    if e.status == 404:
        return NotFoundError(crd.kind, name, namespace)
    if e.status == 409:
        if operation == "create":
            return ResourceExistsError(crd.kind, name, namespace)
        return ConflictError(crd.kind, name)
    if e.status in (401, 403):
        return AuthenticationError(f"Not authorized to {operation} {crd.kind} '{name}': {e.reason}")
    if e.status in _TRANSIENT_STATUSES:
        return TransientAPIError(
            f"Failed to {operation} {crd.kind} '{name}': {e.reason}", status=e.status
        )
    return ClusterAPIError(f"Failed to {operation} {crd.kind} '{name}': {e.reason}", status=e.status)


class K8sClient:
    """Kubernetes client speaking plain dicts.

    Supports multiple authentication modes:
    - auto: Try in-cluster first, fall back to kubeconfig
    - kubeconfig: Use kubeconfig file with optional context
    - token: Use explicit API server URL and token
    """

    def __init__(self, config_obj: OperatorConfig | None = None) -> None:
        self._config = config_obj or get_config()
        self._api_client: client.ApiClient | None = None
        self._dynamic_client: DynamicClient | None = None
        self._crd_cache: dict[str, Resource] = {}

    def connect(self) -> None:
        """Establish connection to Kubernetes API."""
        try:
            self._api_client = self._create_api_client()
            self._dynamic_client = DynamicClient(self._api_client)
            logger.info("Connected to Kubernetes API")
        except AuthenticationError:
            raise
        except Exception as e:
            raise AuthenticationError(f"Failed to connect to Kubernetes API: {e}") from e

    def disconnect(self) -> None:
        """Close connection to Kubernetes API."""
        if self._api_client:
            self._api_client.close()
            self._api_client = None
            self._dynamic_client = None
            self._crd_cache.clear()
            logger.info("Disconnected from Kubernetes API")

    @property
    def is_connected(self) -> bool:
        """Check if client is connected."""
        return self._api_client is not None

    def _create_api_client(self) -> client.ApiClient:
        """Create API client based on authentication mode."""
        auth_mode = self._config.auth_mode

        if auth_mode == AuthMode.TOKEN:
            return self._create_token_client()
        elif auth_mode == AuthMode.KUBECONFIG:
            return self._create_kubeconfig_client()
        else:  # AUTO
            return self._create_auto_client()

    def _create_token_client(self) -> client.ApiClient:
        """Create client using explicit token authentication."""
        if not self._config.api_server or not self._config.api_token:
            raise AuthenticationError(
                "api_server and api_token are required for token authentication"
            )

        configuration = client.Configuration()
        configuration.host = self._config.api_server
        configuration.api_key = {"authorization": f"Bearer {self._config.api_token}"}
        configuration.verify_ssl = True

        return client.ApiClient(configuration)

    def _create_kubeconfig_client(self) -> client.ApiClient:
        """Create client using kubeconfig file."""
        kubeconfig_path = self._config.effective_kubeconfig_path
        if not kubeconfig_path.exists():
            raise AuthenticationError(f"Kubeconfig not found: {kubeconfig_path}")

        return config.new_client_from_config(
            config_file=str(kubeconfig_path),
            context=self._config.kubeconfig_context,
        )

    def _create_auto_client(self) -> client.ApiClient:
        """Auto-detect authentication mode."""
        if Path("/var/run/secrets/kubernetes.io/serviceaccount/token").exists():
            logger.info("Using in-cluster authentication")
            config.load_incluster_config()
            configuration = client.Configuration.get_default_copy()
            return client.ApiClient(configuration)

        kubeconfig_path = self._config.effective_kubeconfig_path
        if kubeconfig_path.exists():
            logger.info(f"Using kubeconfig: {kubeconfig_path}")
            return config.new_client_from_config(
                config_file=str(kubeconfig_path),
                context=self._config.kubeconfig_context,
            )

        raise AuthenticationError(
            "No valid authentication method found. "
            "Not running in-cluster and no kubeconfig available."
        )

    @property
    def dynamic(self) -> DynamicClient:
        """Get the dynamic client."""
        if not self._dynamic_client:
            raise OperatorError("Client not connected. Call connect() first.")
        return self._dynamic_client

    def get_resource(self, crd: CRDDefinition) -> Resource:
        """Get a dynamic resource for a CRD.

        Uses caching to avoid repeated API discovery calls.
        """
        cache_key = f"{crd.api_version}/{crd.plural}"
        if cache_key not in self._crd_cache:
            try:
                self._crd_cache[cache_key] = self.dynamic.resources.get(
                    api_version=crd.api_version,
                    kind=crd.kind,
                )
            except ResourceNotFoundError as e:
                # Kind not served by this cluster (e.g. KEDA not installed)
                raise NotFoundError(crd.kind, crd.api_version) from e
        return self._crd_cache[cache_key]

    def get(
        self,
        crd: CRDDefinition,
        name: str,
        namespace: str | None = None,
    ) -> dict[str, Any]:
        """Get a resource by name."""
        resource = self.get_resource(crd)
        try:
            if namespace:
                return resource.get(name=name, namespace=namespace).to_dict()
            return resource.get(name=name).to_dict()
        except ApiException as e:
            raise _classify(e, crd, name, namespace, "get") from e

    def list_with_version(
        self,
        crd: CRDDefinition,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """List resources and return the collection resourceVersion."""
        resource = self.get_resource(crd)
        try:
            kwargs: dict[str, Any] = {}
            if namespace:
                kwargs["namespace"] = namespace
            if label_selector:
                kwargs["label_selector"] = label_selector

            result = resource.get(**kwargs).to_dict()
        except ApiException as e:
            raise _classify(e, crd, crd.plural, namespace, "list") from e
        items = list(result.get("items") or [])
        return items, result.get("metadata", {}).get("resourceVersion")

    def list(
        self,
        crd: CRDDefinition,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        """List resources."""
        items, _ = self.list_with_version(crd, namespace, label_selector)
        return items

    def create(
        self,
        crd: CRDDefinition,
        body: dict[str, Any],
        namespace: str | None = None,
    ) -> dict[str, Any]:
        """Create a resource."""
        resource = self.get_resource(crd)
        try:
            if namespace:
                return resource.create(body=body, namespace=namespace).to_dict()
            return resource.create(body=body).to_dict()
        except ApiException as e:
            raise _classify(e, crd, _name_of(body), namespace, "create") from e

    def replace(
        self,
        crd: CRDDefinition,
        body: dict[str, Any],
        namespace: str | None = None,
    ) -> dict[str, Any]:
        """Replace a resource.

        ``body.metadata.resourceVersion`` acts as the write precondition.
        """
        resource = self.get_resource(crd)
        try:
            if namespace:
                return resource.replace(body=body, namespace=namespace).to_dict()
            return resource.replace(body=body).to_dict()
        except ApiException as e:
            raise _classify(e, crd, _name_of(body), namespace, "replace") from e

    def replace_status(
        self,
        crd: CRDDefinition,
        body: dict[str, Any],
        namespace: str | None = None,
    ) -> dict[str, Any]:
        """Replace the status subresource of a resource."""
        resource = self.get_resource(crd)
        try:
            if namespace:
                return resource.status.replace(body=body, namespace=namespace).to_dict()
            return resource.status.replace(body=body).to_dict()
        except ApiException as e:
            raise _classify(e, crd, _name_of(body), namespace, "update status of") from e

    def delete(
        self,
        crd: CRDDefinition,
        name: str,
        namespace: str | None = None,
    ) -> None:
        """Delete a resource with background propagation."""
        resource = self.get_resource(crd)
        try:
            if namespace:
                resource.delete(name=name, namespace=namespace, propagation_policy="Background")
            else:
                resource.delete(name=name, propagation_policy="Background")
        except ApiException as e:
            raise _classify(e, crd, name, namespace, "delete") from e

    def watch(
        self,
        crd: CRDDefinition,
        namespace: str | None = None,
        label_selector: str | None = None,
        resource_version: str | None = None,
        timeout: int | None = None,
    ) -> Iterator[tuple[str, dict[str, Any]]]:
        """Stream ``(event_type, object)`` pairs for a kind."""
        resource = self.get_resource(crd)
        try:
            for event in self.dynamic.watch(
                resource,
                namespace=namespace,
                label_selector=label_selector,
                resource_version=resource_version,
                timeout=timeout,
            ):
                yield event["type"], event["raw_object"]
        except ApiException as e:
            raise _classify(e, crd, crd.plural, namespace, "watch") from e

    def get_config_map(self, name: str, namespace: str) -> dict[str, str]:
        """Get the ``data`` of a ConfigMap."""
        cm = self.get(CRDs.CONFIG_MAP, name=name, namespace=namespace)
        return dict(cm.get("data") or {})


@contextmanager
def get_k8s_client(
    config_obj: OperatorConfig | None = None,
) -> Generator[K8sClient, None, None]:
    """Context manager for K8s client with automatic cleanup."""
    k8s_client = K8sClient(config_obj)
    k8s_client.connect()
    try:
        yield k8s_client
    finally:
        k8s_client.disconnect()
