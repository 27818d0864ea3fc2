"""Annotation keys read from and written to managed objects."""

API_GROUP = "serving.kserve.io"


class ServingAnnotations:
    """Annotation keys understood by the operator."""

    DEPLOYMENT_MODE = f"{API_GROUP}/deploymentMode"
    AUTOSCALER_CLASS = f"{API_GROUP}/autoscalerClass"
    AUTOSCALER_METRICS = f"{API_GROUP}/metrics"
    TARGET_UTILIZATION = f"{API_GROUP}/targetUtilizationPercentage"
    STOP = f"{API_GROUP}/stop"
    GPU_RESOURCE_TYPES = f"{API_GROUP}/gpu-resource-types"
    ENABLE_AUTH = "security.opendatahub.io/enable-auth"

    OTEL_SIDECAR_INJECT = "sidecar.opentelemetry.io/inject"
    # Digest of the desired body last applied to an owned object
    DESIRED_HASH = f"{API_GROUP}/desired-hash"

    # Set by kubectl apply; never propagated to owned objects
    LAST_APPLIED = "kubectl.kubernetes.io/last-applied-configuration"

    @staticmethod
    def is_true(annotations: dict[str, str] | None, key: str) -> bool:
        """Check whether an annotation is set to a truthy value."""
        if not annotations:
            return False
        return str(annotations.get(key, "")).strip().lower() == "true"
