"""Label keys and selectors for managed objects."""

from isvc_operator.utils.annotations import API_GROUP


class ServingLabels:
    """Label keys applied to every object owned by an InferenceService."""

    INFERENCE_SERVICE = f"{API_GROUP}/inferenceservice"
    COMPONENT = "component"
    APP = "app"
    MULTINODE_ROLE = "multinode/role"
    VISIBILITY = "networking.kserve.io/visibility"

    CLUSTER_LOCAL = "cluster-local"
    ROLE_HEAD = "head"
    ROLE_WORKER = "worker"

    @staticmethod
    def owned_selector() -> str:
        """Selector matching every object the operator manages."""
        return ServingLabels.INFERENCE_SERVICE

    @staticmethod
    def app_value(service_name: str) -> str:
        """Value of the ``app`` label for a component service."""
        return f"isvc.{service_name}"
