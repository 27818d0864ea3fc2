"""CRD definitions for the Inference domain."""

from isvc_operator.clients.base import CRDDefinition


class InferenceCRDs:
    """KServe CRD definitions."""

    # KServe InferenceService
    INFERENCE_SERVICE = CRDDefinition(
        group="serving.kserve.io",
        version="v1beta1",
        plural="inferenceservices",
        kind="InferenceService",
    )

    # KServe ServingRuntime (namespaced)
    SERVING_RUNTIME = CRDDefinition(
        group="serving.kserve.io",
        version="v1alpha1",
        plural="servingruntimes",
        kind="ServingRuntime",
    )

    # KServe ClusterServingRuntime (cluster-scoped)
    CLUSTER_SERVING_RUNTIME = CRDDefinition(
        group="serving.kserve.io",
        version="v1alpha1",
        plural="clusterservingruntimes",
        kind="ClusterServingRuntime",
    )
