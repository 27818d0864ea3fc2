"""Inference domain module.

Exports:
    Models:
        - InferenceService: Parsed custom resource
        - InferenceServiceSpec / InferenceServiceStatus
        - ComponentType, AutoscalerClass, DeploymentMode, ComponentState

    Config:
        - InferenceServiceConfig: Immutable per-pass serving configuration

    Client:
        - InferenceClient: Reads services and writes status
"""

from isvc_operator.domains.inference.client import InferenceClient
from isvc_operator.domains.inference.config import (
    InferenceServiceConfig,
    RoutingMode,
    load_inference_service_config,
)
from isvc_operator.domains.inference.crds import InferenceCRDs
from isvc_operator.domains.inference.models import (
    AutoscalerClass,
    ComponentState,
    ComponentType,
    Condition,
    ConditionType,
    DeploymentMode,
    InferenceService,
    InferenceServiceSpec,
    InferenceServiceStatus,
)

__all__ = [
    # Models
    "InferenceService",
    "InferenceServiceSpec",
    "InferenceServiceStatus",
    "Condition",
    "ConditionType",
    "ComponentType",
    "ComponentState",
    "AutoscalerClass",
    "DeploymentMode",
    # Config
    "InferenceServiceConfig",
    "RoutingMode",
    "load_inference_service_config",
    # CRDs
    "InferenceCRDs",
    # Client
    "InferenceClient",
]
