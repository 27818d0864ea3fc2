"""Serving runtime templates.

Exports:
    Models:
        - RuntimeTemplate: A ServingRuntime or ClusterServingRuntime
        - SupportedModelFormat: Format entry with auto-select priority

    Client:
        - RuntimeClient: Runtime lookup by name or by model format
"""

from isvc_operator.domains.runtime.client import RuntimeClient
from isvc_operator.domains.runtime.models import (
    RuntimeTemplate,
    RuntimeWorkerSpec,
    ServingRuntimeSpec,
    SupportedModelFormat,
)

__all__ = [
    "RuntimeTemplate",
    "RuntimeWorkerSpec",
    "ServingRuntimeSpec",
    "SupportedModelFormat",
    "RuntimeClient",
]
