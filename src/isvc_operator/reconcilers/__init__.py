"""Reconcilers turning desired bodies into cluster writes."""

from isvc_operator.reconcilers.base import ObjectReconciler, Verdict
from isvc_operator.reconcilers.component import ComponentReconciler, ComponentResult
from isvc_operator.reconcilers.inference_service import (
    InferenceServiceReconciler,
    ReconcileResult,
)

__all__ = [
    "ComponentReconciler",
    "ComponentResult",
    "InferenceServiceReconciler",
    "ObjectReconciler",
    "ReconcileResult",
    "Verdict",
]
