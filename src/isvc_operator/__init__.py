"""Kubernetes operator reconciling InferenceService resources into raw deployments."""

__version__ = "0.1.0"
