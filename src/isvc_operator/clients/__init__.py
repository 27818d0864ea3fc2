"""Kubernetes API clients."""
