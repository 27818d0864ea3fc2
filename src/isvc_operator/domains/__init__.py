"""Serving domain models and lookups."""
