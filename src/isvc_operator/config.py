"""Configuration management for the InferenceService operator process."""

import os
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AuthMode(str, Enum):
    """Authentication mode for Kubernetes API."""

    AUTO = "auto"
    KUBECONFIG = "kubeconfig"
    TOKEN = "token"


class LogLevel(str, Enum):
    """Logging level."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class OperatorConfig(BaseSettings):
    """Configuration for the operator process.

    Configuration is loaded from environment variables with ISVC_OPERATOR_ prefix.
    Cluster-wide serving settings (ingress, storage initializer, ...) are not
    here; they live in the ``inferenceservice-config`` ConfigMap and are
    re-read on every reconcile pass.
    """

    model_config = SettingsConfigDict(
        env_prefix="ISVC_OPERATOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Authentication settings
    auth_mode: AuthMode = Field(
        default=AuthMode.AUTO,
        description="Authentication mode: auto, kubeconfig, or token",
    )
    kubeconfig_path: Path | None = Field(
        default=None,
        description="Path to kubeconfig file (defaults to ~/.kube/config)",
    )
    kubeconfig_context: str | None = Field(
        default=None,
        description="Kubeconfig context to use",
    )
    api_server: str | None = Field(
        default=None,
        description="Kubernetes API server URL (for token auth)",
    )
    api_token: str | None = Field(
        default=None,
        description="Kubernetes API token (for token auth)",
    )

    # Scope
    watch_namespace: str | None = Field(
        default=None,
        description="Namespace to watch (None watches all namespaces)",
    )
    config_map_name: str = Field(
        default="inferenceservice-config",
        description="Name of the cluster serving configuration ConfigMap",
    )
    config_map_namespace: str = Field(
        default_factory=lambda: os.environ.get("POD_NAMESPACE", "kserve"),
        description="Namespace of the serving configuration ConfigMap",
    )

    # Control loop
    workers: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Number of concurrent reconcile workers",
    )
    backoff_base_seconds: float = Field(
        default=0.5,
        gt=0,
        description="Initial requeue delay after a failed pass",
    )
    backoff_max_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Maximum requeue delay after repeated failures",
    )
    watch_timeout_seconds: int = Field(
        default=300,
        ge=10,
        description="Server-side timeout of a single watch request",
    )
    status_update_attempts: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Attempts for a status write before giving up on conflicts",
    )

    # Logging
    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Logging level",
    )

    @field_validator("kubeconfig_path", mode="before")
    @classmethod
    def resolve_kubeconfig_path(cls, v: str | Path | None) -> Path | None:
        """Resolve kubeconfig path, defaulting to standard location."""
        if v is None:
            return None
        path = Path(v).expanduser().resolve()
        return path

    @property
    def effective_kubeconfig_path(self) -> Path:
        """Get the effective kubeconfig path, with default."""
        if self.kubeconfig_path:
            return self.kubeconfig_path
        env_path = os.environ.get("KUBECONFIG")
        if env_path:
            return Path(env_path).expanduser().resolve()
        return Path.home() / ".kube" / "config"

    def validate_auth_config(self) -> list[str]:
        """Validate authentication configuration and return any warnings."""
        warnings = []

        if self.auth_mode == AuthMode.TOKEN:
            if not self.api_server:
                raise ValueError("api_server is required when auth_mode is 'token'")
            if not self.api_token:
                raise ValueError("api_token is required when auth_mode is 'token'")

        if self.auth_mode == AuthMode.KUBECONFIG and not self.effective_kubeconfig_path.exists():
            raise ValueError(f"Kubeconfig file not found: {self.effective_kubeconfig_path}")

        if self.auth_mode == AuthMode.AUTO:
            if Path("/var/run/secrets/kubernetes.io/serviceaccount/token").exists():
                warnings.append("Running in-cluster, will use service account")
            elif not self.effective_kubeconfig_path.exists():
                warnings.append(
                    f"No kubeconfig found at {self.effective_kubeconfig_path}, "
                    "will attempt in-cluster auth"
                )

        if self.backoff_max_seconds < self.backoff_base_seconds:
            warnings.append("backoff_max_seconds is below backoff_base_seconds; using base")

        return warnings


# Global configuration instance
_config: OperatorConfig | None = None


def get_config() -> OperatorConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = OperatorConfig()
    return _config


def configure(**kwargs: Any) -> OperatorConfig:
    """Configure the global settings.

    This should be called before get_config() if you want to override defaults.
    """
    global _config
    _config = OperatorConfig(**kwargs)
    return _config
