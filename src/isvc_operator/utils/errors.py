"""Exception hierarchy for the InferenceService operator.

Errors fall into three groups that the reconcile loop treats differently:

- Cluster API errors (``ClusterAPIError`` and subclasses) are transient and
  retried by the work queue with backoff.
- Invalid desired state (``InvalidDesiredStateError`` and subclasses) is
  terminal for the pass and surfaced as a component condition.
- ``ReconcilerBugError`` marks a programming error; the pass aborts without
  writes.
"""


class OperatorError(Exception):
    """Base exception for operator errors."""

    pass


class AuthenticationError(OperatorError):
    """Could not authenticate against the Kubernetes API."""

    pass


class ClusterAPIError(OperatorError):
    """A Kubernetes API call failed."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(ClusterAPIError):
    """Resource not found."""

    def __init__(self, kind: str, name: str, namespace: str | None = None) -> None:
        self.kind = kind
        self.name = name
        self.namespace = namespace
        where = f" in namespace '{namespace}'" if namespace else ""
        super().__init__(f"{kind} '{name}' not found{where}", status=404)


class ResourceExistsError(ClusterAPIError):
    """Resource already exists."""

    def __init__(self, kind: str, name: str, namespace: str | None = None) -> None:
        self.kind = kind
        self.name = name
        self.namespace = namespace
        where = f" in namespace '{namespace}'" if namespace else ""
        super().__init__(f"{kind} '{name}' already exists{where}", status=409)


class ConflictError(ClusterAPIError):
    """Optimistic concurrency conflict (stale resourceVersion)."""

    def __init__(self, kind: str, name: str) -> None:
        self.kind = kind
        self.name = name
        super().__init__(f"Conflict writing {kind} '{name}': object was modified", status=409)


class TransientAPIError(ClusterAPIError):
    """Throttling or server-side failure worth retrying."""

    pass


class InvalidDesiredStateError(OperatorError):
    """The declared spec cannot be turned into a consistent topology.

    ``reason`` is a short CamelCase classification written to the
    component condition; the message is the human-readable detail.
    """

    reason = "InvalidSpec"

    def __init__(self, message: str, reason: str | None = None) -> None:
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class PlacementError(InvalidDesiredStateError):
    """No head/worker topology satisfies the requested GPU count."""

    reason = "InsufficientGPUs"


class StorageURIError(InvalidDesiredStateError):
    """Storage URI is missing or uses an unsupported protocol."""

    reason = "InvalidStorageURI"


class RuntimeLookupError(InvalidDesiredStateError):
    """No usable serving runtime for the declared model."""

    reason = "RuntimeNotRecognized"


class ConfigError(InvalidDesiredStateError):
    """The cluster serving configuration could not be parsed."""

    reason = "InvalidConfiguration"


class ReconcilerBugError(OperatorError):
    """Programming error detected during reconciliation."""

    pass


class ReconcileSuperseded(OperatorError):
    """A newer event arrived for the same service; abandon this pass."""

    pass
