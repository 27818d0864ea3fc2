"""InferenceService read and status-write operations."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from isvc_operator.domains.inference.crds import InferenceCRDs
from isvc_operator.domains.inference.models import InferenceService, InferenceServiceStatus
from isvc_operator.utils.errors import ConflictError

if TYPE_CHECKING:
    from isvc_operator.clients.base import K8sClient

logger = logging.getLogger(__name__)


class InferenceClient:
    """Client for InferenceService operations."""

    def __init__(self, k8s: K8sClient) -> None:
        self._k8s = k8s

    def get_raw(self, name: str, namespace: str) -> dict[str, Any]:
        """Get an InferenceService as a raw dict."""
        return self._k8s.get(InferenceCRDs.INFERENCE_SERVICE, name=name, namespace=namespace)

    def update_status(
        self,
        name: str,
        namespace: str,
        compute: Callable[[InferenceService], InferenceServiceStatus | None],
        attempts: int = 5,
        before_write: Callable[[], None] | None = None,
    ) -> InferenceServiceStatus | None:
        """Write status with read-modify-write-retry-on-conflict.

        ``compute`` receives the freshly read service and returns the next
        status, or None when nothing changed (no write is made). On a 409
        the whole read-compute-write cycle is repeated.

        Returns:
            The status written, or None when no write was needed.

        Raises:
            ConflictError: If every attempt conflicted.
        """
        last_error: ConflictError | None = None
        for attempt in range(1, attempts + 1):
            raw = self.get_raw(name, namespace)
            current = InferenceService.from_cr(raw)
            next_status = compute(current)
            if next_status is None:
                return None

            if before_write is not None:
                before_write()

            body = dict(raw)
            body["status"] = next_status.to_cr()
            try:
                self._k8s.replace_status(InferenceCRDs.INFERENCE_SERVICE, body=body, namespace=namespace)
                logger.debug(f"Updated status of InferenceService {namespace}/{name}")
                return next_status
            except ConflictError as e:
                logger.info(
                    f"Status conflict on InferenceService {namespace}/{name} "
                    f"(attempt {attempt}/{attempts}), retrying"
                )
                last_error = e

        assert last_error is not None
        raise last_error
