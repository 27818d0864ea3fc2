"""Per-object reconcile protocol.

Each reconciler owns one desired object. A pass classifies it with a
:class:`Verdict` and performs at most one mutating call:

    not found      + should create  -> CREATE
    not found      + otherwise      -> SKIPPED
    found          + should delete  -> DELETE
    found          + semantic equal -> EXISTED
    found          + otherwise      -> UPDATE
    lookup failure                  -> UNKNOWN (error propagates)

Desired bodies carry a digest of themselves in an annotation, so an
object applied from an older desired body never compares equal even when
the new body only dropped fields.
"""

from __future__ import annotations

import copy
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

from isvc_operator.clients.base import CRDDefinition
from isvc_operator.domains.inference.config import InferenceServiceConfig
from isvc_operator.utils.annotations import ServingAnnotations
from isvc_operator.utils.context import ReconcileContext
from isvc_operator.utils.errors import ClusterAPIError, NotFoundError, ReconcilerBugError
from isvc_operator.utils.semantic import desired_hash, semantic_equals

if TYPE_CHECKING:
    from isvc_operator.clients.base import K8sClient

logger = logging.getLogger(__name__)


class Verdict(str, Enum):
    """Outcome of comparing a desired object with the cluster."""

    CREATE = "Create"
    UPDATE = "Update"
    EXISTED = "Existed"
    UNKNOWN = "Unknown"
    DELETE = "Delete"
    SKIPPED = "Skipped"


def condition_true(obj: dict[str, Any] | None, condition_type: str) -> bool:
    """Check ``status.conditions[type].status == "True"`` on a raw object."""
    if not obj:
        return False
    for condition in (obj.get("status") or {}).get("conditions") or []:
        if condition.get("type") == condition_type:
            return str(condition.get("status")) == "True"
    return False


class ObjectReconciler:
    """Reconciles one desired object of ``crd``'s kind.

    ``present`` says whether the object should exist at all; when False
    the desired body only needs metadata and an existing object is
    deleted.
    """

    crd: CRDDefinition

    def __init__(
        self,
        k8s: K8sClient,
        desired: dict[str, Any],
        config: InferenceServiceConfig,
        ctx: ReconcileContext | None = None,
        present: bool = True,
    ) -> None:
        metadata = (desired or {}).get("metadata") or {}
        if not metadata.get("name") or not metadata.get("namespace"):
            raise ReconcilerBugError(f"{self.kind} reconciler built without name and namespace")
        self._k8s = k8s
        self.desired = desired
        self._config = config
        self._ctx = ctx or ReconcileContext()
        self._present = present
        self.verdict: Verdict | None = None
        self.observed: dict[str, Any] | None = None

    @property
    def kind(self) -> str:
        return self.crd.kind

    @property
    def name(self) -> str:
        return self.desired["metadata"]["name"]

    @property
    def namespace(self) -> str:
        return self.desired["metadata"]["namespace"]

    @property
    def present(self) -> bool:
        return self._present

    def should_create(self) -> bool:
        return self._present

    def should_delete(self) -> bool:
        return not self._present

    def ignore_fields(self) -> tuple[str, ...]:
        return self._config.semantic_equality.for_kind(self.kind)

    def stamp_desired_hash(self) -> None:
        """Record the digest of the desired body on the body itself."""
        if not self._present:
            return
        metadata = self.desired["metadata"]
        annotations = dict(metadata.get("annotations") or {})
        annotations.pop(ServingAnnotations.DESIRED_HASH, None)
        unstamped = {**self.desired, "metadata": {**metadata, "annotations": annotations}}
        annotations[ServingAnnotations.DESIRED_HASH] = desired_hash(unstamped, self.ignore_fields())
        metadata["annotations"] = annotations

    def semantic_equals(self, existing: dict[str, Any]) -> bool:
        return semantic_equals(self.desired, existing, self.ignore_fields())

    def prepare_update(self, existing: dict[str, Any]) -> dict[str, Any]:
        """Body for a replace, carrying the observed resourceVersion."""
        body = copy.deepcopy(self.desired)
        body["metadata"]["resourceVersion"] = existing["metadata"]["resourceVersion"]
        return body

    def check_exists(self) -> tuple[Verdict, dict[str, Any] | None]:
        """Classify the desired object against the cluster."""
        self.stamp_desired_hash()
        try:
            existing = self._k8s.get(self.crd, self.name, self.namespace)
        except NotFoundError:
            if self.should_create():
                return Verdict.CREATE, None
            return Verdict.SKIPPED, None
        if self.should_delete():
            return Verdict.DELETE, existing
        if self.semantic_equals(existing):
            return Verdict.EXISTED, existing
        return Verdict.UPDATE, existing

    def reconcile(self) -> dict[str, Any] | None:
        """Drive the object towards the desired state.

        Returns:
            The object as it now exists in the cluster, or None when absent.
        """
        try:
            verdict, existing = self.check_exists()
        except ClusterAPIError:
            self.verdict = Verdict.UNKNOWN
            logger.warning(f"{self.kind} {self.namespace}/{self.name} reconcile: {Verdict.UNKNOWN.value}")
            raise

        self.verdict = verdict
        if verdict in (Verdict.EXISTED, Verdict.SKIPPED):
            logger.debug(f"{self.kind} {self.namespace}/{self.name} reconcile: {verdict.value}")
            self.observed = existing
            return existing

        logger.info(f"{self.kind} {self.namespace}/{self.name} reconcile: {verdict.value}")
        self._ctx.check()
        if verdict == Verdict.CREATE:
            self.observed = self._k8s.create(self.crd, self.desired, self.namespace)
        elif verdict == Verdict.UPDATE:
            assert existing is not None
            self.observed = self._k8s.replace(
                self.crd, self.prepare_update(existing), self.namespace
            )
        elif verdict == Verdict.DELETE:
            try:
                self._k8s.delete(self.crd, self.name, self.namespace)
            except NotFoundError:
                logger.debug(f"{self.kind} {self.namespace}/{self.name} already gone")
            self.observed = None
        return self.observed

    def is_ready(self) -> bool:
        """Readiness of the observed object; objects without status are ready."""
        return self.observed is not None
