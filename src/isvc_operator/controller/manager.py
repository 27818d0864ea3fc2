"""Controller: watches, a work queue and a pool of reconcile workers.

Events on InferenceServices and on every owned kind are mapped to the
owning service's ``namespace/name`` key. Passes for the same key never
run concurrently; a spec or annotation change arriving mid-pass
supersedes the running pass, which stops before its next write.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from isvc_operator.clients.base import CRDDefinition, CRDs, K8sClient
from isvc_operator.config import OperatorConfig
from isvc_operator.controller.queue import WorkQueue
from isvc_operator.domains.inference.client import InferenceClient
from isvc_operator.domains.inference.config import load_inference_service_config
from isvc_operator.domains.inference.crds import InferenceCRDs
from isvc_operator.domains.inference.models import InferenceService
from isvc_operator.domains.runtime.client import RuntimeClient
from isvc_operator.reconcilers.inference_service import InferenceServiceReconciler, ReconcileResult
from isvc_operator.utils.context import ReconcileContext
from isvc_operator.utils.errors import (
    AuthenticationError,
    ClusterAPIError,
    ConfigError,
    NotFoundError,
    ReconcilerBugError,
    ReconcileSuperseded,
)
from isvc_operator.utils.labels import ServingLabels

logger = logging.getLogger(__name__)

OWNED_KINDS: tuple[CRDDefinition, ...] = (
    CRDs.DEPLOYMENT,
    CRDs.SERVICE,
    CRDs.HPA,
    CRDs.SCALED_OBJECT,
    CRDs.HTTP_ROUTE,
    CRDs.INGRESS,
    CRDs.OTEL_COLLECTOR,
)

WATCH_RETRY_SECONDS = 5.0
KIND_MISSING_RETRY_SECONDS = 60.0
GONE = 410


def key_for(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def split_key(key: str) -> tuple[str, str]:
    namespace, _, name = key.partition("/")
    return namespace, name


def owner_key(obj: dict[str, Any]) -> str | None:
    """Key of the InferenceService owning ``obj``, if any."""
    metadata = obj.get("metadata") or {}
    namespace = metadata.get("namespace")
    if not namespace:
        return None
    for ref in metadata.get("ownerReferences") or []:
        if ref.get("kind") == InferenceCRDs.INFERENCE_SERVICE.kind and ref.get("controller"):
            return key_for(namespace, ref["name"])
    owner = (metadata.get("labels") or {}).get(ServingLabels.INFERENCE_SERVICE)
    if owner:
        return key_for(namespace, owner)
    return None


def service_key(obj: dict[str, Any]) -> str | None:
    metadata = obj.get("metadata") or {}
    if not metadata.get("namespace") or not metadata.get("name"):
        return None
    return key_for(metadata["namespace"], metadata["name"])


def fingerprint(obj: dict[str, Any]) -> str:
    """What makes a pass stale: generation, annotations and deletion."""
    metadata = obj.get("metadata") or {}
    return json.dumps(
        [
            metadata.get("generation"),
            metadata.get("annotations") or {},
            metadata.get("deletionTimestamp"),
        ],
        sort_keys=True,
    )


class Controller:
    """Runs the InferenceService control loop."""

    def __init__(self, k8s: K8sClient, settings: OperatorConfig) -> None:
        self._k8s = k8s
        self._settings = settings
        self._queue = WorkQueue(settings.backoff_base_seconds, settings.backoff_max_seconds)
        self._inference = InferenceClient(k8s)
        self._runtimes = RuntimeClient(k8s)
        self._lock = threading.Lock()
        self._active: dict[str, tuple[ReconcileContext, str | None]] = {}
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    # -------------------------------------------------------------------------
    # Event intake
    # -------------------------------------------------------------------------

    def on_service_event(self, event_type: str, obj: dict[str, Any]) -> None:
        """Queue the service; supersede a running pass if its intent changed."""
        key = service_key(obj)
        if key is None:
            return
        with self._lock:
            active = self._active.get(key)
            if active is not None:
                ctx, seen = active
                if event_type == "DELETED" or seen != fingerprint(obj):
                    ctx.supersede()
        self._queue.add(key)

    def on_owned_event(self, event_type: str, obj: dict[str, Any]) -> None:
        """Queue the owner of a changed object."""
        key = owner_key(obj)
        if key is not None:
            self._queue.add(key)

    # -------------------------------------------------------------------------
    # Reconcile
    # -------------------------------------------------------------------------

    def reconcile_key(self, key: str, ctx: ReconcileContext | None = None) -> ReconcileResult | None:
        """Run one pass for ``key``.

        The serving configuration is re-read on every pass.

        Returns:
            The pass result, or None when the service no longer exists.
        """
        ctx = ctx or ReconcileContext(key)
        namespace, name = split_key(key)
        try:
            raw = self._inference.get_raw(name, namespace)
        except NotFoundError:
            logger.debug(f"InferenceService {key} not found, nothing to do")
            return None

        with self._lock:
            if key in self._active:
                self._active[key] = (self._active[key][0], fingerprint(raw))
        try:
            isvc = InferenceService.from_cr(raw)
        except ValidationError as e:
            logger.error(f"InferenceService {key} cannot be parsed: {e}")
            return None

        config = load_inference_service_config(
            self._k8s, self._settings.config_map_name, self._settings.config_map_namespace
        )
        reconciler = InferenceServiceReconciler(
            self._k8s,
            config,
            runtimes=self._runtimes,
            ctx=ctx,
            status_attempts=self._settings.status_update_attempts,
        )
        return reconciler.reconcile(isvc)

    def process(self, key: str) -> None:
        """Reconcile a key taken from the queue and decide whether to retry."""
        ctx = ReconcileContext(key)
        with self._lock:
            self._active[key] = (ctx, None)
        try:
            self.reconcile_key(key, ctx)
            self._queue.forget(key)
        except ReconcileSuperseded:
            logger.info(f"Reconcile of {key} superseded, requeueing")
            self._queue.add(key)
        except ReconcilerBugError:
            # Not retried; the next event for the key starts a fresh pass
            logger.exception(f"Reconciler bug while reconciling {key}")
            self._queue.forget(key)
        except (ClusterAPIError, AuthenticationError, ConfigError) as e:
            delay = self._queue.add_rate_limited(key)
            logger.warning(f"Reconcile of {key} failed: {e}; retrying in {delay:.1f}s")
        except Exception:
            delay = self._queue.add_rate_limited(key)
            logger.exception(f"Unexpected error reconciling {key}; retrying in {delay:.1f}s")
        finally:
            with self._lock:
                self._active.pop(key, None)

    def _worker(self) -> None:
        while not self._stop.is_set():
            key = self._queue.get(timeout=1.0)
            if key is None:
                continue
            try:
                self.process(key)
            finally:
                self._queue.done(key)

    # -------------------------------------------------------------------------
    # Watches
    # -------------------------------------------------------------------------

    def _watch(
        self,
        crd: CRDDefinition,
        handler: Callable[[str, dict[str, Any]], None],
        label_selector: str | None = None,
    ) -> None:
        """List then watch a kind forever, relisting when the watch expires."""
        namespace = self._settings.watch_namespace
        resource_version: str | None = None
        while not self._stop.is_set():
            try:
                if resource_version is None:
                    items, resource_version = self._k8s.list_with_version(
                        crd, namespace, label_selector
                    )
                    for item in items:
                        handler("ADDED", item)
                for event_type, obj in self._k8s.watch(
                    crd,
                    namespace=namespace,
                    label_selector=label_selector,
                    resource_version=resource_version,
                    timeout=self._settings.watch_timeout_seconds,
                ):
                    if self._stop.is_set():
                        return
                    if event_type == "ERROR":
                        if obj.get("code") == GONE:
                            logger.info(f"Watch on {crd.kind} expired, relisting")
                            resource_version = None
                        break
                    resource_version = (obj.get("metadata") or {}).get(
                        "resourceVersion", resource_version
                    )
                    handler(event_type, obj)
            except NotFoundError as e:
                logger.warning(f"Cannot watch {crd.kind}: {e}")
                self._stop.wait(KIND_MISSING_RETRY_SECONDS)
            except ClusterAPIError as e:
                if e.status == GONE:
                    resource_version = None
                logger.warning(f"Watch on {crd.kind} failed: {e}")
                self._stop.wait(WATCH_RETRY_SECONDS)

    def _start_thread(self, name: str, target: Callable[..., None], *args: Any) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def start(self) -> None:
        """Start watch threads and the worker pool."""
        self._start_thread(
            "watch-inferenceservice", self._watch, InferenceCRDs.INFERENCE_SERVICE, self.on_service_event
        )
        for crd in OWNED_KINDS:
            self._start_thread(
                f"watch-{crd.plural}",
                self._watch,
                crd,
                self.on_owned_event,
                ServingLabels.owned_selector(),
            )
        for i in range(self._settings.workers):
            self._start_thread(f"reconcile-worker-{i}", self._worker)
        logger.info(
            f"Controller started with {self._settings.workers} workers, watching "
            f"{self._settings.watch_namespace or 'all namespaces'}"
        )

    def stop(self) -> None:
        """Signal every thread to stop and wait briefly for the workers."""
        self._stop.set()
        self._queue.shut_down()
        for thread in self._threads:
            if thread.name.startswith("reconcile-worker"):
                thread.join(timeout=5.0)
        logger.info("Controller stopped")

    def run(self) -> None:
        """Start and block until :meth:`stop` is called."""
        self.start()
        self._stop.wait()
