"""Per-pass reconcile context used to detect superseded work."""

from __future__ import annotations

import threading

from isvc_operator.utils.errors import ReconcileSuperseded


class ReconcileContext:
    """Carries a supersede flag for one reconcile pass.

    The controller sets the flag when a newer event arrives for the same
    key while a pass is running; reconcilers check it before every
    mutating call so stale passes stop writing.
    """

    def __init__(self, key: str = "") -> None:
        self.key = key
        self._superseded = threading.Event()

    def supersede(self) -> None:
        self._superseded.set()

    @property
    def superseded(self) -> bool:
        return self._superseded.is_set()

    def check(self) -> None:
        """Raise if a newer pass has taken over this key.

        Raises:
            ReconcileSuperseded: If the pass was superseded.
        """
        if self._superseded.is_set():
            raise ReconcileSuperseded(f"Reconcile of {self.key} superseded by a newer event")
