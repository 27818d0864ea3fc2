"""Watch-driven controller running reconcile passes on a worker pool."""

from isvc_operator.controller.manager import Controller
from isvc_operator.controller.queue import WorkQueue

__all__ = ["Controller", "WorkQueue"]
