"""Semantic comparison of desired and observed objects.

Only the fields the operator sets are compared: ``desired`` must be a
subset of ``observed``. Fields the API server defaults or other
controllers add are ignored, and so are paths listed per kind in the
serving configuration. A digest of the last applied desired body is
recorded on each object so that fields removed from the desired body are
also detected.
"""

from __future__ import annotations

import copy
import hashlib
import json
from decimal import Decimal
from typing import Any

from kubernetes.utils import parse_quantity

WILDCARD = "*"

# Server-owned metadata never part of a desired body
_SERVER_METADATA = (
    "resourceVersion",
    "uid",
    "generation",
    "creationTimestamp",
    "managedFields",
    "selfLink",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
)


def parse_path(path: str) -> tuple[str, ...]:
    """Split ``a/b~1c/*`` into ``("a", "b/c", "*")``."""
    return tuple(
        segment.replace("~1", "/").replace("~0", "~") for segment in path.strip("/").split("/")
    )


def _prune(obj: Any, path: tuple[str, ...]) -> None:
    if not path:
        return
    head, rest = path[0], path[1:]
    if isinstance(obj, dict):
        keys = list(obj) if head == WILDCARD else [head]
        for key in keys:
            if key not in obj:
                continue
            if rest:
                _prune(obj[key], rest)
            else:
                del obj[key]
    elif isinstance(obj, list):
        if head == WILDCARD:
            indexes = range(len(obj))
        elif head.isdigit() and int(head) < len(obj):
            indexes = range(int(head), int(head) + 1)
        else:
            return
        if rest:
            for i in indexes:
                _prune(obj[i], rest)
        else:
            for i in reversed(indexes):
                del obj[i]


def prune(obj: Any, paths: tuple[str, ...] | list[str]) -> Any:
    """Deep copy of ``obj`` with every path removed."""
    result = copy.deepcopy(obj)
    for path in paths:
        _prune(result, parse_path(path))
    return result


def _is_empty(value: Any) -> bool:
    if value is None or value is False:
        return True
    if isinstance(value, (str, list, dict)) and len(value) == 0:
        return True
    return type(value) is int and value == 0


def _scalar_equal(desired: Any, observed: Any) -> bool:
    if isinstance(desired, bool) or isinstance(observed, bool):
        return type(desired) is type(observed) and desired == observed
    if desired == observed:
        return True
    if str(desired) == str(observed):
        return True
    # 1000m and 1 are the same quantity
    try:
        return Decimal(parse_quantity(desired)) == Decimal(parse_quantity(observed))
    except (ValueError, TypeError, ArithmeticError):
        return False


def is_subset(desired: Any, observed: Any) -> bool:
    """True when every value set in ``desired`` matches ``observed``.

    Dicts are compared key by key, lists element-wise and with equal
    length, scalars by value. Empty desired values match absent ones.
    """
    if isinstance(desired, dict):
        if not isinstance(observed, dict):
            return _is_empty(desired) and observed is None
        for key, value in desired.items():
            if key not in observed or observed[key] is None:
                if not _is_empty(value):
                    return False
                continue
            if not is_subset(value, observed[key]):
                return False
        return True
    if isinstance(desired, list):
        if not isinstance(observed, list):
            return _is_empty(desired) and observed is None
        if len(desired) != len(observed):
            return False
        return all(is_subset(d, o) for d, o in zip(desired, observed))
    return _scalar_equal(desired, observed)


def comparable(obj: dict[str, Any]) -> dict[str, Any]:
    """Copy of an object without status and server-owned metadata."""
    result = {k: copy.deepcopy(v) for k, v in obj.items() if k != "status"}
    metadata = result.get("metadata")
    if isinstance(metadata, dict):
        for key in _SERVER_METADATA:
            metadata.pop(key, None)
    return result


def semantic_equals(
    desired: dict[str, Any], observed: dict[str, Any], ignore: tuple[str, ...] | list[str] = ()
) -> bool:
    """Compare a desired body with the observed object."""
    return is_subset(prune(comparable(desired), ignore), prune(comparable(observed), ignore))


def desired_hash(desired: dict[str, Any], ignore: tuple[str, ...] | list[str] = ()) -> str:
    """Stable digest of a desired body.

    Recorded on the applied object so that a field dropped from the
    desired body is noticed even though the subset comparison alone
    would still match the observed object.
    """
    body = prune(comparable(desired), ignore)
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()[:16]
