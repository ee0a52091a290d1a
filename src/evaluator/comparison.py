"""
Structural comparison of JSON-like values.

Tool parameters and outputs come straight out of recorded traces, so they may
be arbitrarily nested and occasionally self-referential. Both helpers here
track the current recursion path (an ordered stack of container ids) rather
than a global seen-set: two sibling subtrees may legitimately be the same
object, only re-entering an ancestor is a cycle.
"""

import logging
from typing import Any, List

logger = logging.getLogger(__name__)

CIRCULAR_MARKER = "[Circular]"

_CONTAINERS = (dict, list, tuple)


def deep_equals(a: Any, b: Any, ignore_order: bool = False) -> bool:
    """Return True when ``a`` and ``b`` are structurally equal.

    Lists compare positionally unless ``ignore_order`` is set. A cycle counts
    as equal only when both sides loop back to the ancestor at the same depth
    of the comparison path. Never raises: any internal fault compares unequal.
    """
    try:
        return _equals(a, b, [], [], ignore_order)
    except Exception as e:
        logger.debug(f"deep_equals gave up: {type(e).__name__}: {str(e)[:100]}")
        return False


def _equals(a: Any, b: Any, path_a: List[int], path_b: List[int], ignore_order: bool) -> bool:
    if isinstance(a, _CONTAINERS) or isinstance(b, _CONTAINERS):
        depth_a = _path_index(path_a, a)
        depth_b = _path_index(path_b, b)
        if depth_a is not None or depth_b is not None:
            return depth_a == depth_b
        return _equals_containers(a, b, path_a, path_b, ignore_order)
    return _equals_scalars(a, b)


def _path_index(path: List[int], value: Any):
    if not isinstance(value, _CONTAINERS):
        return None
    ident = id(value)
    for index, entry in enumerate(path):
        if entry == ident:
            return index
    return None


def _equals_containers(a: Any, b: Any, path_a: List[int], path_b: List[int], ignore_order: bool) -> bool:
    if isinstance(a, dict) != isinstance(b, dict):
        return False
    if isinstance(a, dict):
        if a.keys() != b.keys():
            return False
        pairs = [(a[key], b[key]) for key in a]
    else:
        if not isinstance(a, (list, tuple)) or not isinstance(b, (list, tuple)):
            return False
        if len(a) != len(b):
            return False
        if ignore_order:
            return _equals_unordered(a, b, path_a, path_b)
        pairs = list(zip(a, b))

    path_a.append(id(a))
    path_b.append(id(b))
    try:
        return all(_equals(x, y, path_a, path_b, ignore_order) for x, y in pairs)
    finally:
        path_a.pop()
        path_b.pop()


def _equals_unordered(a, b, path_a: List[int], path_b: List[int]) -> bool:
    path_a.append(id(a))
    path_b.append(id(b))
    try:
        unused = list(b)
        for x in a:
            for index, y in enumerate(unused):
                if _equals(x, y, path_a, path_b, True):
                    del unused[index]
                    break
            else:
                return False
        return True
    finally:
        path_a.pop()
        path_b.pop()


def _equals_scalars(a: Any, b: Any) -> bool:
    # JSON booleans are not numbers
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b
    if type(a) is not type(b):
        return False
    return bool(a == b)


def to_json_safe(value: Any) -> Any:
    """Copy ``value`` into plain JSON types, replacing cycles with a marker.

    Used wherever recorded tool payloads are echoed back out (score records,
    judge prompts, persisted outputs).
    """
    return _to_json_safe(value, [])


def _to_json_safe(value: Any, path: List[int]) -> Any:
    if isinstance(value, _CONTAINERS):
        if id(value) in path:
            return CIRCULAR_MARKER
        path.append(id(value))
        try:
            if isinstance(value, dict):
                return {str(k): _to_json_safe(v, path) for k, v in value.items()}
            return [_to_json_safe(v, path) for v in value]
        finally:
            path.pop()
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if hasattr(value, "model_dump"):
        return _to_json_safe(value.model_dump(), path)
    return str(value)
