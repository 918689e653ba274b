"""Context copying and the deterministic merge applied at a join."""

from __future__ import annotations

import copy
from typing import Any, Mapping, Sequence

Context = dict[str, Any]

_REMOVED = object()


def copy_context(context: Mapping[str, Any]) -> Context:
    """Return an independent deep copy of ``context``."""
    return copy.deepcopy(dict(context))


def written_keys(base: Mapping[str, Any], result: Mapping[str, Any]) -> dict[str, Any]:
    """Keys a branch added, changed or removed relative to ``base``.

    Removed keys map to a private sentinel.
    """

    writes: dict[str, Any] = {
        key: value
        for key, value in result.items()
        if key not in base or base[key] != value
    }
    for key in base:
        if key not in result:
            writes[key] = _REMOVED
    return writes


def deep_merge(target: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    """Merge ``updates`` into ``target`` in place; nested dicts merge recursively."""
    for key, value in updates.items():
        if value is _REMOVED:
            target.pop(key, None)
        elif isinstance(value, Mapping):
            if not isinstance(target.get(key), dict):
                target[key] = {}
            deep_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


def merge_branches(
    base: Mapping[str, Any], results: Sequence[Mapping[str, Any]]
) -> Context:
    """Merge branch contexts produced by one fork.

    ``results`` must be in the branches' declared order. Keys written by a
    single branch are taken as-is. Where several branches wrote the same key,
    nested mappings are merged key by key and any remaining conflict goes to
    the branch declared later. The merged value therefore depends only on
    the declared order, never on the order in which branches finished.
    """

    merged = copy_context(base)
    for result in results:
        deep_merge(merged, _nested_writes(base, result))
    return merged


def _nested_writes(base: Mapping[str, Any], result: Mapping[str, Any]) -> dict[str, Any]:
    writes = written_keys(base, result)
    for key, value in list(writes.items()):
        original = base.get(key)
        if isinstance(value, Mapping) and isinstance(original, Mapping):
            # only the sub-keys this branch touched take part in the merge
            writes[key] = _nested_writes(original, value)
    return writes


__all__ = ["Context", "copy_context", "written_keys", "deep_merge", "merge_branches"]
