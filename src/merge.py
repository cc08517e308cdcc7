"""Configuration tree helpers: key path expansion and index-aligned deep merge.

A configuration tree is made of dicts, lists and scalars. Lists built from
command-line key paths may contain holes (indices nobody assigned), represented
by the ``HOLE`` sentinel. During a merge a hole never overrides anything, and
``compact`` removes whatever holes remain once merging is done.
"""

import copy
from functools import reduce
from typing import Any

KEY_SEPARATOR = "."


class _Hole:
    def __repr__(self) -> str:
        return "HOLE"

    def __deepcopy__(self, memo):
        return self


HOLE = _Hole()


def _mergeable(value: Any) -> bool:
    return isinstance(value, (dict, list))


def expand_key_path(key: str, value: Any) -> dict:
    """Turn ``targets.0.url`` / ``x`` into ``{"targets": [{"url": x}]}``.

    All-digit segments index into lists; unassigned indices become holes.
    """
    segments = key.split(KEY_SEPARATOR)
    tree: Any = value
    for segment in reversed(segments[1:]):
        if segment.isdigit():
            index = int(segment)
            tree = [HOLE] * index + [tree]
        else:
            tree = {segment: tree}
    return {segments[0]: tree}


def merge(base: Any, override: Any) -> Any:
    """Merge ``override`` onto ``base`` and return a new tree."""
    if isinstance(base, dict) and isinstance(override, dict):
        return _merge_dicts(base, override)
    if isinstance(base, list) and isinstance(override, list):
        return _merge_lists(base, override)
    return copy.deepcopy(override)


def merge_all(trees) -> Any:
    return reduce(merge, trees, {})


def _merge_dicts(base: dict, override: dict) -> dict:
    result = {key: copy.deepcopy(value) for key, value in base.items()}
    for key, value in override.items():
        if key in base and _mergeable(value):
            result[key] = merge(base[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _merge_lists(base: list, override: list) -> list:
    result = [copy.deepcopy(item) for item in base]
    for index, item in enumerate(override):
        if item is HOLE:
            continue
        if index >= len(result) or result[index] is HOLE:
            result.extend([HOLE] * (index + 1 - len(result)))
            result[index] = copy.deepcopy(item)
        elif _mergeable(item):
            earlier = base[index] if index < len(base) else None
            result[index] = merge(earlier, item)
        elif item not in base:
            result.append(copy.deepcopy(item))
    return result


def compact(tree: Any) -> Any:
    """Return ``tree`` with every remaining hole dropped from its lists."""
    if isinstance(tree, dict):
        return {key: compact(value) for key, value in tree.items()}
    if isinstance(tree, list):
        return [compact(item) for item in tree if item is not HOLE]
    return tree
