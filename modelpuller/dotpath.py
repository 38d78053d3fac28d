"""Setting string values inside JSON-like dictionaries by dotted paths.

Only string values are supported, paths only follow object keys (never
arrays), and only existing string values may be overwritten.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any


class DotpathError(ValueError):
    """A dotted path cannot be applied to the given structure."""


def apply_parameter_overrides(params: dict[str, Any] | None, overrides: Mapping[str, str]) -> None:
    """Set each ``dotpath -> value`` from ``overrides`` inside ``params`` in place."""
    for dotpath, value in overrides.items():
        _set(params, dotpath, value)


def _set(params: dict[str, Any] | None, dotpath: str, value: str) -> None:
    if params is None:
        raise DotpathError("got nil map, unable to set value")

    fields = dotpath.split(".")
    *parents, last = fields

    current = params
    for depth, field in enumerate(parents):
        if field not in current:
            child: dict[str, Any] = {}
            current[field] = child
            current = child
            continue
        child = current[field]
        if not isinstance(child, dict):
            raise DotpathError(f"expected an object at '{'.'.join(fields[:depth])}'")
        current = child

    if last in current and not isinstance(current[last], str):
        raise DotpathError(
            f"expected a string at '{dotpath}', but got {current[last]!r}"
        )
    current[last] = value