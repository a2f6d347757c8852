from __future__ import annotations

import copy
from typing import Any

CUSTOM_FIELDS_KEY = "customFields"
ENTITY_KEYS = ("contact", "deal")


def resolve_path(path: str | None, root: Any) -> Any:
    """Walk ``root`` along a dotted path; any miss resolves to ``None``."""
    if not path or not isinstance(path, str):
        return None
    current = root
    for segment in path.split("."):
        if not isinstance(current, dict) or segment not in current:
            return None
        current = current[segment]
    return current


def entity_snapshot(data: dict[str, Any] | None) -> dict[str, Any] | None:
    if not isinstance(data, dict):
        return None
    for key in ENTITY_KEYS:
        snapshot = data.get(key)
        if isinstance(snapshot, dict):
            return snapshot
    return None


def resolve_field(field: str | None, data: dict[str, Any] | None) -> Any:
    """Resolve a condition field against an event payload.

    Paths qualified with an entity key (``contact.email``, ``deal.contact.email``)
    resolve against the payload. Anything else resolves against the entity
    snapshot first and then against the payload itself, which exposes
    event-level keys such as ``changedFields`` and ``previousStageId``.
    """
    if not field or not isinstance(field, str) or not isinstance(data, dict):
        return None

    head = field.split(".", 1)[0]
    if head in ENTITY_KEYS and isinstance(data.get(head), dict):
        return resolve_path(field, data)

    snapshot = entity_snapshot(data)
    if snapshot is not None:
        value = resolve_path(field, snapshot)
        if value is not None:
            return value
    return resolve_path(field, data)


def set_path(root: dict[str, Any] | None, path: str, value: Any) -> dict[str, Any]:
    result = copy.deepcopy(root) if isinstance(root, dict) else {}
    segments = path.split(".")
    cursor = result
    for segment in segments[:-1]:
        child = cursor.get(segment)
        if not isinstance(child, dict):
            child = {}
            cursor[segment] = child
        cursor = child
    cursor[segments[-1]] = value
    return result


def split_custom_field_path(path: str) -> str | None:
    prefix = f"{CUSTOM_FIELDS_KEY}."
    if path.startswith(prefix) and len(path) > len(prefix):
        return path[len(prefix):]
    return None
