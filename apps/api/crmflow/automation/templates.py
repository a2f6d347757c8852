from __future__ import annotations

import re
from typing import Any

from crmflow.automation.conditions import stringify
from crmflow.automation.fields import entity_snapshot, resolve_field

_PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")
_QUOTES_RE = re.compile(r"['\"]")


def _full_name(data: dict[str, Any]) -> str | None:
    snapshot = entity_snapshot(data) or {}
    person = snapshot if "firstName" in snapshot or "lastName" in snapshot else snapshot.get("contact")
    if not isinstance(person, dict):
        return None
    parts = [str(person.get(key) or "").strip() for key in ("firstName", "lastName")]
    joined = " ".join(part for part in parts if part)
    return joined or None


def lookup_variable(name: str, data: dict[str, Any] | None) -> Any:
    if not isinstance(data, dict):
        return None
    if name == "fullName":
        return _full_name(data)
    return resolve_field(name, data)


def render_template(template: str | None, data: dict[str, Any] | None) -> str:
    """Replace ``{{path}}`` and ``{{path || 'fallback'}}`` placeholders.

    An unresolved placeholder without a fallback is left in the output.
    """
    if not template:
        return ""

    def _replace(match: re.Match[str]) -> str:
        expression = match.group(1).strip()
        fallback: str | None = None
        if "||" in expression:
            name, raw_fallback = (part.strip() for part in expression.split("||", 1))
            fallback = _QUOTES_RE.sub("", raw_fallback)
        else:
            name = expression

        value = lookup_variable(name, data)
        if value is None or value == "":
            return fallback if fallback is not None else match.group(0)
        return stringify(value)

    return _PLACEHOLDER_RE.sub(_replace, template)
