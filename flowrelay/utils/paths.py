"""Dotted-path access and ``{{path}}`` template rendering."""

from __future__ import annotations

import json
import re
from typing import Any

PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")


def get_path(data: Any, path: str) -> Any:
    """Read ``path`` (``a.b.0.c``) from nested dicts/lists; ``None`` if missing."""
    current = data
    for key in path.split("."):
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, (list, tuple)) and key.lstrip("-").isdigit():
            index = int(key)
            current = current[index] if -len(current) <= index < len(current) else None
        else:
            return None
    return current


def set_path(target: dict[str, Any], path: str, value: Any) -> None:
    """Write ``value`` at ``path`` in ``target``, creating dicts on the way."""
    *parents, last = path.split(".")
    current = target
    for key in parents:
        child = current.get(key)
        if not isinstance(child, dict):
            child = {}
            current[key] = child
        current = child
    current[last] = value


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def interpolate(text: str, data: Any) -> str:
    """Replace every placeholder in ``text`` with its value rendered as text."""
    return PLACEHOLDER.sub(lambda m: _stringify(get_path(data, m.group(1).strip())), text)


def _render_value(value: Any, data: Any) -> Any:
    if isinstance(value, str):
        whole = PLACEHOLDER.fullmatch(value.strip())
        if whole:
            return get_path(data, whole.group(1).strip())
        return interpolate(value, data)
    if isinstance(value, dict):
        return {key: _render_value(item, data) for key, item in value.items()}
    if isinstance(value, list):
        return [_render_value(item, data) for item in value]
    return value


def render_template(template: Any, data: Any) -> Any:
    """Render a body template against ``data``.

    JSON templates are rendered structurally so that ``{"x": "{{input}}"}``
    keeps the type of ``input``. Any other string is interpolated as text.
    Unresolved placeholders become ``None`` (whole value) or ``""`` (inline).
    """
    if isinstance(template, str):
        try:
            parsed = json.loads(template)
        except ValueError:
            return _render_value(template, data)
        if isinstance(parsed, (dict, list)):
            return _render_value(parsed, data)
        return _render_value(template, data)
    return _render_value(template, data)
