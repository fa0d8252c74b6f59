"""Custom request bodies.

A subscription may replace the default JSON body with a template: a JSON
object whose string values of the exact form ``{{field}}`` are substituted
with the wire payload field of that name. Substitution keeps the value's
JSON type, so ``{"row": "{{record}}"}`` sends the record as an object.
Placeholders are resolved in nested objects and arrays as well.
"""

from __future__ import annotations

import json
import re
from typing import Any

from courier.exceptions import ConfigurationError

_PLACEHOLDER = re.compile(r"^\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}$")


def parse_body_template(template: str) -> dict[str, Any]:
    """Parse a stored template.

    Raises:
        ConfigurationError: If the template is not a JSON object.
    """
    try:
        parsed = json.loads(template)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Body template is not valid JSON: {e.msg}") from e
    if not isinstance(parsed, dict):
        raise ConfigurationError("Body template must be a JSON object")
    return parsed


def _substitute(node: Any, fields: dict[str, Any]) -> Any:
    if isinstance(node, dict):
        return {key: _substitute(value, fields) for key, value in node.items()}
    if isinstance(node, list):
        return [_substitute(item, fields) for item in node]
    if isinstance(node, str):
        match = _PLACEHOLDER.match(node)
        if match:
            return fields.get(match.group(1))
    return node


def render_body_template(template: str, fields: dict[str, Any]) -> dict[str, Any]:
    """Render a template against the wire payload fields.

    Unknown placeholders render as null.

    Raises:
        ConfigurationError: If the template is not a JSON object.
    """
    rendered: dict[str, Any] = _substitute(parse_body_template(template), fields)
    return rendered
