"""
Placeholder substitution for request templates.

Tokens are ``{name}`` or ``<name>``; each is replaced verbatim by the string
form of ``params[name]``. A token with no matching parameter is an error,
never passed through to the request.
"""
import json
import re
from typing import Any, Dict

from .errors import JobValidationError

PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}|<(\w+)>")


def render_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def substitute(template: str, params: Dict[str, Any]) -> str:
    """
    Replace every placeholder in ``template``.

    >>> substitute("/users/{id}", {"id": "42"})
    '/users/42'
    """
    missing = []

    def replace(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        if name not in params:
            missing.append(name)
            return match.group(0)
        return render_value(params[name])

    result = PLACEHOLDER_PATTERN.sub(replace, template)
    if missing:
        raise JobValidationError(
            f"Unresolved placeholder(s) {', '.join(sorted(set(missing)))} in {template!r}"
        )
    return result


def substitute_all(value: Any, params: Dict[str, Any]) -> Any:
    """Apply ``substitute`` to every string (keys included) of a JSON-like value."""
    if isinstance(value, str):
        return substitute(value, params)
    if isinstance(value, dict):
        return {
            substitute(key, params) if isinstance(key, str) else key: substitute_all(item, params)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [substitute_all(item, params) for item in value]
    return value
