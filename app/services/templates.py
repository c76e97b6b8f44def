"""Template variable substitution for notifications.

Only ``{{ name }}`` placeholders are supported; no logic, no filters.
"""

import re
from typing import Any

from app.services.errors import TemplateValidationError

VARIABLE_PATTERN = re.compile(r"{{\s*([^{}\s]+)\s*}}")


def extract_variables(text: str | None) -> list[str]:
    """List placeholder names in order of first appearance."""
    if not text:
        return []
    seen: list[str] = []
    for name in VARIABLE_PATTERN.findall(text):
        if name not in seen:
            seen.append(name)
    return seen


def render(text: str | None, data: dict[str, Any] | None) -> str:
    """Substitute placeholders; unknown names are left as-is."""
    if not text:
        return ""
    data = data or {}

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in data:
            return match.group(0)
        return str(data[name])

    return VARIABLE_PATTERN.sub(_replace, text)


def validate_template(title: str | None, body: str, variables: list[str]) -> None:
    """Raise if title or body use variables missing from ``variables``."""
    used = extract_variables(title) + extract_variables(body)
    missing = [name for name in dict.fromkeys(used) if name not in variables]
    if missing:
        raise TemplateValidationError(
            f"Template is missing variable definitions: {', '.join(missing)}"
        )
