import re
from typing import Any

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")


def interpolate_string(value: str, variables: dict[str, Any]) -> str:
    """Replace {{name}} tokens; unknown names are left as-is."""

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name in variables and variables[name] is not None:
            return str(variables[name])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, value)


def interpolate_template(template: Any, variables: dict[str, Any]) -> Any:
    """Walk a JSON skeleton and interpolate every string value.

    Keys are kept verbatim; non-string scalars pass through untouched.
    The input is never mutated.
    """
    if isinstance(template, str):
        return interpolate_string(template, variables)
    if isinstance(template, dict):
        return {key: interpolate_template(value, variables) for key, value in template.items()}
    if isinstance(template, list):
        return [interpolate_template(item, variables) for item in template]
    return template


def find_placeholders(template: Any) -> set[str]:
    if isinstance(template, str):
        return set(PLACEHOLDER_PATTERN.findall(template))
    if isinstance(template, dict):
        found: set[str] = set()
        for value in template.values():
            found |= find_placeholders(value)
        return found
    if isinstance(template, list):
        found = set()
        for item in template:
            found |= find_placeholders(item)
        return found
    return set()
