"""``{{ path }}`` placeholder rendering for node configs and prompts."""

import json
import re
from dataclasses import dataclass, field
from typing import Any, List, Mapping

from .expressions import MISSING, resolve_path

_PLACEHOLDER = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


@dataclass
class TemplateResult:
    """Rendered value plus the placeholders that did not resolve."""

    value: Any
    missing_paths: List[str] = field(default_factory=list)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple, bool)) or value is None:
        return json.dumps(value, default=str)
    return str(value)


def render_string(template: str, context: Mapping[str, Any]) -> TemplateResult:
    missing: List[str] = []

    def substitute(match: "re.Match[str]") -> str:
        path = match.group(1)
        value = resolve_path(context, path)
        if value is MISSING:
            missing.append(path)
            return ""
        return _stringify(value)

    return TemplateResult(_PLACEHOLDER.sub(substitute, template), missing)


def render_value(value: Any, context: Mapping[str, Any]) -> TemplateResult:
    """Render placeholders inside nested dicts/lists.

    A string that is exactly one placeholder keeps the resolved value's type.
    """
    if isinstance(value, str):
        whole = _PLACEHOLDER.fullmatch(value.strip())
        if whole:
            resolved = resolve_path(context, whole.group(1))
            if resolved is MISSING:
                return TemplateResult(None, [whole.group(1)])
            return TemplateResult(resolved)
        return render_string(value, context)

    if isinstance(value, Mapping):
        rendered = {}
        missing: List[str] = []
        for key, item in value.items():
            result = render_value(item, context)
            rendered[key] = result.value
            missing.extend(result.missing_paths)
        return TemplateResult(rendered, missing)

    if isinstance(value, (list, tuple)):
        items = []
        missing = []
        for item in value:
            result = render_value(item, context)
            items.append(result.value)
            missing.extend(result.missing_paths)
        return TemplateResult(items, missing)

    return TemplateResult(value)
