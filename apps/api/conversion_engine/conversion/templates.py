from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

PLACEHOLDER_RE = re.compile(r"\{\s*(?:(source|extension)\.)?([A-Za-z_][A-Za-z0-9_]*)\s*\}")


def template_references(template: str) -> list[tuple[str | None, str]]:
    return [(match.group(1), match.group(2)) for match in PLACEHOLDER_RE.finditer(template)]


def render_name_template(
    template: str,
    record: Mapping[str, Any],
    extensions: Mapping[str, Any],
) -> tuple[str, list[str]]:
    """Substitute ``{source.x}``, ``{extension.x}`` and ``{x}`` placeholders.

    Placeholders without a value are left verbatim and returned as unresolved.
    """

    unresolved: list[str] = []

    def _replace(match: re.Match[str]) -> str:
        namespace, name = match.group(1), match.group(2)
        value: Any = None
        if namespace in (None, "source") and name != "extensions":
            value = record.get(name)
        if value is None and namespace in (None, "extension"):
            value = extensions.get(name)
        if value is None:
            unresolved.append(match.group(0))
            return match.group(0)
        return str(value)

    rendered = PLACEHOLDER_RE.sub(_replace, template)
    return rendered.strip(), unresolved
