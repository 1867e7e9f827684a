from __future__ import annotations

import json
import re
from collections.abc import Mapping


PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}|\{(\w+)\}")
DUMP_HEADER = "=== Variables ==="
DUMP_FOOTER = "================="


def render_value(value: object) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def interpolate(template: str | None, variables: Mapping[str, object]) -> str:
    """Replace ``{name}`` and ``{{name}}`` placeholders with variable values.

    Names that are not defined in ``variables`` are left untouched so a
    template can be inspected for what it was still waiting on.
    """
    if not template or not isinstance(template, str):
        return ""

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2)
        if name not in variables:
            return match.group(0)
        return render_value(variables[name])

    return PLACEHOLDER_RE.sub(_replace, template)


def format_variable_dump(variables: Mapping[str, object]) -> str:
    blocks = [
        f"{name}: {json.dumps(value, ensure_ascii=False, indent=2, default=str)}"
        for name, value in variables.items()
        if value is not None
    ]
    if not blocks:
        return ""
    return "\n".join([DUMP_HEADER, "\n\n".join(blocks), DUMP_FOOTER])
