"""Annotation templates: $label substitution plus $value and $alertname."""

from __future__ import annotations

from collections.abc import Mapping
from string import Template


def render_annotations(
    templates: Mapping[str, str],
    labels: Mapping[str, str],
    value: float,
) -> dict[str, str]:
    """Render each annotation template. Unknown placeholders are left untouched."""
    context: dict[str, str] = dict(labels)
    context["value"] = f"{value:g}"
    context.setdefault("alertname", labels.get("alertname", ""))
    return {key: Template(text).safe_substitute(context) for key, text in templates.items()}
