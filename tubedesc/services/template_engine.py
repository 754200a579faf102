from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import Protocol

from tubedesc.services.errors import CompositionValidationError

PLACEHOLDER_PATTERN = re.compile(r"\{\{([A-Za-z0-9_]+)\}\}")
VIDEO_ID_VARIABLE = "video_id"
DEFAULT_VARIABLES: frozenset[str] = frozenset({VIDEO_ID_VARIABLE})
DESCRIPTION_MAX_CHARS = 5000


class TemplateLike(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def content(self) -> str: ...


def parse_variables(content: object) -> list[str]:
    if not isinstance(content, str):
        raise CompositionValidationError("template content must be a string")
    names: list[str] = []
    for match in PLACEHOLDER_PATTERN.finditer(content):
        name = match.group(1)
        if name not in names:
            names.append(name)
    return names


def parse_user_variables(content: object) -> list[str]:
    """Placeholder names a user has to bind; built-in defaults are left out."""
    return [name for name in parse_variables(content) if name not in DEFAULT_VARIABLES]


def is_default_variable(name: str) -> bool:
    return name in DEFAULT_VARIABLES


def build_description(
    templates: Sequence[TemplateLike | str],
    variables: Mapping[str, str],
    separator: str,
    video_id: str,
    *,
    template_variables: Mapping[str, Mapping[str, str]] | None = None,
) -> str:
    """
    Compose the final description for one video.

    Each placeholder resolves, in order, to the binding scoped to its own
    template, the video-wide binding, the built-in default, or the empty
    string. Resolved fragments are joined with `separator`.
    """
    if not isinstance(separator, str):
        raise CompositionValidationError("separator must be a string")
    if not isinstance(video_id, str):
        raise CompositionValidationError("video_id must be a string")
    _ensure_string_values(variables, label="variables")
    if template_variables is not None:
        for template_id, scoped in template_variables.items():
            _ensure_string_values(scoped, label=f"template_variables[{template_id}]")

    defaults = {VIDEO_ID_VARIABLE: video_id}
    fragments: list[str] = []
    for template in templates:
        if isinstance(template, str):
            template_id = None
            content: object = template
        else:
            template_id = template.id
            content = template.content
        if not isinstance(content, str):
            raise CompositionValidationError("template content must be a string")

        scoped: Mapping[str, str] = {}
        if template_variables is not None and template_id is not None:
            scoped = template_variables.get(template_id, {})

        fragments.append(_substitute(content, scoped, variables, defaults))
    return separator.join(fragments)


def exceeds_description_limit(description: str) -> bool:
    return len(description) > DESCRIPTION_MAX_CHARS


def _substitute(
    content: str,
    scoped: Mapping[str, str],
    variables: Mapping[str, str],
    defaults: Mapping[str, str],
) -> str:
    def _resolve(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in scoped:
            return scoped[name]
        if name in variables:
            return variables[name]
        return defaults.get(name, "")

    return PLACEHOLDER_PATTERN.sub(_resolve, content)


def _ensure_string_values(values: object, *, label: str) -> None:
    if not isinstance(values, Mapping):
        raise CompositionValidationError(f"{label} must be a mapping")
    for key, value in values.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise CompositionValidationError(f"{label} must map strings to strings")
