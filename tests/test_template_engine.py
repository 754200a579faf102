from __future__ import annotations

from dataclasses import dataclass
from typing import Any, cast

import pytest

from tubedesc.services.errors import CompositionValidationError
from tubedesc.services.template_engine import (
    DESCRIPTION_MAX_CHARS,
    build_description,
    exceeds_description_limit,
    is_default_variable,
    parse_user_variables,
    parse_variables,
)


@dataclass(frozen=True)
class _Template:
    id: str
    content: str


def test_parse_variables_returns_unique_names_in_first_seen_order() -> None:
    content = "{{b}} and {{a}} then {{b}} again {{video_id}}"
    assert parse_variables(content) == ["b", "a", "video_id"]


def test_parse_variables_ignores_malformed_placeholders() -> None:
    content = "{{}} {{ spaced }} {{dash-name}} {single} {{ok_1}}"
    assert parse_variables(content) == ["ok_1"]


def test_parse_user_variables_drops_builtin_defaults() -> None:
    assert parse_user_variables("Watch {{video_id}} with {{guest}}") == ["guest"]
    assert is_default_variable("video_id")
    assert not is_default_variable("guest")


def test_parse_variables_rejects_non_string_content() -> None:
    with pytest.raises(CompositionValidationError):
        parse_variables(cast(Any, None))


def test_build_description_substitutes_and_joins_fragments() -> None:
    description = build_description(["Hi {{name}}", "Bye"], {"name": "Sam"}, " | ", "abc123")
    assert description == "Hi Sam | Bye"


def test_build_description_unbound_variable_becomes_empty() -> None:
    description = build_description(["Hi {{name}}", "Bye"], {}, " | ", "abc123")
    assert description == "Hi  | Bye"


def test_build_description_uses_video_id_default() -> None:
    description = build_description(
        ["https://youtu.be/{{video_id}}"],
        {},
        "\n",
        "abc123",
    )
    assert description == "https://youtu.be/abc123"


def test_build_description_user_binding_overrides_default() -> None:
    description = build_description(["{{video_id}}"], {"video_id": "custom"}, "", "abc123")
    assert description == "custom"


def test_build_description_template_scoped_binding_wins() -> None:
    templates = [_Template(id="t1", content="Host {{name}}"), _Template(id="t2", content="Guest {{name}}")]
    description = build_description(
        templates,
        {"name": "Video-wide"},
        " / ",
        "abc123",
        template_variables={"t2": {"name": "Alex"}},
    )
    assert description == "Host Video-wide / Guest Alex"


def test_build_description_is_idempotent() -> None:
    templates = ["{{intro}}", "Links for {{video_id}}", "{{outro}}"]
    variables = {"intro": "Hello", "outro": "Bye"}
    first = build_description(templates, variables, "\n\n", "v1")
    second = build_description(templates, variables, "\n\n", "v1")
    assert first == second


def test_build_description_empty_templates_and_empty_separator() -> None:
    assert build_description([], {"x": "y"}, " | ", "v1") == ""
    assert build_description(["a", "b"], {}, "", "v1") == "ab"


def test_build_description_does_not_recurse_into_values() -> None:
    description = build_description(["{{a}}"], {"a": "{{b}}", "b": "nope"}, "", "v1")
    assert description == "{{b}}"


@pytest.mark.parametrize(
    ("templates", "variables", "separator", "video_id"),
    [
        ([cast(Any, 3)], {}, "", "v1"),
        (["ok"], cast(Any, {"a": 1}), "", "v1"),
        (["ok"], {}, cast(Any, None), "v1"),
        (["ok"], {}, "", cast(Any, 42)),
    ],
)
def test_build_description_rejects_malformed_inputs(
    templates: list[Any],
    variables: dict[str, str],
    separator: str,
    video_id: str,
) -> None:
    with pytest.raises(CompositionValidationError):
        build_description(templates, variables, separator, video_id)


def test_exceeds_description_limit() -> None:
    assert not exceeds_description_limit("x" * DESCRIPTION_MAX_CHARS)
    assert exceeds_description_limit("x" * (DESCRIPTION_MAX_CHARS + 1))
