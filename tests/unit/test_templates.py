"""Template placeholder tests."""

import pytest

from dealflow.contracts import EntityRef, ExecutionContext
from dealflow.errors import TemplateError
from dealflow.templates import TemplateRenderer, build_template_context


@pytest.fixture
def context():
    return ExecutionContext(
        entity=EntityRef(
            id="c1",
            type="client",
            snapshot={"first_name": "Ana", "last_name": "Silva", "address": {"city": "Austin"}},
        ),
        payload={"new_status": "active"},
        acting_user="u7",
    )


def test_placeholders_resolve_against_entity(context):
    renderer = TemplateRenderer()
    assert renderer.render("Hi {{client.first_name}}", context) == "Hi Ana"
    assert renderer.render("Hi {{first_name}} {{last_name}}", context) == "Hi Ana Silva"
    assert renderer.render("{{entity.address.city}}", context) == "Austin"
    assert renderer.render("now {{trigger.new_status}}", context) == "now active"
    assert renderer.render("by {{user.id}}", context) == "by u7"


def test_plain_strings_are_untouched(context):
    assert TemplateRenderer().render("No placeholders here", context) == "No placeholders here"
    assert TemplateRenderer().render(None, context) == ""


def test_unresolved_placeholders_render_empty_by_default(context):
    renderer = TemplateRenderer()
    assert renderer.render("Hi {{client.nickname}}!", context) == "Hi !"
    assert renderer.render("{{deal.address.zip}}", context) == ""


def test_strict_mode_fails_on_unresolved(context):
    renderer = TemplateRenderer("strict")
    with pytest.raises(TemplateError):
        renderer.render("Hi {{client.nickname}}", context)


def test_sandbox_hides_internal_attributes(context):
    assert TemplateRenderer().render("{{ first_name.__class__ }}", context) == ""


def test_render_value_walks_nested_structures(context):
    rendered = TemplateRenderer().render_value(
        {"name": "{{first_name}}", "tags": ["{{client.last_name}}", 3]}, context
    )
    assert rendered == {"name": "Ana", "tags": ["Silva", 3]}


def test_context_exposes_entity_under_its_type():
    ctx = build_template_context(
        ExecutionContext(entity=EntityRef(id="d9", type="deal", snapshot={"title": "Loft"}))
    )
    assert ctx["deal"]["title"] == "Loft"
    assert ctx["entity"]["id"] == "d9"
    assert ctx["title"] == "Loft"
