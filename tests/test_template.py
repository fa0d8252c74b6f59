"""Tests for custom body templates."""

import pytest

from courier.exceptions import ConfigurationError
from courier.webhooks.template import parse_body_template, render_body_template

FIELDS = {
    "event": "student.created",
    "table": "students",
    "operation": "insert",
    "record": {"id": "stu_1", "name": "Ada"},
    "organization_id": "org_1",
}


class TestParseBodyTemplate:
    """Tests for parse_body_template()."""

    def test_parses_object(self):
        assert parse_body_template('{"text": "{{event}}"}') == {"text": "{{event}}"}

    def test_rejects_invalid_json(self):
        with pytest.raises(ConfigurationError, match="not valid JSON"):
            parse_body_template("{not json")

    @pytest.mark.parametrize("template", ["[1, 2]", '"text"', "42", "null"])
    def test_rejects_non_objects(self, template):
        with pytest.raises(ConfigurationError, match="JSON object"):
            parse_body_template(template)


class TestRenderBodyTemplate:
    """Tests for render_body_template()."""

    def test_substitutes_scalar_fields(self):
        rendered = render_body_template('{"kind": "{{event}}", "org": "{{organization_id}}"}', FIELDS)
        assert rendered == {"kind": "student.created", "org": "org_1"}

    def test_keeps_json_type_of_substituted_value(self):
        """A placeholder for an object renders as the object itself."""
        rendered = render_body_template('{"row": "{{record}}"}', FIELDS)
        assert rendered == {"row": {"id": "stu_1", "name": "Ada"}}

    def test_substitutes_in_nested_objects_and_arrays(self):
        template = '{"meta": {"table": "{{table}}"}, "tags": ["{{operation}}", "static"]}'
        rendered = render_body_template(template, FIELDS)
        assert rendered == {"meta": {"table": "students"}, "tags": ["insert", "static"]}

    def test_tolerates_whitespace_inside_braces(self):
        assert render_body_template('{"e": "{{ event }}"}', FIELDS) == {"e": "student.created"}

    def test_unknown_placeholder_renders_null(self):
        assert render_body_template('{"x": "{{missing}}"}', FIELDS) == {"x": None}

    def test_partial_placeholders_are_left_alone(self):
        """Only strings that are exactly one placeholder are substituted."""
        rendered = render_body_template('{"text": "New {{event}} received"}', FIELDS)
        assert rendered == {"text": "New {{event}} received"}

    def test_non_string_values_pass_through(self):
        rendered = render_body_template('{"n": 3, "ok": true, "none": null}', FIELDS)
        assert rendered == {"n": 3, "ok": True, "none": None}

    def test_malformed_template_raises(self):
        with pytest.raises(ConfigurationError):
            render_body_template("[]", FIELDS)
