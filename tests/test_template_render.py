import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from app.template_render import (
    TransformerError,
    apply_transformer,
    render_app_document,
    render_app_shell,
    render_fields,
    render_template,
)


class TestTemplateRender(unittest.TestCase):
    def test_render_fields_binds_nested_strings(self) -> None:
        fields = {"path": "/users/{{ id }}", "headers": {"X-Page": "{{ page }}"}, "limit": 5}
        out = render_fields(fields, {"id": 7, "page": 2})
        self.assertEqual(out, {"path": "/users/7", "headers": {"X-Page": "2"}, "limit": 5})

    def test_render_fields_missing_binding_is_empty(self) -> None:
        self.assertEqual(render_fields("/users/{{ id }}", {}), "/users/")

    def test_strict_render_rejects_missing(self) -> None:
        with self.assertRaises(Exception):
            render_template("{{ missing }}", {})

    def test_attribute_access_is_blocked(self) -> None:
        out = render_template("{{ name.__class__ }}", {"name": "x"}, strict=False)
        self.assertEqual(out, "")

    def test_identity_transformers(self) -> None:
        data = [{"a": 1}]
        for transformer in (None, "", "data", "return data", "return data;"):
            self.assertEqual(apply_transformer(transformer, data), data)

    def test_transformer_expression(self) -> None:
        data = [{"name": "a", "active": True}, {"name": "b", "active": False}]
        out = apply_transformer('return data | selectattr("active") | map(attribute="name") | list;', data)
        self.assertEqual(out, ["a"])

    def test_transformer_sees_params(self) -> None:
        self.assertEqual(apply_transformer("data[:params.limit]", [1, 2, 3], {"limit": 2}), [1, 2])

    def test_transformer_undefined_raises(self) -> None:
        with self.assertRaises(TransformerError):
            apply_transformer("data.missing", {"a": 1})

    def test_transformer_syntax_error_raises(self) -> None:
        with self.assertRaises(TransformerError):
            apply_transformer("data |", [])

    def test_app_shell(self) -> None:
        shell = render_app_shell("Orders <b>", True, "app_1", "/api/assets/client?appId=app_1&v=1")
        self.assertIn("Orders &lt;b&gt;", shell["head"])
        self.assertIn("production", shell["html"])
        doc = render_app_document(shell, "app_1")
        self.assertIn('data-app-id="app_1"', doc)
        self.assertIn("quarry-app-root", doc)


if __name__ == "__main__":
    unittest.main()
