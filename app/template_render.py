from __future__ import annotations

from pathlib import Path
from typing import Any

from jinja2 import StrictUndefined, TemplateError, Undefined
from jinja2.sandbox import ImmutableSandboxedEnvironment

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

_ALLOWED_FILTERS = {
    "default",
    "lower",
    "upper",
    "title",
    "trim",
    "replace",
    "round",
    "length",
    "int",
    "float",
    "string",
    "e",
    "escape",
    "first",
    "last",
    "list",
    "map",
    "select",
    "selectattr",
    "reject",
    "rejectattr",
    "sort",
    "unique",
    "join",
    "sum",
    "min",
    "max",
    "batch",
    "slice",
}

_ALLOWED_TESTS = {
    "defined",
    "undefined",
    "none",
    "equalto",
    "eq",
    "ne",
    "gt",
    "ge",
    "lt",
    "le",
    "in",
    "string",
    "number",
    "mapping",
}


class TransformerError(ValueError):
    pass


class _LockedSandbox(ImmutableSandboxedEnvironment):
    def is_safe_attribute(self, obj, attr, value) -> bool:
        return False

    def is_safe_callable(self, obj) -> bool:
        return False


def _env(strict: bool) -> _LockedSandbox:
    env = _LockedSandbox(autoescape=False, undefined=StrictUndefined if strict else Undefined)
    env.globals = {}
    env.filters = {key: val for key, val in env.filters.items() if key in _ALLOWED_FILTERS}
    env.tests = {key: val for key, val in env.tests.items() if key in _ALLOWED_TESTS}
    return env


def _sanitize_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(key): _sanitize_value(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize_value(val) for val in value]
    return str(value)


def _sanitize_context(context: dict[str, Any] | None) -> dict[str, Any]:
    return _sanitize_value(context or {}) or {}


def render_template(text: str | None, context: dict[str, Any], strict: bool = True) -> str:
    env = _env(strict=strict)
    tmpl = env.from_string(text or "")
    return tmpl.render(_sanitize_context(context))


def render_fields(value: Any, context: dict[str, Any]) -> Any:
    """Render ``{{ name }}`` bindings in every string of a query's fields."""
    if isinstance(value, str):
        if "{{" not in value and "{%" not in value:
            return value
        return render_template(value, context, strict=False)
    if isinstance(value, dict):
        return {key: render_fields(val, context) for key, val in value.items()}
    if isinstance(value, list):
        return [render_fields(val, context) for val in value]
    return value


def _transformer_source(transformer: str | None) -> str | None:
    text = (transformer or "").strip()
    if text.startswith("return "):
        text = text[len("return "):].strip()
    text = text.rstrip(";").strip()
    if not text or text == "data":
        return None
    return text


def apply_transformer(transformer: str | None, data: Any, params: dict[str, Any] | None = None) -> Any:
    """Evaluate a transformer expression against the raw query result.

    The expression sees ``data`` (the raw result) and ``params`` (the resolved
    parameters), e.g. ``data | selectattr("active") | list``. An empty
    transformer, ``data`` or ``return data`` leave the result untouched.
    """
    source = _transformer_source(transformer)
    if source is None:
        return data
    env = _env(strict=True)
    try:
        expr = env.compile_expression(source, undefined_to_none=False)
        result = expr(data=_sanitize_value(data), params=_sanitize_context(params))
    except TemplateError as exc:
        raise TransformerError(f"Transformer failed: {exc}") from exc
    if isinstance(result, Undefined):
        raise TransformerError("Transformer returned an undefined value")
    return result


def _load(name: str) -> str:
    return (TEMPLATES_DIR / name).read_text(encoding="utf-8")


def render_app_shell(title: str, production: bool, app_id: str, client_lib_path: str) -> dict[str, str]:
    context = {
        "title": title,
        "production": production,
        "appId": app_id,
        "clientLibPath": client_lib_path,
    }
    return {
        "head": render_template(_load("app_head.html"), context),
        "html": render_template(_load("app_shell.html"), context),
        "css": render_template(_load("app_shell.css"), context),
    }


def render_app_document(shell: dict[str, str], app_id: str) -> str:
    return render_template(
        _load("app.html"),
        {"head": shell["head"], "body": shell["html"], "style": shell["css"], "appId": app_id},
    )
