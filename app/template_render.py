"""Sandboxed Jinja rendering for templated step payload values."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from jinja2 import StrictUndefined, Undefined
from jinja2.sandbox import ImmutableSandboxedEnvironment

# personalization only needs text shaping and simple number formatting
_FILTERS = frozenset(
    {"capitalize", "default", "float", "int", "join", "length", "lower", "replace", "round", "title", "trim", "truncate", "upper"}
)
_TESTS = frozenset({"defined", "undefined", "none", "number", "string", "equalto"})


class _PersonalizationSandbox(ImmutableSandboxedEnvironment):
    def is_safe_attribute(self, obj, attr, value) -> bool:
        return False

    def is_safe_callable(self, obj) -> bool:
        return False


def _build_env(undefined: type[Undefined]) -> _PersonalizationSandbox:
    env = _PersonalizationSandbox(autoescape=False, undefined=undefined)
    env.globals.clear()
    env.filters = {name: fn for name, fn in env.filters.items() if name in _FILTERS}
    env.tests = {name: fn for name, fn in env.tests.items() if name in _TESTS}
    return env


_ENVS = {True: _build_env(StrictUndefined), False: _build_env(Undefined)}


def _plain(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _plain(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(val) for val in value]
    return str(value)


def render_template(text: str | None, context: dict[str, Any] | None, strict: bool = True) -> str:
    return _ENVS[strict].from_string(text or "").render(_plain(context or {}))


def render_value(value: Any, context: dict[str, Any] | None, strict: bool = False) -> Any:
    """Render every ``{{ }}`` string inside ``value``; other leaves pass through."""
    if isinstance(value, str):
        return render_template(value, context, strict=strict) if "{{" in value else value
    if isinstance(value, list):
        return [render_value(item, context, strict=strict) for item in value]
    if isinstance(value, dict):
        return {key: render_value(val, context, strict=strict) for key, val in value.items()}
    return value
