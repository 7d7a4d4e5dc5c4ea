from __future__ import annotations

from typing import Any

from jinja2 import StrictUndefined, TemplateError
from jinja2.nativetypes import NativeEnvironment

from devincubator.errors import ConfigError

_env = NativeEnvironment(undefined=StrictUndefined)


def render_value(value: Any, context: dict[str, Any]) -> Any:
    """Render ``{{ ... }}`` expressions in every string leaf of *value*.

    A string that is a single expression keeps the native type of its result,
    so ``"{{ docker_users }}"`` renders to a list.
    """
    if isinstance(value, str):
        if "{{" not in value and "{%" not in value:
            return value
        try:
            return _env.from_string(value).render(context)
        except TemplateError as exc:
            raise ConfigError(f"Cannot render '{value}': {exc}") from exc
    if isinstance(value, dict):
        return {k: render_value(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v, context) for v in value]
    return value


def render_vars(variables: dict[str, Any], facts: dict[str, Any]) -> dict[str, Any]:
    """Render plan variables against host facts, in declaration order.

    Later variables may reference earlier ones.
    """
    context: dict[str, Any] = dict(facts)
    rendered: dict[str, Any] = {}
    for key, value in variables.items():
        rendered[key] = render_value(value, context)
        context[key] = rendered[key]
    return rendered
