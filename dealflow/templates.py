"""Placeholder substitution for action parameters (``{{client.first_name}}``)."""

from __future__ import annotations

from typing import Any, Dict, Literal

from jinja2 import ChainableUndefined, StrictUndefined, TemplateError as JinjaTemplateError
from jinja2.sandbox import SandboxedEnvironment

from .contracts import ExecutionContext
from .errors import TemplateError


def build_template_context(context: ExecutionContext) -> Dict[str, Any]:
    """Flatten an execution context into the names templates may reference.

    The entity snapshot is exposed both at top level and under its entity type
    (``client``, ``deal``...), so ``{{first_name}}`` and
    ``{{client.first_name}}`` both work for a client.
    """
    snapshot = dict(context.entity.snapshot)
    snapshot.setdefault("id", context.entity.id)
    ctx: Dict[str, Any] = dict(snapshot)
    ctx[context.entity.type] = snapshot
    ctx["entity"] = snapshot
    ctx["trigger"] = context.payload
    ctx["payload"] = context.payload
    ctx["user"] = {"id": context.acting_user}
    ctx["now"] = context.now.isoformat()
    return ctx


class TemplateRenderer:
    """Renders parameter strings in a sandboxed Jinja environment."""

    def __init__(self, undefined: Literal["empty", "strict"] = "empty") -> None:
        self.undefined = undefined
        self._env = SandboxedEnvironment(
            autoescape=False,
            undefined=StrictUndefined if undefined == "strict" else ChainableUndefined,
        )

    def render(self, template: str | None, context: ExecutionContext) -> str:
        """Render one string. Raises TemplateError in strict mode."""
        if not template:
            return ""
        if "{{" not in template and "{%" not in template:
            return template
        try:
            return self._env.from_string(template).render(
                **build_template_context(context)
            )
        except JinjaTemplateError as e:
            raise TemplateError(f"Could not render template {template!r}: {e}") from e

    def render_value(self, value: Any, context: ExecutionContext) -> Any:
        """Render strings nested anywhere inside dicts and lists."""
        if isinstance(value, str):
            return self.render(value, context)
        if isinstance(value, dict):
            return {k: self.render_value(v, context) for k, v in value.items()}
        if isinstance(value, list):
            return [self.render_value(v, context) for v in value]
        return value
