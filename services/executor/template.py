"""Template resolution for {{ input }} / {{ inputs['node_id'].key }} syntax using Jinja2."""

import json
import re
from typing import Dict, Any
from jinja2 import BaseLoader, StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment
from shared.exceptions import TemplateResolutionError
from shared.utils import primary_input

SINGLE_EXPRESSION = re.compile(r'^\s*\{\{[^{}]*\}\}\s*$')


def _finalize(value: Any) -> Any:
    # Objects render as JSON rather than Python repr
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return value


class TemplateResolver:

    def __init__(self):
        # Sandboxed environment: templates come from learner-edited configs
        self.jinja_env = SandboxedEnvironment(
            loader=BaseLoader(),
            autoescape=False,
            undefined=StrictUndefined,
            finalize=_finalize,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def build_context(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        """Top-level keys of the primary input are exposed directly, plus ``input`` and ``inputs``"""
        value = primary_input(inputs)
        context = dict(value) if isinstance(value, dict) else {}
        context["input"] = value
        context["inputs"] = dict(inputs)
        return context

    def resolve(self, node_id: str, config: Dict[str, Any], inputs: Dict[str, Any]) -> Dict[str, Any]:
        """Resolves templates in every string value of config against the node's live inputs"""
        context = self.build_context(inputs)
        try:
            return self._resolve_recursive(config, context)
        except TemplateError as e:
            raise TemplateResolutionError(f"Template resolution failed: {str(e)}", node_id=node_id)

    def _resolve_recursive(self, value: Any, context: Dict[str, Any]) -> Any:
        """Recursively walks through config to resolve all templates"""

        if isinstance(value, str):
            if '{{' not in value or '}}' not in value:
                return value

            resolved = self.jinja_env.from_string(value).render(context)

            # Only a bare expression is coerced back to a JSON value or number
            if not SINGLE_EXPRESSION.match(value):
                return resolved

            if resolved.startswith(('{', '[', '"')) or resolved in ('true', 'false', 'null'):
                try:
                    return json.loads(resolved)
                except json.JSONDecodeError:
                    pass
            else:
                try:
                    if '.' not in resolved:
                        return int(resolved)
                    else:
                        return float(resolved)
                except (ValueError, TypeError):
                    pass

            return resolved

        elif isinstance(value, dict):
            return {k: self._resolve_recursive(v, context) for k, v in value.items()}

        elif isinstance(value, list):
            return [self._resolve_recursive(item, context) for item in value]

        else:
            return value
