"""
Proviso Templating Engine

Jinja2-based templating of task parameters with a minimal filter set.
Undefined variables fail closed instead of rendering empty.
"""

import base64
import json
import os
import re
from typing import Any, Callable, Dict, Mapping, Optional

from jinja2 import Environment, StrictUndefined, TemplateSyntaxError, Undefined, UndefinedError

from proviso.engine.errors import TemplateError, UnresolvedFactError


_UNDEFINED_NAME = re.compile(r"'([^']+)' is undefined|has no attribute '([^']+)'")
_SINGLE_EXPRESSION = re.compile(r"^\s*\{\{((?:(?!\}\}).)*)\}\}\s*$", re.DOTALL)


def _filter_to_yaml(value: Any) -> str:
    """Convert value to YAML string."""
    import yaml
    return yaml.dump(value, default_flow_style=False)


def _filter_bool(value: Any) -> bool:
    """Convert value to boolean."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in ('true', 'yes', '1', 'on')
    return bool(value)


def _filter_regex_replace(value: str, pattern: str, replacement: str) -> str:
    """Regex replacement in string."""
    return re.sub(pattern, replacement, str(value))


def _filter_b64encode(value: Any) -> str:
    """Encode string to base64."""
    if isinstance(value, bytes):
        return base64.b64encode(value).decode('utf-8')
    return base64.b64encode(str(value).encode('utf-8')).decode('utf-8')


CUSTOM_FILTERS: Dict[str, Callable[..., Any]] = {
    'to_json': lambda x: json.dumps(x),
    'to_yaml': _filter_to_yaml,
    'bool': _filter_bool,
    'basename': lambda p: os.path.basename(str(p)),
    'dirname': lambda p: os.path.dirname(str(p)),
    'regex_replace': _filter_regex_replace,
    'b64encode': _filter_b64encode,
    'b64decode': lambda v: base64.b64decode(v).decode('utf-8'),
}


class TemplateEngine:
    """
    Jinja2 templating engine for task parameters.

    Provides:
    - Variable interpolation in strings
    - Recursive rendering in dicts/lists
    - Strict undefined handling: a missing fact raises UnresolvedFactError
    """

    def __init__(self):
        self.env = Environment(
            undefined=StrictUndefined,
            # Don't auto-escape (we're not rendering HTML)
            autoescape=False,
            keep_trailing_newline=True,
        )
        for name, func in CUSTOM_FILTERS.items():
            self.env.filters[name] = func

    def render(self, template_str: Any, variables: Mapping[str, Any]) -> Any:
        """
        Render a template string with variables.

        Raises:
            UnresolvedFactError: If the template references a missing fact
            TemplateError: If the template is invalid
        """
        if not isinstance(template_str, str):
            return template_str

        # Fast path: no template markers
        if '{{' not in template_str and '{%' not in template_str:
            return template_str

        try:
            template = self.env.from_string(template_str)
            return template.render(dict(variables))
        except UndefinedError as e:
            raise UnresolvedFactError(
                _undefined_name(str(e)),
                details=f"Template: {template_str[:100]}",
            )
        except TemplateSyntaxError as e:
            raise TemplateError(f"Template syntax error: {e}", template=template_str)
        except (TemplateError, UnresolvedFactError):
            raise
        except Exception as e:
            raise TemplateError(f"{type(e).__name__}: {e}", template=template_str)

    def render_recursive(self, data: Any, variables: Mapping[str, Any]) -> Any:
        """Recursively render templates in a dict / list structure."""
        if isinstance(data, str):
            return self.render(data, variables)

        if isinstance(data, dict):
            return {
                self.render(k, variables) if isinstance(k, str) else k:
                self.render_recursive(v, variables)
                for k, v in data.items()
            }

        if isinstance(data, (list, tuple)):
            return [self.render_recursive(item, variables) for item in data]

        # Return other types as-is (int, float, bool, None)
        return data

    def evaluate_native(self, data: Any, variables: Mapping[str, Any]) -> Any:
        """
        Like render(), but a string that is exactly one ``{{ expr }}`` yields
        the expression's native value (list, int, ...) instead of its text.
        """
        if not isinstance(data, str):
            return self.render_recursive(data, variables)

        match = _SINGLE_EXPRESSION.match(data)
        if not match:
            return self.render(data, variables)

        try:
            expression = self.env.compile_expression(match.group(1), undefined_to_none=False)
            value = expression(**dict(variables))
        except UndefinedError as e:
            raise UnresolvedFactError(_undefined_name(str(e)), details=f"Template: {data[:100]}")
        except TemplateSyntaxError as e:
            raise TemplateError(f"Template syntax error: {e}", template=data)
        except (TemplateError, UnresolvedFactError):
            raise
        except Exception as e:
            raise TemplateError(f"{type(e).__name__}: {e}", template=data)
        # StrictUndefined only raises when used, so check the bare value too
        if isinstance(value, Undefined):
            raise UnresolvedFactError(match.group(1).strip(), details=f"Template: {data[:100]}")
        return value


def _undefined_name(message: str) -> str:
    match = _UNDEFINED_NAME.search(message)
    if match:
        return match.group(1) or match.group(2)
    return message


# Shared instance for convenience
_engine: Optional[TemplateEngine] = None


def get_template_engine() -> TemplateEngine:
    """Get the shared template engine instance."""
    global _engine
    if _engine is None:
        _engine = TemplateEngine()
    return _engine


def render(template_str: Any, variables: Mapping[str, Any]) -> Any:
    """Convenience function to render a template."""
    return get_template_engine().render(template_str, variables)


def render_recursive(data: Any, variables: Mapping[str, Any]) -> Any:
    """Convenience function to render templates recursively."""
    return get_template_engine().render_recursive(data, variables)


def evaluate_native(data: Any, variables: Mapping[str, Any]) -> Any:
    """Convenience function to evaluate a single-expression template natively."""
    return get_template_engine().evaluate_native(data, variables)
