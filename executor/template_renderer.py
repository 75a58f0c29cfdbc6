import logging
from typing import Any, Dict, List, Optional

from jinja2 import BaseLoader, Environment, StrictUndefined, Template, TemplateError, meta

from errors import FatalActionError

logger = logging.getLogger("automation_service")

# Action config keys that hold Jinja2 source
TEMPLATE_KEYS = ("template", "body", "message", "subject")


class TemplateRenderer:
    """Renders auto-reply and notification text against the email context."""

    def __init__(self):
        # a variable missing from the context is an error, never an empty string
        self.env = Environment(loader=BaseLoader(), undefined=StrictUndefined)
        self._cache: Dict[str, Template] = {}

    def _compile(self, source: str) -> Template:
        template = self._cache.get(source)
        if template is None:
            template = self._cache[source] = self.env.from_string(source)
        return template

    def syntax_error(self, source: str) -> Optional[str]:
        try:
            self.env.parse(source)
        except TemplateError as e:
            return f"Template Syntax Error: {e}"
        return None

    def invalid_templates(self, config: Dict[str, Any]) -> Dict[str, str]:
        """Maps each template-bearing config key that does not parse to its error."""
        errors = {}
        for key in TEMPLATE_KEYS:
            source = config.get(key)
            if isinstance(source, str):
                error = self.syntax_error(source)
                if error:
                    errors[key] = error
        return errors

    def missing_variables(self, source: str, context: Dict[str, Any]) -> List[str]:
        """
        Variables the template references that the context lacks. A template
        that does not parse is reported as a single entry.
        """
        error = self.syntax_error(source)
        if error:
            return [error]
        referenced = meta.find_undeclared_variables(self.env.parse(source))
        return sorted(name for name in referenced if name not in context)

    def render(self, source: str, context: Dict[str, Any]) -> str:
        if not source:
            return ""
        try:
            return self._compile(source).render(**context)
        except TemplateError as e:
            logger.error(f"Error rendering template: {e}")
            raise FatalActionError(f"Template rendering failed: {e}")
