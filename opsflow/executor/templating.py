"""Template rendering for node configuration.

Templates use ``{{ path.to.value }}`` interpolation against the run context.
Missing paths render as an empty string and the rendered text is HTML-entity
decoded, since editor-authored templates arrive entity-encoded.
"""

import copy
import html
import json
import re
from typing import Any, Dict, Mapping, Optional

import structlog
from jinja2 import ChainableUndefined, Environment, Template, TemplateError, Undefined

from .errors import ConfigurationError

logger = structlog.get_logger()

SINGLE_PATH_PATTERN = re.compile(r"^\s*\{\{\s*([A-Za-z_][\w]*(?:\.[\w]+)*)\s*\}\}\s*$")
NUMBER_PATTERN = re.compile(r"^-?\d+(\.\d+)?$")

BLOCK_START, BLOCK_END = "\x00{%", "%}\x00"
COMMENT_START, COMMENT_END = "\x00{#", "#}\x00"


def _finalize(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


def _json_filter(value: Any, indent: Optional[int] = None) -> str:
    if isinstance(value, Undefined):
        return ""
    return json.dumps(value, indent=indent, default=str)


def lookup_path(data: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path; numeric segments index into lists."""
    current: Any = data
    for segment in path.split("."):
        if isinstance(current, Mapping):
            if segment not in current:
                return None
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return copy.deepcopy(current)


def coerce_scalar(value: str) -> Any:
    """Turn rendered text back into JSON, number or boolean where it looks like one."""
    text = value.strip()
    if text.startswith(("{", "[")):
        try:
            return json.loads(text)
        except ValueError:
            return value
    if text == "true":
        return True
    if text == "false":
        return False
    if NUMBER_PATTERN.match(text):
        return float(text) if "." in text else int(text)
    return value


class TemplateResolver:
    """Renders configuration templates against an execution context."""

    def __init__(self, cache_size: int = 512):
        # Only {{ }} is special; block and comment markers never occur in node text
        self.environment = Environment(
            block_start_string=BLOCK_START,
            block_end_string=BLOCK_END,
            comment_start_string=COMMENT_START,
            comment_end_string=COMMENT_END,
            line_statement_prefix=None,
            line_comment_prefix=None,
            autoescape=False,
            undefined=ChainableUndefined,
            finalize=_finalize,
            keep_trailing_newline=True,
        )
        self.environment.filters["json"] = _json_filter
        self._cache: Dict[str, Template] = {}
        self._cache_size = cache_size

    def _compile(self, source: str) -> Template:
        template = self._cache.get(source)
        if template is None:
            try:
                template = self.environment.from_string(source)
            except TemplateError as e:
                raise ConfigurationError(f"Invalid template: {e}") from e
            if len(self._cache) >= self._cache_size:
                self._cache.pop(next(iter(self._cache)))
            self._cache[source] = template
        return template

    def render(self, template: str, context: Mapping[str, Any]) -> str:
        """Render ``template`` and decode HTML entities in the result."""
        if "{" not in template:
            return html.unescape(template)
        compiled = self._compile(template)
        try:
            rendered = compiled.render(dict(context))
        except TemplateError as e:
            raise ConfigurationError(f"Template rendering failed: {e}") from e
        return html.unescape(rendered)

    def render_value(self, value: Any, context: Mapping[str, Any]) -> Any:
        """Render every string inside a literal value, leaving other types as-is."""
        if isinstance(value, str):
            return self.render(value, context)
        if isinstance(value, list):
            return [self.render_value(item, context) for item in value]
        if isinstance(value, dict):
            return {key: self.render_value(item, context) for key, item in value.items()}
        return value

    def resolve_value(self, value: Any, context: Mapping[str, Any]) -> Any:
        """Resolve a template to a typed value.

        A template that is a single path reference yields the referenced
        value itself; anything else is rendered and coerced.
        """
        if not isinstance(value, str):
            return self.render_value(value, context)
        match = SINGLE_PATH_PATTERN.match(value)
        if match:
            return lookup_path(context, match.group(1))
        return coerce_scalar(self.render(value, context))
