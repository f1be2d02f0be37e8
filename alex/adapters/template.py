"""Minimal mustache-style templates for adapter descriptors.

Supported syntax:
    {{var}}                  variable substitution (unknown renders empty)
    {{#key}}...{{/key}}      include when key is truthy
    {{^key}}...{{/key}}      include when key is falsy
    {{#list}}{{.}}{{/list}}  repeat once per list element

Sections are expanded in that order (lists, conditionals, inverse
conditionals) before variables are substituted.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

SECTION_PATTERN = re.compile(r"\{\{#(\w+)\}\}(.*?)\{\{/\1\}\}", re.DOTALL)
INVERSE_PATTERN = re.compile(r"\{\{\^(\w+)\}\}(.*?)\{\{/\1\}\}", re.DOTALL)
VARIABLE_PATTERN = re.compile(r"\{\{(\w+)\}\}")
ITEM_PLACEHOLDER = "{{.}}"


def _is_truthy(value: Any) -> bool:
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    return bool(value)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(_stringify(item) for item in value)
    return str(value)


def _expand_lists(template: str, context: Mapping[str, Any]) -> str:
    def replace(match: re.Match[str]) -> str:
        value = context.get(match.group(1))
        if isinstance(value, (list, tuple)):
            body = match.group(2)
            return "".join(body.replace(ITEM_PLACEHOLDER, _stringify(item)) for item in value)
        # Left for conditional processing
        return match.group(0)

    return SECTION_PATTERN.sub(replace, template)


def _expand_conditionals(template: str, context: Mapping[str, Any]) -> str:
    return SECTION_PATTERN.sub(
        lambda m: m.group(2) if _is_truthy(context.get(m.group(1))) else "",
        template,
    )


def _expand_inverse(template: str, context: Mapping[str, Any]) -> str:
    return INVERSE_PATTERN.sub(
        lambda m: "" if _is_truthy(context.get(m.group(1))) else m.group(2),
        template,
    )


def _substitute(template: str, context: Mapping[str, Any]) -> str:
    return VARIABLE_PATTERN.sub(lambda m: _stringify(context.get(m.group(1))), template)


def render_template(template: str, context: Mapping[str, Any]) -> str:
    """Render ``template`` against ``context`` and trim the result."""
    result = _expand_lists(template, context)
    result = _expand_conditionals(result, context)
    result = _expand_inverse(result, context)
    result = _substitute(result, context)
    return result.strip()


def render_args(templates: list[str], context: Mapping[str, Any]) -> list[str]:
    """Render each argument template, dropping arguments that render empty."""
    rendered = (render_template(template, context) for template in templates)
    return [arg for arg in rendered if arg]
