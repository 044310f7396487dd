#!/usr/bin/env python3
"""Load reports for filter authors, rendered with Jinja2.

The report lists every compiled rule by start line and every block that
failed to compile, with the parser position and the original text so the
author can find and fix it.

Example:
    >>> print(render_report(ItemFilter.load("pickit.ifl")))
"""

from typing import Any, Dict, Optional

import jinja2

from itemfilter.rules.engine import ItemFilter

DEFAULT_TEMPLATE = """\
Filter: {{ source or "<filter>" }}
Compiled rules: {{ rules | length }}
Failed rules: {{ errors | length }}
{% if rules %}

Rules:
{% for rule in rules %}
  line {{ "%4d" | format(rule.start_line) }}: {{ rule.query | oneline }}
{% endfor %}
{% endif %}
{% if errors %}

Errors:
{% for error in errors %}
  line {{ "%4d" | format(error.start_line) }}: {{ error.message }}{% if error.position is not none %} (at index {{ error.position }}){% endif %}

{{ error.raw_query | indent(4, first=True) }}
{% endfor %}
{% endif %}
"""


def _oneline(text: str) -> str:
    """Collapse a multi-line query onto one line."""
    return " ".join(text.split())


def _environment() -> jinja2.Environment:
    env = jinja2.Environment(
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
        undefined=jinja2.StrictUndefined,
    )
    env.filters["oneline"] = _oneline
    return env


def report_context(item_filter: ItemFilter) -> Dict[str, Any]:
    """Build the template context for a loaded filter."""
    return {
        "source": item_filter.source,
        "rules": item_filter.rules,
        "errors": item_filter.errors,
    }


def render_report(item_filter: ItemFilter, template: Optional[str] = None) -> str:
    """Render a load report.

    Args:
        item_filter: Loaded filter
        template: Jinja2 template source (default: plain-text report)

    Returns:
        Rendered report
    """
    env = _environment()
    return env.from_string(template or DEFAULT_TEMPLATE).render(**report_context(item_filter))
