"""
Payload rendering: ``{{name}}`` substitution over a template registry.
"""

from __future__ import annotations

import re
from typing import Mapping, Optional, overload

from .errors import UnknownTemplateError

_VAR = re.compile(r"\{\{(\w+)\}\}")


@overload
def render(template: str, variables: Optional[Mapping[str, str]] = None) -> str: ...


@overload
def render(template: None, variables: Optional[Mapping[str, str]] = None) -> None: ...


def render(template: Optional[str], variables: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Replace ``{{name}}`` tokens with values from ``variables``.

    Tokens with no matching variable are left verbatim.

    >>> render("Hi {{name}}, {{unknown}}", {"name": "Ada"})
    'Hi Ada, {{unknown}}'
    """
    if not template or not variables:
        return template

    def _sub(m: re.Match) -> str:
        value = variables.get(m.group(1))
        return m.group(0) if value is None else str(value)

    return _VAR.sub(_sub, template)


class PayloadBuilder:
    """Resolves a job's template id and renders its variables into the body."""

    def __init__(self, templates: Mapping[str, str] | None = None):
        self._templates: dict[str, str] = dict(templates or {})

    def register(self, template_id: str, template: str) -> None:
        self._templates[template_id] = template

    def __contains__(self, template_id: str) -> bool:
        return template_id in self._templates

    def build(self, template_id: str, variables: Optional[Mapping[str, str]] = None) -> str:
        try:
            template = self._templates[template_id]
        except KeyError:
            raise UnknownTemplateError(template_id) from None
        return render(template, variables)
