"""Template renderer protocol.

A renderer turns template source plus variables into text on the client.
Passing one to ``Host.render_template`` bypasses agent-side rendering.
"""

from __future__ import annotations

from typing import Any, Mapping, Protocol, runtime_checkable


@runtime_checkable
class TemplateRenderer(Protocol):
    """Anything with ``render(source, variables) -> str``.

    Implementations should raise TemplateRenderError for template
    problems; any other exception is wrapped in one.
    """

    def render(self, source: str, variables: Mapping[str, Any]) -> str:
        ...
