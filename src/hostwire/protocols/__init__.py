"""Protocol abstractions for Hostwire.

All protocols use `typing.Protocol` for structural subtyping with
`@runtime_checkable` for isinstance() support.

Protocols:
    Runnable: Anything that can be started, stopped and queried.
    TemplateRenderer: Client-side template engine.

RunnableState is re-exported here for callers implementing Runnable.
"""

from __future__ import annotations

from hostwire.core.models import RunnableState
from hostwire.protocols.renderer import TemplateRenderer
from hostwire.protocols.runnable import Runnable

__all__ = [
    "Runnable",
    "RunnableState",
    "TemplateRenderer",
]
