"""Template rendering.

By default the agent renders the template (so host facts are available to
the engine). A local renderer may be supplied instead; its output is then
uploaded to ``destination`` like any other file.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

import structlog

from hostwire.core.exceptions import InvalidRequestError, ProtocolError, TemplateRenderError
from hostwire.operations import file as file_ops
from hostwire.operations.base import PATH_ERRORS, ErrorTable, call, require_text
from hostwire.operations.transfer import DEFAULT_CHUNK_SIZE
from hostwire.protocols.renderer import TemplateRenderer
from hostwire.session.session import Session
from hostwire.wire.messages import Operation


log = structlog.get_logger()

TEMPLATE_ERRORS: ErrorTable = {
    **PATH_ERRORS,
    "render_error": TemplateRenderError,
}


@dataclass(frozen=True)
class RenderResult:
    """Rendered text and, if written, where it was written."""

    text: str
    destination: Optional[str] = None


async def render_template(
    session: Session,
    source: str,
    variables: Optional[Mapping[str, Any]] = None,
    *,
    engine: Optional[str] = None,
    destination: Optional[str] = None,
    renderer: Optional[TemplateRenderer] = None,
    overwrite: bool = True,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    timeout: Optional[float] = None,
) -> RenderResult:
    """Render a template, optionally writing the output to a remote file.

    Args:
        engine: Agent-side engine name; the agent picks its default if None.
            Ignored when a local ``renderer`` is given.
        chunk_size: Bulk chunk size for uploading locally rendered output.

    Raises:
        TemplateRenderError: Syntax error or undefined variable (``line`` set
            when the engine reports one).
        InvalidRequestError: Source is not a string or variable names are
            not strings.
        ProtocolError: The agent's rendered text is not valid UTF-8.
    """
    if not isinstance(source, str):
        raise InvalidRequestError(Operation.TEMPLATE_RENDER, "source must be a string")
    variables = dict(variables or {})
    if not all(isinstance(key, str) for key in variables):
        raise InvalidRequestError(Operation.TEMPLATE_RENDER, "variable names must be strings")
    if destination is not None:
        destination = require_text(Operation.TEMPLATE_RENDER, "destination", destination)

    if renderer is not None:
        try:
            text = renderer.render(source, variables)
        except TemplateRenderError:
            raise
        except Exception as e:
            raise TemplateRenderError(
                "render_error", str(e), details={}, operation=Operation.TEMPLATE_RENDER
            ) from e

        if destination is not None:
            await file_ops.upload(
                session, destination, text, overwrite=overwrite, chunk_size=chunk_size, timeout=timeout
            )
            log.info("template_written", host=session.host, destination=destination, local=True)
        return RenderResult(text=text, destination=destination)

    args: dict[str, Any] = {"source": source, "variables": variables, "overwrite": overwrite}
    if engine is not None:
        args["engine"] = require_text(Operation.TEMPLATE_RENDER, "engine", engine)
    if destination is not None:
        args["destination"] = destination
    value = await call(session, Operation.TEMPLATE_RENDER, args, TEMPLATE_ERRORS, timeout=timeout)

    text = value.get("text", "")
    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"{Operation.TEMPLATE_RENDER} returned invalid UTF-8") from e
    if destination is not None:
        log.info("template_written", host=session.host, destination=destination, local=False)
    return RenderResult(text=text, destination=value.get("destination", destination))
