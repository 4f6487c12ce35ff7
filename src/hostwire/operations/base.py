"""Shared plumbing for operation modules.

Each operation module validates its arguments, sends one request through
the Session and maps the agent's error code onto a typed OperationError.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from hostwire.core.exceptions import (
    AgentError,
    FileAlreadyExists,
    FileNotFound,
    FilePermissionDenied,
    InvalidRequestError,
    OperationError,
)
from hostwire.session.session import Session


ErrorTable = Mapping[str, type[OperationError]]

# Codes any operation touching the filesystem may return
PATH_ERRORS: ErrorTable = {
    "not_found": FileNotFound,
    "permission_denied": FilePermissionDenied,
    "exists": FileAlreadyExists,
}


def map_agent_error(error: AgentError, table: ErrorTable) -> AgentError:
    """Return the typed error for an agent error code, or the error unchanged."""
    error_cls = table.get(error.code)
    if error_cls is None or isinstance(error, error_cls):
        return error
    return error_cls(error.code, error.reason, error.details, error.operation)


async def call(
    session: Session,
    operation: str,
    args: Mapping[str, Any],
    table: ErrorTable = PATH_ERRORS,
    *,
    timeout: Optional[float] = None,
) -> dict[str, Any]:
    """Send one request and return its RESULT value, raising typed errors."""
    stream = await session.execute(operation, args, timeout=timeout)
    try:
        return await stream.result()
    except AgentError as e:
        mapped = map_agent_error(e, table)
        if mapped is e:
            raise
        raise mapped from e


def require_text(operation: str, field: str, value: Any) -> str:
    """Validate a non-empty string argument."""
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequestError(operation, f"{field} must be a non-empty string")
    if "\x00" in value:
        raise InvalidRequestError(operation, f"{field} must not contain NUL bytes")
    return value


def require_mode(operation: str, mode: Any) -> int:
    """Validate a permission mode (0 to 0o7777)."""
    if not isinstance(mode, int) or isinstance(mode, bool) or not 0 <= mode <= 0o7777:
        raise InvalidRequestError(operation, f"mode must be an integer between 0 and 0o7777, got {mode!r}")
    return mode


def parse_action(operation: str, enum_cls: Any, action: Any) -> Any:
    """Coerce an action name into its enum, raising InvalidRequestError."""
    try:
        return enum_cls(action)
    except ValueError:
        valid = ", ".join(a.value for a in enum_cls)
        raise InvalidRequestError(operation, f"unknown action {action!r} (expected one of: {valid})") from None
