"""Remote directory operations."""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Optional, Union

from hostwire.core.exceptions import ProtocolError
from hostwire.core.models import FileOwner
from hostwire.operations.base import call, parse_action, require_mode, require_text
from hostwire.session.session import Session
from hostwire.wire.messages import Operation


class DirectoryAction(StrEnum):
    EXISTS = "exists"
    IS_DIRECTORY = "is_directory"
    CREATE = "create"
    DELETE = "delete"
    MOVE = "move"
    GET_OWNER = "get_owner"
    SET_OWNER = "set_owner"
    GET_MODE = "get_mode"
    SET_MODE = "set_mode"
    LIST = "list"


async def exists(session: Session, path: str, *, timeout: Optional[float] = None) -> bool:
    path = require_text(Operation.DIRECTORY_EXISTS, "path", path)
    value = await call(session, Operation.DIRECTORY_EXISTS, {"path": path}, timeout=timeout)
    return bool(value.get("exists"))


async def is_directory(session: Session, path: str, *, timeout: Optional[float] = None) -> bool:
    path = require_text(Operation.DIRECTORY_IS_DIRECTORY, "path", path)
    value = await call(session, Operation.DIRECTORY_IS_DIRECTORY, {"path": path}, timeout=timeout)
    return bool(value.get("is_directory"))


async def create(
    session: Session,
    path: str,
    *,
    recursive: bool = False,
    mode: Optional[int] = None,
    timeout: Optional[float] = None,
) -> bool:
    """Create a directory. Returns False if it already existed."""
    path = require_text(Operation.DIRECTORY_CREATE, "path", path)
    args: dict[str, Any] = {"path": path, "recursive": recursive}
    if mode is not None:
        args["mode"] = require_mode(Operation.DIRECTORY_CREATE, mode)
    value = await call(session, Operation.DIRECTORY_CREATE, args, timeout=timeout)
    return bool(value.get("changed", True))


async def delete(
    session: Session,
    path: str,
    *,
    recursive: bool = False,
    timeout: Optional[float] = None,
) -> bool:
    """Delete a directory. Without ``recursive`` it must be empty."""
    path = require_text(Operation.DIRECTORY_DELETE, "path", path)
    value = await call(
        session, Operation.DIRECTORY_DELETE, {"path": path, "recursive": recursive}, timeout=timeout
    )
    return bool(value.get("changed", True))


async def move(session: Session, path: str, destination: str, *, timeout: Optional[float] = None) -> None:
    path = require_text(Operation.DIRECTORY_MOVE, "path", path)
    destination = require_text(Operation.DIRECTORY_MOVE, "destination", destination)
    await call(
        session, Operation.DIRECTORY_MOVE, {"path": path, "destination": destination}, timeout=timeout
    )


async def get_owner(session: Session, path: str, *, timeout: Optional[float] = None) -> FileOwner:
    path = require_text(Operation.DIRECTORY_GET_OWNER, "path", path)
    value = await call(session, Operation.DIRECTORY_GET_OWNER, {"path": path}, timeout=timeout)
    return FileOwner.from_wire(value)


async def set_owner(
    session: Session,
    path: str,
    user: str,
    group: str,
    *,
    recursive: bool = False,
    timeout: Optional[float] = None,
) -> bool:
    path = require_text(Operation.DIRECTORY_SET_OWNER, "path", path)
    user = require_text(Operation.DIRECTORY_SET_OWNER, "user", user)
    group = require_text(Operation.DIRECTORY_SET_OWNER, "group", group)
    value = await call(
        session,
        Operation.DIRECTORY_SET_OWNER,
        {"path": path, "user": user, "group": group, "recursive": recursive},
        timeout=timeout,
    )
    return bool(value.get("changed", True))


async def get_mode(session: Session, path: str, *, timeout: Optional[float] = None) -> int:
    path = require_text(Operation.DIRECTORY_GET_MODE, "path", path)
    value = await call(session, Operation.DIRECTORY_GET_MODE, {"path": path}, timeout=timeout)
    mode = value.get("mode")
    if not isinstance(mode, int):
        raise ProtocolError("directory.get_mode result is missing mode")
    return mode


async def set_mode(
    session: Session,
    path: str,
    mode: int,
    *,
    recursive: bool = False,
    timeout: Optional[float] = None,
) -> bool:
    path = require_text(Operation.DIRECTORY_SET_MODE, "path", path)
    mode = require_mode(Operation.DIRECTORY_SET_MODE, mode)
    value = await call(
        session,
        Operation.DIRECTORY_SET_MODE,
        {"path": path, "mode": mode, "recursive": recursive},
        timeout=timeout,
    )
    return bool(value.get("changed", True))


async def list_entries(session: Session, path: str, *, timeout: Optional[float] = None) -> list[str]:
    """Return the names of entries in a directory, sorted."""
    path = require_text(Operation.DIRECTORY_LIST, "path", path)
    value = await call(session, Operation.DIRECTORY_LIST, {"path": path}, timeout=timeout)
    entries = value.get("entries")
    if not isinstance(entries, list) or not all(isinstance(e, str) for e in entries):
        raise ProtocolError("directory.list result is missing entries")
    return sorted(entries)


_ACTIONS = {
    DirectoryAction.EXISTS: exists,
    DirectoryAction.IS_DIRECTORY: is_directory,
    DirectoryAction.CREATE: create,
    DirectoryAction.DELETE: delete,
    DirectoryAction.MOVE: move,
    DirectoryAction.GET_OWNER: get_owner,
    DirectoryAction.SET_OWNER: set_owner,
    DirectoryAction.GET_MODE: get_mode,
    DirectoryAction.SET_MODE: set_mode,
    DirectoryAction.LIST: list_entries,
}


async def directory_op(
    session: Session, action: Union[DirectoryAction, str], path: str, *args: Any, **kwargs: Any
) -> Any:
    """Run one directory action by name."""
    handler = _ACTIONS[parse_action("directory", DirectoryAction, action)]
    return await handler(session, path, *args, **kwargs)
