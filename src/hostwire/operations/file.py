"""Remote file operations.

Every function takes a live Session and a remote path. ``file_op`` is the
single dispatch point used by Host; the per-action functions can also be
called directly.

Agent error codes map to FileNotFound, FilePermissionDenied and
FileAlreadyExists.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Any, Optional, Union

import structlog

from hostwire.core.exceptions import ProtocolError
from hostwire.core.hashing import calculate_bytes_hash
from hostwire.core.models import FileContents, FileOwner, FileStat
from hostwire.operations.base import call, parse_action, require_mode, require_text
from hostwire.operations.transfer import DEFAULT_CHUNK_SIZE, push_bytes
from hostwire.session.session import Session
from hostwire.wire.messages import Operation


log = structlog.get_logger()

Content = Union[bytes, str, Path]


class FileAction(StrEnum):
    EXISTS = "exists"
    IS_FILE = "is_file"
    STAT = "stat"
    READ = "read"
    DELETE = "delete"
    MOVE = "move"
    COPY = "copy"
    GET_OWNER = "get_owner"
    SET_OWNER = "set_owner"
    GET_MODE = "get_mode"
    SET_MODE = "set_mode"
    UPLOAD = "upload"


async def exists(session: Session, path: str, *, timeout: Optional[float] = None) -> bool:
    path = require_text(Operation.FILE_EXISTS, "path", path)
    value = await call(session, Operation.FILE_EXISTS, {"path": path}, timeout=timeout)
    return bool(value.get("exists"))


async def is_file(session: Session, path: str, *, timeout: Optional[float] = None) -> bool:
    path = require_text(Operation.FILE_IS_FILE, "path", path)
    value = await call(session, Operation.FILE_IS_FILE, {"path": path}, timeout=timeout)
    return bool(value.get("is_file"))


async def stat(session: Session, path: str, *, timeout: Optional[float] = None) -> FileStat:
    path = require_text(Operation.FILE_STAT, "path", path)
    value = await call(session, Operation.FILE_STAT, {"path": path}, timeout=timeout)
    return FileStat.from_wire(path, value)


async def read(session: Session, path: str, *, timeout: Optional[float] = None) -> FileContents:
    """Read a whole file, verifying the agent-reported SHA-256.

    Raises:
        FileNotFound: If the path does not exist.
        ProtocolError: If the data does not match its digest.
    """
    path = require_text(Operation.FILE_READ, "path", path)
    value = await call(session, Operation.FILE_READ, {"path": path}, timeout=timeout)

    data = value.get("data")
    digest = value.get("sha256")
    if not isinstance(data, bytes) or not isinstance(digest, str):
        raise ProtocolError("file.read result is missing data or sha256")
    if calculate_bytes_hash(data) != digest:
        raise ProtocolError(f"content of {path} does not match its sha256")
    return FileContents(path=path, data=data, sha256=digest)


async def delete(session: Session, path: str, *, timeout: Optional[float] = None) -> bool:
    """Delete a file. Returns False if it did not exist."""
    path = require_text(Operation.FILE_DELETE, "path", path)
    value = await call(session, Operation.FILE_DELETE, {"path": path}, timeout=timeout)
    return bool(value.get("changed", True))


async def move(
    session: Session,
    path: str,
    destination: str,
    *,
    overwrite: bool = False,
    timeout: Optional[float] = None,
) -> None:
    path = require_text(Operation.FILE_MOVE, "path", path)
    destination = require_text(Operation.FILE_MOVE, "destination", destination)
    await call(
        session,
        Operation.FILE_MOVE,
        {"path": path, "destination": destination, "overwrite": overwrite},
        timeout=timeout,
    )


async def copy(
    session: Session,
    path: str,
    destination: str,
    *,
    overwrite: bool = False,
    timeout: Optional[float] = None,
) -> None:
    path = require_text(Operation.FILE_COPY, "path", path)
    destination = require_text(Operation.FILE_COPY, "destination", destination)
    await call(
        session,
        Operation.FILE_COPY,
        {"path": path, "destination": destination, "overwrite": overwrite},
        timeout=timeout,
    )


async def get_owner(session: Session, path: str, *, timeout: Optional[float] = None) -> FileOwner:
    path = require_text(Operation.FILE_GET_OWNER, "path", path)
    value = await call(session, Operation.FILE_GET_OWNER, {"path": path}, timeout=timeout)
    return FileOwner.from_wire(value)


async def set_owner(
    session: Session,
    path: str,
    user: str,
    group: str,
    *,
    timeout: Optional[float] = None,
) -> bool:
    path = require_text(Operation.FILE_SET_OWNER, "path", path)
    user = require_text(Operation.FILE_SET_OWNER, "user", user)
    group = require_text(Operation.FILE_SET_OWNER, "group", group)
    value = await call(
        session,
        Operation.FILE_SET_OWNER,
        {"path": path, "user": user, "group": group},
        timeout=timeout,
    )
    return bool(value.get("changed", True))


async def get_mode(session: Session, path: str, *, timeout: Optional[float] = None) -> int:
    path = require_text(Operation.FILE_GET_MODE, "path", path)
    value = await call(session, Operation.FILE_GET_MODE, {"path": path}, timeout=timeout)
    mode = value.get("mode")
    if not isinstance(mode, int):
        raise ProtocolError("file.get_mode result is missing mode")
    return mode


async def set_mode(session: Session, path: str, mode: int, *, timeout: Optional[float] = None) -> bool:
    path = require_text(Operation.FILE_SET_MODE, "path", path)
    mode = require_mode(Operation.FILE_SET_MODE, mode)
    value = await call(session, Operation.FILE_SET_MODE, {"path": path, "mode": mode}, timeout=timeout)
    return bool(value.get("changed", True))


def _content_bytes(content: Content) -> bytes:
    if isinstance(content, Path):
        return content.read_bytes()
    if isinstance(content, str):
        return content.encode("utf-8")
    return bytes(content)


async def upload(
    session: Session,
    path: str,
    content: Content,
    *,
    overwrite: bool = False,
    backup_suffix: Optional[str] = None,
    mode: Optional[int] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    timeout: Optional[float] = None,
) -> FileStat:
    """Write ``content`` to ``path`` over the bulk channel.

    Args:
        content: Bytes, text (UTF-8 encoded) or a local file path.
        overwrite: Replace an existing file instead of failing.
        backup_suffix: If set and the file exists, keep the old copy at
            ``path + backup_suffix``.
        mode: Permission bits to apply after writing.

    Raises:
        FileAlreadyExists: If the file exists and overwrite is False.
        PayloadIntegrityError: If the transfer fails verification.
    """
    path = require_text(Operation.FILE_UPLOAD, "path", path)
    args: dict[str, Any] = {"path": path, "overwrite": overwrite}
    if backup_suffix is not None:
        args["backup_suffix"] = require_text(Operation.FILE_UPLOAD, "backup_suffix", backup_suffix)
    if mode is not None:
        args["mode"] = require_mode(Operation.FILE_UPLOAD, mode)

    data = _content_bytes(content)
    receipt = await push_bytes(session, data, chunk_size=chunk_size, timeout=timeout)
    args["transfer_id"] = receipt.transfer_id

    value = await call(session, Operation.FILE_UPLOAD, args, timeout=timeout)
    log.info("file_uploaded", host=session.host, path=path, size=receipt.size)
    return FileStat.from_wire(path, value)


_ACTIONS = {
    FileAction.EXISTS: exists,
    FileAction.IS_FILE: is_file,
    FileAction.STAT: stat,
    FileAction.READ: read,
    FileAction.DELETE: delete,
    FileAction.MOVE: move,
    FileAction.COPY: copy,
    FileAction.GET_OWNER: get_owner,
    FileAction.SET_OWNER: set_owner,
    FileAction.GET_MODE: get_mode,
    FileAction.SET_MODE: set_mode,
    FileAction.UPLOAD: upload,
}


async def file_op(session: Session, action: Union[FileAction, str], path: str, *args: Any, **kwargs: Any) -> Any:
    """Run one file action by name.

    Example:
        await file_op(session, "set_mode", "/etc/motd", 0o644)
    """
    handler = _ACTIONS[parse_action("file", FileAction, action)]
    return await handler(session, path, *args, **kwargs)
