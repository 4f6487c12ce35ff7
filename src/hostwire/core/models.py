"""Core Data Models for Hostwire.

Typed results returned by operation modules. These are plain frozen
dataclasses; each has a ``from_wire`` constructor that validates the
value map decoded from a RESULT frame.

Models:
    CommandResult: Exit code plus captured stdout/stderr.
    FileOwner: User and group ownership of a path.
    FileStat: Existence, permissions, ownership and content hash of a path.
    FileContents: Bytes read from a remote file plus their SHA-256.
    PackageResult: Installed version (or None) after a package action.
    ServiceResult: Runnable state after a service action.
    RunnableState: Live state of anything that can be started and stopped.

Usage:
    from hostwire.core.models import CommandResult

    result = CommandResult(exit_code=0, stdout="root\\n", stderr="")
    assert result.success
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Mapping, Optional

from hostwire.core.exceptions import ProtocolError


class RunnableState(StrEnum):
    """Live state of a service or long-running command.

    Always derived from a fresh agent query, never cached.
    """

    UNKNOWN = "unknown"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: Any) -> "RunnableState":
        """Map an agent-reported state string, defaulting to UNKNOWN."""
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


def _require(value: Mapping[str, Any], key: str, kind: type | tuple[type, ...]) -> Any:
    """Fetch a typed field from a decoded value map."""
    if key not in value:
        raise ProtocolError(f"result is missing field '{key}'")
    item = value[key]
    if not isinstance(item, kind) or (kind is int and isinstance(item, bool)):
        raise ProtocolError(f"result field '{key}' has unexpected type {type(item).__name__}")
    return item


def _text(data: Any) -> str:
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a command. A non-zero exit code is a normal result."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @classmethod
    def from_wire(cls, value: Mapping[str, Any], stdout: str = "", stderr: str = "") -> "CommandResult":
        """Build from a terminal value, preferring streamed output when present."""
        exit_code = _require(value, "exit_code", int)
        return cls(
            exit_code=exit_code,
            stdout=stdout or _text(value.get("stdout", "")),
            stderr=stderr or _text(value.get("stderr", "")),
        )


@dataclass(frozen=True)
class FileOwner:
    """User and group owning a path."""

    user_name: str
    user_uid: int
    group_name: str
    group_gid: int

    @classmethod
    def from_wire(cls, value: Mapping[str, Any]) -> "FileOwner":
        return cls(
            user_name=_require(value, "user_name", str),
            user_uid=_require(value, "user_uid", int),
            group_name=_require(value, "group_name", str),
            group_gid=_require(value, "group_gid", int),
        )


@dataclass(frozen=True)
class FileStat:
    """Existence, permissions, ownership and content hash of a path."""

    path: str
    exists: bool
    is_file: bool = False
    is_directory: bool = False
    mode: Optional[int] = None
    owner: Optional[FileOwner] = None
    size: Optional[int] = None
    sha256: Optional[str] = None

    @classmethod
    def from_wire(cls, path: str, value: Mapping[str, Any]) -> "FileStat":
        exists = _require(value, "exists", bool)
        if not exists:
            return cls(path=path, exists=False)

        owner = value.get("owner")
        return cls(
            path=path,
            exists=True,
            is_file=bool(value.get("is_file", False)),
            is_directory=bool(value.get("is_directory", False)),
            mode=value.get("mode"),
            owner=FileOwner.from_wire(owner) if isinstance(owner, Mapping) else None,
            size=value.get("size"),
            sha256=value.get("sha256"),
        )


@dataclass(frozen=True)
class FileContents:
    """Bytes read from a remote file."""

    path: str
    data: bytes
    sha256: str

    @property
    def text(self) -> str:
        return self.data.decode("utf-8")


@dataclass(frozen=True)
class PackageResult:
    """State of a package after an install, uninstall or query."""

    name: str
    installed_version: Optional[str]
    changed: bool
    provider: Optional[str] = None

    @property
    def installed(self) -> bool:
        return self.installed_version is not None

    @classmethod
    def from_wire(cls, name: str, value: Mapping[str, Any]) -> "PackageResult":
        version = value.get("installed_version")
        if version is not None and not isinstance(version, str):
            raise ProtocolError("result field 'installed_version' must be a string or None")
        return cls(
            name=name,
            installed_version=version,
            changed=bool(value.get("changed", False)),
            provider=value.get("provider"),
        )


@dataclass(frozen=True)
class ServiceResult:
    """State of a service after an action.

    ``changed`` is False when the action was a no-op (already in the
    requested state).
    """

    name: str
    action: str
    state: RunnableState
    changed: bool
    output: str = ""

    @classmethod
    def from_wire(cls, name: str, action: str, value: Mapping[str, Any]) -> "ServiceResult":
        return cls(
            name=name,
            action=action,
            state=RunnableState.parse(value.get("state", "unknown")),
            changed=bool(value.get("changed", True)),
            output=_text(value.get("output", "")),
        )
