"""Wire Protocol Messages for Client-Agent Communication.

This module defines the typed frames exchanged between a Hostwire client
and a remote agent. Every frame carries a type tag and a request id, so a
frame can be decoded and routed without any external context.

Frame Kinds:
- Request: client → agent, invokes one operation
- Result / ErrorReply: agent → client, the single terminal frame of a request
- Output / Progress: agent → client, intermediate frames of streaming requests
- Chunk: client → agent on the bulk channel, one checksummed slice of a transfer
- Challenge / Auth / Welcome / AuthFailed: per-connection handshake

Usage:
    from hostwire.wire.messages import Operation, build_request

    request = build_request(7, Operation.COMMAND_EXEC, argv=["uptime"])
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum, StrEnum
from typing import Any, ClassVar, Union


U64_MAX = 2**64 - 1


class MessageType(IntEnum):
    """Type tags carried in every frame header."""

    REQUEST = 0x01
    RESULT = 0x02
    ERROR = 0x03
    OUTPUT = 0x04
    PROGRESS = 0x05
    CHUNK = 0x06
    CHALLENGE = 0x10
    AUTH = 0x11
    WELCOME = 0x12
    AUTH_FAILED = 0x13


class OutputStream(IntEnum):
    """Which remote stream an Output frame came from."""

    STDOUT = 1
    STDERR = 2


class Operation(StrEnum):
    """Operation names understood by the agent.

    Uses StrEnum so values travel as plain strings on the wire.
    """

    COMMAND_EXEC = "command.exec"
    COMMAND_SPAWN = "command.spawn"
    COMMAND_STATUS = "command.status"
    COMMAND_KILL = "command.kill"

    FILE_EXISTS = "file.exists"
    FILE_IS_FILE = "file.is_file"
    FILE_STAT = "file.stat"
    FILE_READ = "file.read"
    FILE_DELETE = "file.delete"
    FILE_MOVE = "file.move"
    FILE_COPY = "file.copy"
    FILE_GET_OWNER = "file.get_owner"
    FILE_SET_OWNER = "file.set_owner"
    FILE_GET_MODE = "file.get_mode"
    FILE_SET_MODE = "file.set_mode"
    FILE_UPLOAD = "file.upload"

    DIRECTORY_EXISTS = "directory.exists"
    DIRECTORY_IS_DIRECTORY = "directory.is_directory"
    DIRECTORY_CREATE = "directory.create"
    DIRECTORY_DELETE = "directory.delete"
    DIRECTORY_MOVE = "directory.move"
    DIRECTORY_GET_OWNER = "directory.get_owner"
    DIRECTORY_SET_OWNER = "directory.set_owner"
    DIRECTORY_GET_MODE = "directory.get_mode"
    DIRECTORY_SET_MODE = "directory.set_mode"
    DIRECTORY_LIST = "directory.list"

    PACKAGE_INSTALL = "package.install"
    PACKAGE_UNINSTALL = "package.uninstall"
    PACKAGE_QUERY = "package.query"
    PACKAGE_DEFAULT_PROVIDER = "package.default_provider"

    SERVICE_ACTION = "service.action"
    SERVICE_STATUS = "service.status"

    TEMPLATE_RENDER = "template.render"

    TRANSFER_BEGIN = "transfer.begin"
    TRANSFER_COMMIT = "transfer.commit"
    PAYLOAD_RUN = "payload.run"

    HOST_TELEMETRY = "host.telemetry"


def _check_request_id(request_id: int) -> None:
    if not 0 <= request_id <= U64_MAX:
        raise ValueError(f"request_id must fit in an unsigned 64-bit integer, got {request_id}")


@dataclass(frozen=True)
class Request:
    """Operation invocation from client to agent.

    Attributes:
        request_id: Session-unique id used to correlate responses.
        operation: Operation name (see Operation).
        args: Operation arguments.
    """

    type_tag: ClassVar[MessageType] = MessageType.REQUEST

    request_id: int
    operation: str
    args: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate request fields after initialization."""
        if not self.operation:
            raise ValueError("Request.operation must not be empty")
        _check_request_id(self.request_id)


@dataclass(frozen=True)
class Result:
    """Successful terminal frame."""

    type_tag: ClassVar[MessageType] = MessageType.RESULT

    request_id: int
    value: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ErrorReply:
    """Failed terminal frame.

    Attributes:
        code: Machine-readable error code (e.g. 'not_found').
        reason: Human-readable description.
        details: Extra structured fields.
    """

    type_tag: ClassVar[MessageType] = MessageType.ERROR

    request_id: int
    code: str
    reason: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.code:
            raise ValueError("ErrorReply.code must not be empty")


@dataclass(frozen=True)
class Output:
    """A chunk of stdout or stderr from a running command."""

    type_tag: ClassVar[MessageType] = MessageType.OUTPUT

    request_id: int
    stream: OutputStream
    data: bytes

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class Progress:
    """Progress of a long-running request (bytes, steps, ...)."""

    type_tag: ClassVar[MessageType] = MessageType.PROGRESS

    request_id: int
    done: int
    total: int


@dataclass(frozen=True)
class Chunk:
    """One checksummed slice of a bulk transfer.

    Attributes:
        request_id: Transfer correlation id issued by transfer.begin.
        index: Chunk position in the transfer.
        offset: Byte offset of ``data`` within the transfer.
        checksum: Raw 32-byte SHA-256 of ``data``.
        data: Chunk bytes.
    """

    type_tag: ClassVar[MessageType] = MessageType.CHUNK

    request_id: int
    index: int
    offset: int
    checksum: bytes
    data: bytes


@dataclass(frozen=True)
class Challenge:
    """Agent's handshake challenge, sent first on every connection."""

    type_tag: ClassVar[MessageType] = MessageType.CHALLENGE

    nonce: bytes
    salt: bytes
    iterations: int
    request_id: int = 0


@dataclass(frozen=True)
class Auth:
    """Client's handshake answer.

    ``session_id`` is empty on the control channel and echoes the id from
    Welcome on the bulk channel.
    """

    type_tag: ClassVar[MessageType] = MessageType.AUTH

    channel: str
    proof: bytes
    session_id: str = ""
    request_id: int = 0


@dataclass(frozen=True)
class Welcome:
    """Agent accepted the handshake."""

    type_tag: ClassVar[MessageType] = MessageType.WELCOME

    session_id: str
    request_id: int = 0


@dataclass(frozen=True)
class AuthFailed:
    """Agent rejected the handshake; the connection closes after this frame."""

    type_tag: ClassVar[MessageType] = MessageType.AUTH_FAILED

    reason: str
    request_id: int = 0


Frame = Union[Request, Result, ErrorReply, Output, Progress, Chunk, Challenge, Auth, Welcome, AuthFailed]
Terminal = Union[Result, ErrorReply]
Intermediate = Union[Output, Progress]


def is_terminal(frame: Frame) -> bool:
    """Return True for the frames that end a request."""
    return isinstance(frame, (Result, ErrorReply))


def build_request(request_id: int, operation: str, **args: Any) -> Request:
    """Build a Request after validating the operation name.

    Raises:
        ValueError: If operation is not a valid Operation value.
    """
    try:
        Operation(operation)
    except ValueError:
        valid = [o.value for o in Operation]
        raise ValueError(
            f"Invalid operation: '{operation}'. Valid operations: {valid}"
        ) from None

    return Request(request_id=request_id, operation=str(operation), args=args)
