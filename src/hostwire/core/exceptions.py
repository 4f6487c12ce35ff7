"""Errors raised by hostwire.

Everything the library raises derives from HostwireError, so callers can
catch one type at the outermost layer and still log structured detail via
``error.context``.

Failures fall into three groups:

* local failures that happen before anything is sent (bad arguments,
  bad configuration, registry limits);
* connection and framing failures (NetworkError, AuthError,
  ProtocolError, SessionClosed, RequestTimeout);
* failures the agent reports in an ERROR frame. Operation modules turn
  the agent's error code into an OperationError subclass.

A command that exits non-zero is not an error here. Its exit code is part
of the CommandResult.

Example:
    try:
        result = await host.run_command("uptime")
    except SessionClosed as e:
        log.warning("session_lost", **e.context)
"""

from typing import Any, ClassVar, Optional


class HostwireError(Exception):
    """Root of the hostwire error tree.

    Subclasses list the attributes worth logging in ``_fields``; ``context``
    and ``repr()`` are both built from that list.
    """

    default_message: ClassVar[str] = "A Hostwire error occurred."
    _fields: ClassVar[tuple[str, ...]] = ()

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def context(self) -> dict[str, Any]:
        """Structured fields for log events."""
        return {name: getattr(self, name) for name in self._fields}

    def __repr__(self) -> str:
        name = type(self).__name__
        if not self._fields:
            return f"{name}({self.message!r})"
        shown = ", ".join(f"{field}={getattr(self, field)!r}" for field in self._fields)
        return f"{name}({shown})"


# -- local failures ----------------------------------------------------------


class ConfigurationError(HostwireError):
    """A settings file or value could not be used."""

    _fields = ("config_path", "key", "expected_type")

    def __init__(
        self,
        config_path: str,
        key: Optional[str] = None,
        expected_type: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        self.config_path = config_path
        self.key = key
        self.expected_type = expected_type
        if message is None:
            where = f"'{config_path}'"
            if key:
                where += f", key '{key}'"
            wanted = f"; wanted {expected_type}" if expected_type else ""
            message = f"Bad configuration in {where}{wanted}."
        super().__init__(message)


class DecryptionError(HostwireError):
    """A sealed record did not open.

    Covers a wrong channel key, a modified ciphertext and a record sealed
    for the other channel, since AES-GCM cannot tell these apart.
    """

    _fields = ("reason",)

    def __init__(self, reason: Optional[str] = None, message: Optional[str] = None) -> None:
        self.reason = reason
        if message is None:
            message = f"Record could not be opened: {reason}" if reason else (
                "Record could not be opened (wrong key or modified data)."
            )
        super().__init__(message)


class InvalidStateTransition(HostwireError):
    """A host was asked to move between states that are not adjacent."""

    _fields = ("host", "from_state", "to_state")

    def __init__(
        self,
        host: str,
        from_state: str,
        to_state: str,
        message: Optional[str] = None,
    ) -> None:
        self.host = host
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            message or f"Host '{host}' cannot go from {from_state} to {to_state}."
        )


class ResourceLimitError(HostwireError):
    """A configured ceiling, such as ``max_hosts``, would be exceeded."""

    _fields = ("limit_type", "current_value", "max_value")

    def __init__(
        self,
        limit_type: str,
        current_value: int,
        max_value: int,
        message: Optional[str] = None,
    ) -> None:
        self.limit_type = limit_type
        self.current_value = current_value
        self.max_value = max_value
        super().__init__(
            message or f"Limit '{limit_type}' reached ({current_value} of {max_value})."
        )


class InvalidRequestError(HostwireError, ValueError):
    """Arguments were rejected locally, so no request went out.

    Examples are an empty executable or a package action other than
    install, uninstall or query.
    """

    _fields = ("operation", "reason")

    def __init__(self, operation: str, reason: str, message: Optional[str] = None) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(message or f"Invalid request for '{operation}': {reason}")


class HostNotFoundError(HostwireError):
    """The registry has no host with this name."""

    _fields = ("host",)

    def __init__(self, host: str, message: Optional[str] = None) -> None:
        self.host = host
        super().__init__(message or f"Host not registered: '{host}'")


# -- connection and framing --------------------------------------------------


class NetworkError(HostwireError):
    """A socket connect, read or write failed.

    Attributes:
        endpoint: ``address:port`` of the socket.
        transient: False only when retrying cannot help, e.g. the name
            does not resolve.
        bytes_sent: How much of a bulk write got out before the failure.
    """

    _fields = ("endpoint", "reason", "transient", "bytes_sent")

    def __init__(
        self,
        endpoint: str,
        reason: str,
        transient: bool = True,
        bytes_sent: int = 0,
        message: Optional[str] = None,
    ) -> None:
        self.endpoint = endpoint
        self.reason = reason
        self.transient = transient
        self.bytes_sent = bytes_sent
        if message is None:
            kind = "transient" if transient else "terminal"
            message = f"{endpoint}: {reason} ({kind} network failure)"
        super().__init__(message)


class AuthError(HostwireError):
    """The handshake proof was refused. Never retried."""

    _fields = ("endpoint", "reason")

    def __init__(
        self,
        endpoint: str,
        reason: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        self.endpoint = endpoint
        self.reason = reason
        if message is None:
            message = f"Agent at {endpoint} refused authentication"
            if reason:
                message += f" ({reason})"
        super().__init__(message)


class ProtocolError(HostwireError):
    """A frame was malformed or arrived where it makes no sense.

    ``fatal`` is set when the byte stream can no longer be parsed, for
    example after a bad magic or an oversize length. Only then is the
    whole session torn down.
    """

    _fields = ("reason", "request_id", "fatal")

    def __init__(
        self,
        reason: Optional[str] = None,
        request_id: Optional[int] = None,
        fatal: bool = False,
        message: Optional[str] = None,
    ) -> None:
        self.reason = reason
        self.request_id = request_id
        self.fatal = fatal
        super().__init__(message or f"Protocol violation: {reason or 'malformed frame'}")


class UnknownMessage(ProtocolError):
    """A frame had a type tag this client does not know.

    Its body has already been skipped, so only the owning request fails.
    """

    _fields = ("type_tag", "request_id")

    def __init__(self, type_tag: int, request_id: Optional[int] = None) -> None:
        self.type_tag = type_tag
        super().__init__(
            reason=f"unknown message type 0x{type_tag:02x}",
            request_id=request_id,
            fatal=False,
        )


class SessionClosed(HostwireError):
    """The session went away while a request was still open.

    Every pending stream gets this on close or transport loss, and so does
    any new call on a closed session.
    """

    _fields = ("host", "reason")

    def __init__(self, host: str, reason: str = "closed", message: Optional[str] = None) -> None:
        self.host = host
        self.reason = reason
        super().__init__(message or f"Session to '{host}' closed: {reason}")


class RequestTimeout(HostwireError):
    """No terminal frame arrived before the caller's deadline.

    The client forgets the request. The agent may still carry it out.
    """

    _fields = ("request_id", "operation", "timeout")

    def __init__(
        self,
        request_id: int,
        operation: str,
        timeout: float,
        message: Optional[str] = None,
    ) -> None:
        self.request_id = request_id
        self.operation = operation
        self.timeout = timeout
        super().__init__(
            message or f"{operation} (request {request_id}) gave no answer within {timeout}s"
        )


# -- reported by the agent ---------------------------------------------------


class AgentError(HostwireError):
    """The agent answered with an ERROR frame.

    Attributes:
        code: The agent's error code, e.g. ``not_found``.
        reason: Free text from the agent.
        details: Any extra fields the agent attached.
        operation: The operation that failed.
    """

    _fields = ("code", "reason", "operation", "details")

    def __init__(
        self,
        code: str,
        reason: str = "",
        details: Optional[dict[str, Any]] = None,
        operation: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        self.code = code
        self.reason = reason
        self.details = details or {}
        self.operation = operation
        if message is None:
            message = f"Agent error '{code}'"
            if operation:
                message += f" during '{operation}'"
            if reason:
                message += f": {reason}"
        super().__init__(message)


class OperationError(AgentError):
    """An AgentError mapped to a domain meaning."""


class FileNotFound(OperationError):
    """No such path on the host."""


class FilePermissionDenied(OperationError):
    """The agent may not touch this path."""


class FileAlreadyExists(OperationError):
    """The destination exists and overwrite was off."""


class PackageNotFound(OperationError):
    """The provider knows no package by that name."""


class ProviderUnavailable(OperationError):
    """That package provider is not active on the host."""


class ServiceNotFound(OperationError):
    """No such service."""


class ServiceStopFailed(OperationError):
    """The service did not stop."""


class ServiceStartFailed(OperationError):
    """The service did not start.

    When a restart fails here ``left_stopped`` is True: the stop half went
    through and the service stays stopped.
    """

    _fields = AgentError._fields + ("left_stopped",)

    def __init__(
        self,
        code: str,
        reason: str = "",
        details: Optional[dict[str, Any]] = None,
        operation: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        super().__init__(code, reason, details, operation, message)
        self.left_stopped = bool(self.details.get("stopped", False))


class TemplateRenderError(OperationError):
    """Rendering failed. ``line`` is set when the renderer reported one."""

    def __init__(
        self,
        code: str,
        reason: str = "",
        details: Optional[dict[str, Any]] = None,
        operation: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        super().__init__(code, reason, details, operation, message)
        self.line: Optional[int] = self.details.get("line")


class PayloadIntegrityError(OperationError):
    """A chunk or the finished bundle failed its checksum.

    The entrypoint is not run after this. ``chunk_index`` names the first
    bad chunk when the agent reported it.
    """

    def __init__(
        self,
        code: str,
        reason: str = "",
        details: Optional[dict[str, Any]] = None,
        operation: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        super().__init__(code, reason, details, operation, message)
        self.chunk_index: Optional[int] = self.details.get("chunk_index")
