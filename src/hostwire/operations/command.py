"""Remote command execution.

``run_command`` streams stdout/stderr as Output frames and resolves to a
CommandResult. A non-zero exit code is a result, not an error.
``RemoteProcess`` wraps a detached command as a Runnable.
"""

from __future__ import annotations

import shlex
from typing import Any, Mapping, Optional, Sequence, Union

import structlog

from hostwire.core.exceptions import AgentError, InvalidRequestError
from hostwire.core.models import CommandResult, RunnableState
from hostwire.operations.base import PATH_ERRORS, call, map_agent_error
from hostwire.session.session import ResponseStream, Session
from hostwire.wire.messages import Intermediate, Operation, Output, OutputStream


log = structlog.get_logger()

Command = Union[str, Sequence[str]]


def build_command_args(
    command: Command,
    *,
    shell: bool = False,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    operation: str = Operation.COMMAND_EXEC,
) -> dict[str, Any]:
    """Validate a command and build its request arguments.

    A string is split with shlex unless ``shell`` is set, in which case it
    is passed whole to the remote shell.

    Raises:
        InvalidRequestError: If the executable is empty or env is malformed.
    """
    if isinstance(command, str):
        try:
            argv = [command] if shell else shlex.split(command)
        except ValueError as e:
            raise InvalidRequestError(operation, f"cannot parse command: {e}") from e
    else:
        argv = list(command)

    if not argv or not isinstance(argv[0], str) or not argv[0].strip():
        raise InvalidRequestError(operation, "executable must not be empty")
    if not all(isinstance(arg, str) for arg in argv):
        raise InvalidRequestError(operation, "arguments must be strings")

    args: dict[str, Any] = {"argv": argv, "shell": shell}
    if cwd is not None:
        args["cwd"] = cwd
    if env:
        if not all(isinstance(k, str) and isinstance(v, str) for k, v in env.items()):
            raise InvalidRequestError(operation, "environment keys and values must be strings")
        args["env"] = dict(env)
    return args


class CommandStream:
    """Output frames of a running command, then its CommandResult.

    Output is also accumulated, so ``result()`` carries the full stdout and
    stderr whether or not the caller iterated.
    """

    def __init__(self, stream: ResponseStream) -> None:
        self._stream = stream
        self._stdout = bytearray()
        self._stderr = bytearray()

    @property
    def request_id(self) -> int:
        return self._stream.request_id

    def __aiter__(self) -> "CommandStream":
        return self

    async def __anext__(self) -> Intermediate:
        try:
            frame = await self._stream.__anext__()
        except AgentError as e:
            mapped = map_agent_error(e, PATH_ERRORS)
            if mapped is e:
                raise
            raise mapped from e
        if isinstance(frame, Output):
            target = self._stdout if frame.stream == OutputStream.STDOUT else self._stderr
            target.extend(frame.data)
        return frame

    async def result(self) -> CommandResult:
        """Wait for the command to exit."""
        async for _ in self:
            pass
        value = await self._stream.result()
        return CommandResult.from_wire(
            value,
            stdout=self._stdout.decode("utf-8", errors="replace"),
            stderr=self._stderr.decode("utf-8", errors="replace"),
        )


async def run_command(
    session: Session,
    command: Command,
    *,
    shell: bool = False,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
) -> CommandStream:
    """Start a command and return its output stream."""
    args = build_command_args(command, shell=shell, cwd=cwd, env=env)
    stream = await session.execute(Operation.COMMAND_EXEC, args, timeout=timeout)
    return CommandStream(stream)


class RemoteProcess:
    """A detached remote command that can be started, stopped and queried.

    State is always read from the agent; ``start`` is a no-op while the
    process is running and ``stop`` is a no-op once it has exited.
    """

    def __init__(
        self,
        session: Session,
        command: Command,
        *,
        shell: bool = False,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._session = session
        self._args = build_command_args(
            command, shell=shell, cwd=cwd, env=env, operation=Operation.COMMAND_SPAWN
        )
        self._timeout = timeout
        self.pid: Optional[int] = None

    @property
    def argv(self) -> list[str]:
        return list(self._args["argv"])

    async def status(self) -> RunnableState:
        if self.pid is None:
            return RunnableState.STOPPED
        value = await call(
            self._session, Operation.COMMAND_STATUS, {"pid": self.pid}, timeout=self._timeout
        )
        return RunnableState.parse(value.get("state"))

    async def start(self) -> bool:
        """Spawn the process unless it is already running. Returns True if spawned."""
        if await self.status() == RunnableState.RUNNING:
            return False
        value = await call(self._session, Operation.COMMAND_SPAWN, self._args, timeout=self._timeout)
        self.pid = value.get("pid")
        log.info("process_spawned", host=self._session.host, argv=self._args["argv"], pid=self.pid)
        return True

    async def stop(self) -> bool:
        """Terminate the process if it is running. Returns True if signalled."""
        if await self.status() != RunnableState.RUNNING:
            return False
        await call(
            self._session,
            Operation.COMMAND_KILL,
            {"pid": self.pid, "signal": "TERM"},
            timeout=self._timeout,
        )
        log.info("process_stopped", host=self._session.host, pid=self.pid)
        return True

    async def restart(self) -> bool:
        await self.stop()
        return await self.start()
