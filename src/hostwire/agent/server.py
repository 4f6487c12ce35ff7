"""Agent Server.

Listens on the control and bulk ports, authenticates each connection,
and routes requests to registered handlers. Transfer bookkeeping
(``transfer.begin`` / ``transfer.commit`` and incoming Chunk frames) is
built in; every other operation is supplied by the embedding program.

A handler is ``async def handler(request, reply) -> dict | None``. It may
emit Output and Progress frames through ``reply`` before returning; the
returned mapping becomes the RESULT value. Raising AgentError produces an
ERROR frame with its code; any other exception produces code "internal".

Usage:
    server = AgentServer(token="s3cret")

    @server.route(Operation.HOST_TELEMETRY)
    async def telemetry(request, reply):
        return {"os": {"hostname": socket.gethostname()}}

    async with server:
        config = server.client_config()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

import structlog
from pydantic import SecretStr

from hostwire.agent.transfers import TransferStore
from hostwire.core.config import HostConfig
from hostwire.core.exceptions import AgentError, AuthError, NetworkError, ProtocolError
from hostwire.core.keystore import DEFAULT_ITERATIONS
from hostwire.transport.channel import DEFAULT_MAX_RECORD_SIZE, Channel, ChannelName
from hostwire.transport.handshake import accept
from hostwire.wire.codec import FrameDecoder
from hostwire.wire.messages import (
    Chunk,
    ErrorReply,
    Operation,
    Output,
    OutputStream,
    Progress,
    Request,
    Result,
)


log = structlog.get_logger()

MAX_SESSIONS = 100  # Prevent resource exhaustion


class Reply:
    """Emits intermediate frames for one request."""

    def __init__(self, channel: Channel, request_id: int) -> None:
        self._channel = channel
        self.request_id = request_id

    async def output(self, stream: OutputStream, data: Union[bytes, str]) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        await self._channel.send_frame(Output(self.request_id, stream, data))

    async def stdout(self, data: Union[bytes, str]) -> None:
        await self.output(OutputStream.STDOUT, data)

    async def stderr(self, data: Union[bytes, str]) -> None:
        await self.output(OutputStream.STDERR, data)

    async def progress(self, done: int, total: int) -> None:
        await self._channel.send_frame(Progress(self.request_id, done, total))


Handler = Callable[[Request, Reply], Awaitable[Optional[dict[str, Any]]]]


@dataclass
class _AgentSession:
    session_id: str
    control: Channel
    bulk: Optional[Channel] = None
    tasks: set[asyncio.Task] = field(default_factory=set)


def _peer(writer: asyncio.StreamWriter) -> str:
    peer = writer.get_extra_info("peername")
    if isinstance(peer, tuple) and len(peer) >= 2:
        return f"{peer[0]}:{peer[1]}"
    return str(peer)


class AgentServer:
    """TCP agent serving one or more client sessions.

    Attributes:
        host: Address the listeners bind to.
        transfers: Store of chunked transfers.
    """

    def __init__(
        self,
        token: str,
        *,
        host: str = "127.0.0.1",
        control_port: int = 0,
        bulk_port: int = 0,
        iterations: int = DEFAULT_ITERATIONS,
        handshake_timeout: float = 10.0,
        commit_timeout: float = 30.0,
        max_record_size: int = DEFAULT_MAX_RECORD_SIZE,
    ) -> None:
        self.host = host
        self.transfers = TransferStore()
        self._token = token
        self._requested_ports = (control_port, bulk_port)
        self._iterations = iterations
        self._handshake_timeout = handshake_timeout
        self._commit_timeout = commit_timeout
        self._max_record_size = max_record_size
        self._handlers: dict[str, Handler] = {
            Operation.TRANSFER_BEGIN: self._transfer_begin,
            Operation.TRANSFER_COMMIT: self._transfer_commit,
        }
        self._sessions: dict[str, _AgentSession] = {}
        self._servers: list[asyncio.Server] = []
        self._running = False

    def register(self, operation: str, handler: Handler) -> None:
        self._handlers[str(operation)] = handler

    def route(self, operation: str) -> Callable[[Handler], Handler]:
        """Decorator form of ``register``."""

        def decorator(handler: Handler) -> Handler:
            self.register(operation, handler)
            return handler

        return decorator

    @property
    def control_port(self) -> int:
        return self._bound_port(0)

    @property
    def bulk_port(self) -> int:
        return self._bound_port(1)

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def _bound_port(self, index: int) -> int:
        if not self._servers:
            return self._requested_ports[index]
        return self._servers[index].sockets[0].getsockname()[1]

    def client_config(self) -> HostConfig:
        """HostConfig a client uses to reach this agent."""
        return HostConfig(
            address=self.host,
            control_port=self.control_port,
            bulk_port=self.bulk_port,
            token=SecretStr(self._token),
        )

    async def start(self) -> None:
        control_port, bulk_port = self._requested_ports
        self._servers = [
            await asyncio.start_server(self._handle_control, self.host, control_port),
            await asyncio.start_server(self._handle_bulk, self.host, bulk_port),
        ]
        self._running = True
        log.info(
            "agent_server_started",
            host=self.host,
            control_port=self.control_port,
            bulk_port=self.bulk_port,
        )

    async def stop(self) -> None:
        """Close every session and stop listening."""
        self._running = False
        for server in self._servers:
            server.close()

        for session in list(self._sessions.values()):
            await self._close_session(session)

        for server in self._servers:
            try:
                await asyncio.wait_for(server.wait_closed(), timeout=5.0)
            except asyncio.TimeoutError:
                log.warning("agent_server_shutdown_timeout")
        log.info("agent_server_stopped")

    async def __aenter__(self) -> "AgentServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    # Connections

    async def _handle_control(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        channel = Channel(ChannelName.CONTROL, _peer(writer), reader, writer, self._max_record_size)
        if len(self._sessions) >= MAX_SESSIONS:
            log.warning("max_sessions_reached", limit=MAX_SESSIONS)
            await channel.close()
            return

        try:
            session_id = await accept(
                channel, self._token, self._iterations, timeout=self._handshake_timeout
            )
        except (AuthError, NetworkError, ProtocolError) as e:
            log.warning("handshake_rejected", channel="control", peer=channel.endpoint, error=str(e))
            await channel.close()
            return

        session = _AgentSession(session_id=session_id, control=channel)
        self._sessions[session_id] = session
        log.info("client_connected", session_id=session_id, peer=channel.endpoint)

        try:
            await self._serve(channel, lambda frame: self._on_control_frame(session, frame))
        finally:
            await self._close_session(session)
            log.info("client_disconnected", session_id=session_id)

    async def _handle_bulk(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        channel = Channel(ChannelName.BULK, _peer(writer), reader, writer, self._max_record_size)

        def session_check(session_id: str) -> bool:
            session = self._sessions.get(session_id)
            return session is not None and session.bulk is None

        try:
            session_id = await accept(
                channel,
                self._token,
                self._iterations,
                timeout=self._handshake_timeout,
                session_check=session_check,
            )
        except (AuthError, NetworkError, ProtocolError) as e:
            log.warning("handshake_rejected", channel="bulk", peer=channel.endpoint, error=str(e))
            await channel.close()
            return

        self._sessions[session_id].bulk = channel
        try:
            await self._serve(channel, self._on_bulk_frame)
        finally:
            await channel.close()

    async def _serve(self, channel: Channel, on_frame: Callable[[Any], None]) -> None:
        """Read records until the peer goes away, passing each frame to ``on_frame``."""
        decoder = FrameDecoder(self._max_record_size)
        while self._running:
            try:
                decoder.feed(await channel.receive_record())
            except (NetworkError, ProtocolError) as e:
                log.debug("channel_ended", channel=channel.name, peer=channel.endpoint, reason=str(e))
                return

            while True:
                try:
                    frame = decoder.next_frame()
                except ProtocolError as e:
                    if e.fatal:
                        log.warning("protocol_error", channel=channel.name, error=str(e))
                        return
                    await self._reject(channel, e)
                    continue
                if frame is None:
                    break
                on_frame(frame)

    async def _reject(self, channel: Channel, error: ProtocolError) -> None:
        log.warning("frame_rejected", channel=channel.name, request_id=error.request_id, reason=error.reason)
        if error.request_id is None or channel.name != ChannelName.CONTROL:
            return
        try:
            await channel.send_frame(
                ErrorReply(error.request_id, "invalid_request", error.reason or "malformed frame")
            )
        except NetworkError:
            pass

    def _on_control_frame(self, session: _AgentSession, frame: Any) -> None:
        if not isinstance(frame, Request):
            log.warning("unexpected_frame", channel="control", frame=type(frame).__name__)
            return
        task = asyncio.get_running_loop().create_task(self._dispatch(session, frame))
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)

    def _on_bulk_frame(self, frame: Any) -> None:
        if not isinstance(frame, Chunk):
            log.warning("unexpected_frame", channel="bulk", frame=type(frame).__name__)
            return
        self.transfers.receive(frame)

    async def _dispatch(self, session: _AgentSession, request: Request) -> None:
        log.debug("handling_request", operation=request.operation, request_id=request.request_id)
        reply = Reply(session.control, request.request_id)
        handler = self._handlers.get(request.operation)
        try:
            if handler is None:
                raise AgentError("invalid_request", f"unsupported operation '{request.operation}'")
            value = await handler(request, reply)
            frame: Union[Result, ErrorReply] = Result(request.request_id, dict(value or {}))
        except AgentError as e:
            frame = ErrorReply(request.request_id, e.code, e.reason, e.details)
        except Exception as e:
            log.exception("request_handler_error", operation=request.operation, error=str(e))
            frame = ErrorReply(request.request_id, "internal", f"Internal error: {e}")

        try:
            await session.control.send_frame(frame)
        except (NetworkError, ProtocolError) as e:
            log.debug("reply_dropped", request_id=request.request_id, error=str(e))

    async def _close_session(self, session: _AgentSession) -> None:
        self._sessions.pop(session.session_id, None)
        for task in list(session.tasks):
            task.cancel()
        if session.tasks:
            await asyncio.gather(*session.tasks, return_exceptions=True)
        await session.control.close()
        if session.bulk is not None:
            await session.bulk.close()

    # Built-in transfer handlers

    async def _transfer_begin(self, request: Request, reply: Reply) -> dict[str, Any]:
        transfer_id = request.args.get("transfer_id")
        size = request.args.get("size")
        chunk_size = request.args.get("chunk_size")
        if not isinstance(transfer_id, str) or not transfer_id:
            raise AgentError("invalid_request", "transfer_id is required")
        if not isinstance(size, int) or size < 0:
            raise AgentError("invalid_request", "size must be a non-negative integer")
        if not isinstance(chunk_size, int) or chunk_size <= 0:
            raise AgentError("invalid_request", "chunk_size must be a positive integer")

        handle, offset = self.transfers.begin(transfer_id, size, chunk_size)
        return {"handle": handle, "offset": offset}

    async def _transfer_commit(self, request: Request, reply: Reply) -> dict[str, Any]:
        handle = request.args.get("handle")
        if not isinstance(handle, int):
            raise AgentError("invalid_request", "handle is required")
        data = await self.transfers.commit(handle, timeout=self._commit_timeout)
        return {"transfer_id": request.args.get("transfer_id"), "size": len(data)}
