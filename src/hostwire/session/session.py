"""Request multiplexing over one transport.

A Session assigns request ids, writes requests on the control channel,
and runs a single reader task that routes every incoming frame to the
ResponseStream of its request id. Any number of requests may be in flight
at once; each stream receives exactly one terminal frame or one error.

Usage:
    session = Session("web-1", transport)
    session.start()

    stream = await session.execute(Operation.COMMAND_EXEC, {"argv": ["uptime"]})
    async for frame in stream:
        print(frame)
    value = await stream.result()

    await session.close()
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol, Union

import structlog

from hostwire.core.exceptions import (
    AgentError,
    HostwireError,
    InvalidRequestError,
    NetworkError,
    ProtocolError,
    RequestTimeout,
    SessionClosed,
)
from hostwire.wire.codec import MAX_FRAME_SIZE, FrameDecoder, encode
from hostwire.wire.messages import (
    Chunk,
    ErrorReply,
    Frame,
    Intermediate,
    Output,
    Progress,
    Request,
    Result,
    is_terminal,
)


log = structlog.get_logger()


class FrameTransport(Protocol):
    """What a Session needs from its transport."""

    async def send(self, data: bytes) -> None: ...

    async def receive(self, timeout: Optional[float] = None) -> bytes: ...

    async def send_bulk(self, chunks: Iterable[Chunk]) -> int: ...

    async def close(self) -> None: ...


_Item = Union[Frame, HostwireError]


class ResponseStream:
    """Frames of one request, in arrival order.

    Iterating yields Output and Progress frames and stops at the terminal
    frame. A failure (agent ERROR, timeout, session loss) is raised from
    the iterator. ``result()`` drains what is left and returns the RESULT
    value, or raises the failure. A stream cannot be restarted.
    """

    def __init__(self, request: Request, session: "Session", timeout: Optional[float] = None) -> None:
        self.request = request
        self.timeout = timeout
        self._session = session
        self._queue: asyncio.Queue[_Item] = asyncio.Queue()
        self._deadline = None if timeout is None else asyncio.get_running_loop().time() + timeout
        self._settled = False
        self._finished = False
        self._value: Optional[dict[str, Any]] = None
        self._error: Optional[HostwireError] = None

    @property
    def request_id(self) -> int:
        return self.request.request_id

    @property
    def operation(self) -> str:
        return self.request.operation

    @property
    def done(self) -> bool:
        """True once a terminal frame or failure has been queued."""
        return self._settled

    def deliver(self, frame: Frame) -> bool:
        """Queue a frame from the reader. Frames after the terminal one are dropped."""
        if self._settled:
            log.warning(
                "late_frame_dropped",
                request_id=self.request_id,
                frame=type(frame).__name__,
            )
            return False
        if is_terminal(frame):
            self._settled = True
        self._queue.put_nowait(frame)
        return True

    def fail(self, error: HostwireError) -> None:
        """Terminate the stream with an error unless it already has a terminal frame."""
        if self._settled:
            return
        self._settled = True
        self._queue.put_nowait(error)

    def __aiter__(self) -> "ResponseStream":
        return self

    async def __anext__(self) -> Intermediate:
        if self._finished:
            if self._error is not None:
                raise self._error
            raise StopAsyncIteration

        item = await self._next_item()
        if isinstance(item, (Output, Progress)):
            return item

        self._finished = True
        if isinstance(item, Result):
            self._value = item.value
            raise StopAsyncIteration
        if isinstance(item, ErrorReply):
            self._error = AgentError(item.code, item.reason, item.details, operation=self.operation)
        elif isinstance(item, HostwireError):
            self._error = item
        else:
            self._error = ProtocolError(
                f"unexpected {type(item).__name__} frame", request_id=self.request_id
            )
        raise self._error

    async def result(self) -> dict[str, Any]:
        """Drain the stream and return the RESULT value."""
        async for _ in self:
            pass
        if self._error is not None:
            raise self._error
        return self._value if self._value is not None else {}

    async def _next_item(self) -> _Item:
        if not self._queue.empty() or self._deadline is None:
            return await self._queue.get()

        remaining = self._deadline - asyncio.get_running_loop().time()
        try:
            return await asyncio.wait_for(self._queue.get(), max(remaining, 0))
        except asyncio.TimeoutError:
            self._settled = True
            self._session.abandon(self.request_id)
            log.warning(
                "request_timed_out",
                request_id=self.request_id,
                operation=self.operation,
                timeout=self.timeout,
            )
            return RequestTimeout(self.request_id, self.operation, self.timeout or 0.0)


class Session:
    """Live, authenticated connection to one host.

    Attributes:
        host: Host name (used in errors and logs).
    """

    def __init__(
        self,
        host: str,
        transport: FrameTransport,
        on_lost: Optional[Callable[[HostwireError], None]] = None,
        max_frame_size: int = MAX_FRAME_SIZE,
        max_request_size: Optional[int] = None,
    ) -> None:
        self.host = host
        self._transport = transport
        self._max_request_size = max_request_size
        self._on_lost = on_lost
        self._ids = itertools.count(1)
        self._pending: dict[int, ResponseStream] = {}
        self._decoder = FrameDecoder(max_frame_size)
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._closed = False
        self._close_reason = ""

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        """Start the reader task. Must be called from a running loop."""
        if self._reader_task is None:
            self._reader_task = asyncio.get_running_loop().create_task(
                self._read_loop(), name=f"hostwire-reader-{self.host}"
            )

    async def execute(
        self,
        operation: str,
        args: Optional[Mapping[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> ResponseStream:
        """Send a request and return its response stream.

        Args:
            operation: Operation name.
            args: Operation arguments.
            timeout: Overall deadline in seconds for the terminal frame.

        Raises:
            SessionClosed: If the session is closed or the write fails.
            InvalidRequestError: If the arguments cannot be encoded or the
                encoded request is larger than the transport carries.
        """
        if self._closed:
            raise SessionClosed(self.host, self._close_reason)

        request = Request(next(self._ids), str(operation), dict(args or {}))
        try:
            data = encode(request)
        except ProtocolError as e:
            raise InvalidRequestError(str(operation), e.reason or str(e)) from e
        if self._max_request_size is not None and len(data) > self._max_request_size:
            raise InvalidRequestError(
                str(operation),
                f"encoded request of {len(data)} bytes exceeds limit of {self._max_request_size}",
            )

        stream = ResponseStream(request, self, timeout)
        self._pending[request.request_id] = stream
        try:
            await self._transport.send(data)
        except NetworkError as e:
            self._pending.pop(request.request_id, None)
            await self._lost(e)
            raise SessionClosed(self.host, f"send failed: {e.reason}") from e
        except BaseException:
            # Cancelled or refused by the channel: the caller owns this outcome.
            self._pending.pop(request.request_id, None)
            raise

        log.debug("request_sent", host=self.host, request_id=request.request_id, operation=request.operation)
        return stream

    async def call(
        self,
        operation: str,
        args: Optional[Mapping[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """Execute a request and wait for its RESULT value."""
        stream = await self.execute(operation, args, timeout=timeout)
        return await stream.result()

    async def send_chunks(self, chunks: Iterable[Chunk]) -> int:
        """Write transfer chunks on the bulk channel.

        Raises:
            SessionClosed: If the session is closed.
            NetworkError: If the bulk write fails; the session is closed.
        """
        if self._closed:
            raise SessionClosed(self.host, self._close_reason)
        try:
            return await self._transport.send_bulk(chunks)
        except NetworkError as e:
            await self._lost(e)
            raise

    def abandon(self, request_id: int) -> None:
        """Forget a request; later frames for it are dropped."""
        self._pending.pop(request_id, None)

    async def close(self, reason: str = "closed by caller") -> None:
        """Close the session. Every pending stream fails with SessionClosed."""
        if self._closed:
            return
        self._shutdown(reason)

        task = self._reader_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        await self._transport.close()
        log.info("session_closed", host=self.host, reason=reason)

    def _shutdown(self, reason: str) -> None:
        self._closed = True
        self._close_reason = reason
        pending, self._pending = self._pending, {}
        for stream in pending.values():
            stream.fail(SessionClosed(self.host, reason))
        if pending:
            log.info("pending_requests_failed", host=self.host, count=len(pending), reason=reason)

    async def _lost(self, error: HostwireError) -> None:
        """Handle an unexpected transport failure."""
        if self._closed:
            return
        reason = getattr(error, "reason", None) or str(error)
        log.warning("session_lost", host=self.host, error=str(error))
        await self.close(reason=f"connection lost: {reason}")
        if self._on_lost is not None:
            self._on_lost(error)

    async def _read_loop(self) -> None:
        try:
            while True:
                data = await self._transport.receive()
                self._decoder.feed(data)
                self._drain_decoder()
        except (NetworkError, ProtocolError) as e:
            await self._lost(e)

    def _drain_decoder(self) -> None:
        while True:
            try:
                frame = self._decoder.next_frame()
            except ProtocolError as e:
                if e.fatal:
                    raise
                log.warning("frame_rejected", host=self.host, request_id=e.request_id, reason=e.reason)
                self._fail_request(e.request_id, e)
                continue
            if frame is None:
                return
            self._dispatch(frame)

    def _fail_request(self, request_id: Optional[int], error: HostwireError) -> None:
        if request_id is None:
            return
        stream = self._pending.pop(request_id, None)
        if stream is not None:
            stream.fail(error)

    def _dispatch(self, frame: Frame) -> None:
        stream = self._pending.get(frame.request_id)
        if stream is None:
            log.warning(
                "frame_for_unknown_request",
                host=self.host,
                request_id=frame.request_id,
                frame=type(frame).__name__,
            )
            return

        if not isinstance(frame, (Result, ErrorReply, Output, Progress)):
            self._fail_request(
                frame.request_id,
                ProtocolError(f"unexpected {type(frame).__name__} frame", request_id=frame.request_id),
            )
            return

        stream.deliver(frame)
        if is_terminal(frame):
            del self._pending[frame.request_id]
