"""One authenticated TCP connection carrying length-prefixed records.

Record Layout:
    length   u32 (big-endian)
    payload  plaintext frame during the handshake, sealed frame afterwards

A Channel never retries and never reconnects; socket failures surface as
NetworkError and a record that fails authentication surfaces as a fatal
ProtocolError.
"""

from __future__ import annotations

import asyncio
import socket
import struct
from enum import StrEnum
from typing import Optional

import structlog

from hostwire.core.exceptions import DecryptionError, NetworkError, ProtocolError
from hostwire.core.keystore import SEAL_OVERHEAD, ChannelCipher
from hostwire.wire.codec import MAX_FRAME_SIZE, decode, encode
from hostwire.wire.messages import Frame


log = structlog.get_logger()

RECORD_HEADER = struct.Struct(">I")
DEFAULT_MAX_RECORD_SIZE = MAX_FRAME_SIZE + 1024  # frame plus sealing overhead


class ChannelName(StrEnum):
    """The two logical channels of a session."""

    CONTROL = "control"
    BULK = "bulk"


def network_error(endpoint: str, exc: BaseException, bytes_sent: int = 0) -> NetworkError:
    """Translate a socket-level exception into a NetworkError.

    Name resolution failures are terminal; refused, reset and timed-out
    connections are transient.
    """
    if isinstance(exc, socket.gaierror):
        return NetworkError(endpoint, f"cannot resolve host: {exc}", transient=False, bytes_sent=bytes_sent)
    if isinstance(exc, asyncio.TimeoutError):
        return NetworkError(endpoint, "timed out", transient=True, bytes_sent=bytes_sent)
    if isinstance(exc, asyncio.IncompleteReadError):
        return NetworkError(endpoint, "connection closed by peer", transient=True, bytes_sent=bytes_sent)
    return NetworkError(endpoint, str(exc) or type(exc).__name__, transient=True, bytes_sent=bytes_sent)


class Channel:
    """A single control or bulk connection.

    Writes are serialised by an internal lock, so records from concurrent
    senders never interleave.

    Attributes:
        name: Channel name, bound into every sealed record.
        endpoint: "address:port" of the peer.
    """

    def __init__(
        self,
        name: str,
        endpoint: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        max_record_size: int = DEFAULT_MAX_RECORD_SIZE,
    ) -> None:
        self.name = str(name)
        self.endpoint = endpoint
        self._reader = reader
        self._writer = writer
        self._max_record_size = max_record_size
        self._cipher: Optional[ChannelCipher] = None
        self._write_lock = asyncio.Lock()
        self._closed = False

    @classmethod
    async def open(
        cls,
        name: str,
        address: str,
        port: int,
        *,
        timeout: float,
        max_record_size: int = DEFAULT_MAX_RECORD_SIZE,
    ) -> "Channel":
        """Open a TCP connection to the agent.

        Raises:
            NetworkError: If the connection cannot be established.
        """
        endpoint = f"{address}:{port}"
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(address, port), timeout=timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise network_error(endpoint, e) from e

        log.debug("channel_opened", channel=str(name), endpoint=endpoint)
        return cls(name, endpoint, reader, writer, max_record_size)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def encrypted(self) -> bool:
        return self._cipher is not None

    @property
    def max_payload_size(self) -> int:
        """Largest payload send_record accepts, after sealing overhead."""
        return self._max_record_size - (SEAL_OVERHEAD if self._cipher else 0)

    def enable_encryption(self, cipher: ChannelCipher) -> None:
        """Seal every record from now on (called once the handshake succeeds)."""
        self._cipher = cipher

    async def send_record(self, payload: bytes) -> None:
        """Write one record.

        Raises:
            NetworkError: If the channel is closed or the write fails.
            ProtocolError: If the record exceeds the size limit.
        """
        if self._closed:
            raise NetworkError(self.endpoint, "channel closed")

        record = self._cipher.seal(payload) if self._cipher else payload
        if len(record) > self._max_record_size:
            raise ProtocolError(
                f"record of {len(record)} bytes exceeds limit of {self._max_record_size}"
            )

        async with self._write_lock:
            try:
                self._writer.write(RECORD_HEADER.pack(len(record)) + record)
                await self._writer.drain()
            except (OSError, RuntimeError) as e:
                raise network_error(self.endpoint, e) from e

    async def receive_record(self, timeout: Optional[float] = None) -> bytes:
        """Read one record, waiting at most ``timeout`` seconds.

        Raises:
            NetworkError: On socket failure, EOF, or timeout.
            ProtocolError: (fatal) If the record is oversize or fails authentication.
        """
        try:
            header = await asyncio.wait_for(self._reader.readexactly(RECORD_HEADER.size), timeout)
            (length,) = RECORD_HEADER.unpack(header)
            if length > self._max_record_size:
                raise ProtocolError(
                    f"record of {length} bytes exceeds limit of {self._max_record_size}",
                    fatal=True,
                )
            record = await asyncio.wait_for(self._reader.readexactly(length), timeout)
        except (OSError, asyncio.IncompleteReadError, asyncio.TimeoutError) as e:
            raise network_error(self.endpoint, e) from e

        if self._cipher is None:
            return record

        try:
            return self._cipher.open(record)
        except DecryptionError as e:
            raise ProtocolError(f"record authentication failed: {e.reason}", fatal=True) from e

    async def send_frame(self, frame: Frame) -> None:
        await self.send_record(encode(frame))

    async def receive_frame(self, timeout: Optional[float] = None) -> Frame:
        """Read one record holding exactly one frame (used during the handshake)."""
        return decode(await self.receive_record(timeout), max_frame_size=self._max_record_size)

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True

        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (OSError, asyncio.CancelledError) as e:
            if isinstance(e, asyncio.CancelledError):
                raise
            log.debug("channel_close_error", channel=self.name, endpoint=self.endpoint, error=str(e))

        if self._cipher is not None:
            self._cipher.clear()
        log.debug("channel_closed", channel=self.name, endpoint=self.endpoint)
