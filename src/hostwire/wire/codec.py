"""Binary Codec for Hostwire Frames.

Frame Layout (big-endian):
    magic      2 bytes   b"HW"
    version    u8        1
    type tag   u8        see MessageType
    request id u64
    body len   u32
    body       body len bytes

Body Fields:
- Integers are fixed width (u8/u32/u64/i64, f64 for floats).
- Short strings (operation, error code, channel) are u16 length-prefixed UTF-8.
- Long strings and binary blobs are u32 length-prefixed.
- Argument/result maps use a tagged value encoding (None, bool, int, float,
  str, bytes, list, map), so no delimiter inside a value can be confused
  with framing.

Usage:
    from hostwire.wire.codec import FrameDecoder, encode

    wire = encode(request)

    decoder = FrameDecoder()
    decoder.feed(wire[:5])
    assert decoder.next_frame() is None  # partial frame is buffered
    decoder.feed(wire[5:])
    assert decoder.next_frame() == request
"""

from __future__ import annotations

import struct
from typing import Any, Callable, Iterator, Optional

from hostwire.core.exceptions import ProtocolError, UnknownMessage
from hostwire.wire.messages import (
    Auth,
    AuthFailed,
    Challenge,
    Chunk,
    ErrorReply,
    Frame,
    MessageType,
    Output,
    OutputStream,
    Progress,
    Request,
    Result,
    Welcome,
)


MAGIC = b"HW"
VERSION = 1
HEADER = struct.Struct(">2sBBQI")
HEADER_SIZE = HEADER.size

MAX_FRAME_SIZE = 16 * 1024 * 1024  # body bytes
MAX_SHORT_STRING = 0xFFFF
MAX_LONG_FIELD = 0xFFFFFFFF
MAX_VALUE_DEPTH = 32
CHECKSUM_SIZE = 32

_I64_MIN = -(2**63)
_I64_MAX = 2**63 - 1

# Value tags
_V_NONE = 0x00
_V_BOOL = 0x01
_V_INT = 0x02
_V_FLOAT = 0x03
_V_STR = 0x04
_V_BYTES = 0x05
_V_LIST = 0x06
_V_MAP = 0x07


class _Truncated(Exception):
    """Body ended before a field was complete."""


# =============================================================================
# Body writer / reader
# =============================================================================


class _Writer:
    def __init__(self) -> None:
        self._buf = bytearray()

    def getvalue(self) -> bytes:
        return bytes(self._buf)

    def u8(self, v: int) -> None:
        self._buf += struct.pack(">B", v)

    def u16(self, v: int) -> None:
        self._buf += struct.pack(">H", v)

    def u32(self, v: int) -> None:
        self._buf += struct.pack(">I", v)

    def u64(self, v: int) -> None:
        self._buf += struct.pack(">Q", v)

    def i64(self, v: int) -> None:
        self._buf += struct.pack(">q", v)

    def f64(self, v: float) -> None:
        self._buf += struct.pack(">d", v)

    def fixed(self, data: bytes, size: int) -> None:
        if len(data) != size:
            raise ProtocolError(f"fixed field must be {size} bytes, got {len(data)}")
        self._buf += data

    def short_str(self, s: str) -> None:
        raw = s.encode("utf-8")
        if len(raw) > MAX_SHORT_STRING:
            raise ProtocolError(f"short string field exceeds {MAX_SHORT_STRING} bytes")
        self.u16(len(raw))
        self._buf += raw

    def blob(self, data: bytes) -> None:
        if len(data) > MAX_LONG_FIELD:
            raise ProtocolError(f"binary field exceeds {MAX_LONG_FIELD} bytes")
        self.u32(len(data))
        self._buf += data

    def long_str(self, s: str) -> None:
        self.blob(s.encode("utf-8"))

    def value(self, v: Any, depth: int = 0) -> None:
        if depth > MAX_VALUE_DEPTH:
            raise ProtocolError("value nesting too deep")

        if v is None:
            self.u8(_V_NONE)
        elif isinstance(v, bool):
            self.u8(_V_BOOL)
            self.u8(1 if v else 0)
        elif isinstance(v, int):
            if not _I64_MIN <= v <= _I64_MAX:
                raise ProtocolError(f"integer {v} does not fit in 64 bits")
            self.u8(_V_INT)
            self.i64(v)
        elif isinstance(v, float):
            self.u8(_V_FLOAT)
            self.f64(v)
        elif isinstance(v, str):
            self.u8(_V_STR)
            self.long_str(v)
        elif isinstance(v, (bytes, bytearray, memoryview)):
            self.u8(_V_BYTES)
            self.blob(bytes(v))
        elif isinstance(v, (list, tuple)):
            self.u8(_V_LIST)
            self.u32(len(v))
            for item in v:
                self.value(item, depth + 1)
        elif isinstance(v, dict):
            self.u8(_V_MAP)
            self.mapping(v, depth + 1)
        else:
            raise ProtocolError(f"cannot encode value of type {type(v).__name__}")

    def mapping(self, m: dict[str, Any], depth: int = 0) -> None:
        self.u32(len(m))
        for key, item in m.items():
            if not isinstance(key, str):
                raise ProtocolError(f"map keys must be strings, got {type(key).__name__}")
            self.short_str(key)
            self.value(item, depth)


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def _take(self, n: int) -> bytes:
        end = self._pos + n
        if end > len(self._data):
            raise _Truncated()
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def done(self) -> bool:
        return self._pos == len(self._data)

    def u8(self) -> int:
        return self._take(1)[0]

    def u16(self) -> int:
        return struct.unpack(">H", self._take(2))[0]

    def u32(self) -> int:
        return struct.unpack(">I", self._take(4))[0]

    def u64(self) -> int:
        return struct.unpack(">Q", self._take(8))[0]

    def i64(self) -> int:
        return struct.unpack(">q", self._take(8))[0]

    def f64(self) -> float:
        return struct.unpack(">d", self._take(8))[0]

    def fixed(self, size: int) -> bytes:
        return self._take(size)

    def short_str(self) -> str:
        return self._take(self.u16()).decode("utf-8")

    def blob(self) -> bytes:
        return self._take(self.u32())

    def long_str(self) -> str:
        return self.blob().decode("utf-8")

    def value(self, depth: int = 0) -> Any:
        if depth > MAX_VALUE_DEPTH:
            raise ProtocolError("value nesting too deep")

        tag = self.u8()
        if tag == _V_NONE:
            return None
        if tag == _V_BOOL:
            return self.u8() != 0
        if tag == _V_INT:
            return self.i64()
        if tag == _V_FLOAT:
            return self.f64()
        if tag == _V_STR:
            return self.long_str()
        if tag == _V_BYTES:
            return self.blob()
        if tag == _V_LIST:
            return [self.value(depth + 1) for _ in range(self.u32())]
        if tag == _V_MAP:
            return self.mapping(depth + 1)
        raise ProtocolError(f"unknown value tag 0x{tag:02x}")

    def mapping(self, depth: int = 0) -> dict[str, Any]:
        count = self.u32()
        result: dict[str, Any] = {}
        for _ in range(count):
            key = self.short_str()
            result[key] = self.value(depth)
        return result


# =============================================================================
# Per-type body encoders / decoders
# =============================================================================


def _encode_body(frame: Frame, w: _Writer) -> None:
    if isinstance(frame, Request):
        w.short_str(frame.operation)
        w.mapping(frame.args)
    elif isinstance(frame, Result):
        w.mapping(frame.value)
    elif isinstance(frame, ErrorReply):
        w.short_str(frame.code)
        w.long_str(frame.reason)
        w.mapping(frame.details)
    elif isinstance(frame, Output):
        w.u8(int(frame.stream))
        w.blob(frame.data)
    elif isinstance(frame, Progress):
        w.u64(frame.done)
        w.u64(frame.total)
    elif isinstance(frame, Chunk):
        w.u32(frame.index)
        w.u64(frame.offset)
        w.fixed(frame.checksum, CHECKSUM_SIZE)
        w.blob(frame.data)
    elif isinstance(frame, Challenge):
        w.blob(frame.nonce)
        w.blob(frame.salt)
        w.u32(frame.iterations)
    elif isinstance(frame, Auth):
        w.short_str(frame.channel)
        w.blob(frame.proof)
        w.short_str(frame.session_id)
    elif isinstance(frame, Welcome):
        w.short_str(frame.session_id)
    elif isinstance(frame, AuthFailed):
        w.long_str(frame.reason)
    else:
        raise ProtocolError(f"cannot encode frame of type {type(frame).__name__}")


def _decode_request(rid: int, r: _Reader) -> Frame:
    return Request(request_id=rid, operation=r.short_str(), args=r.mapping())


def _decode_result(rid: int, r: _Reader) -> Frame:
    return Result(request_id=rid, value=r.mapping())


def _decode_error(rid: int, r: _Reader) -> Frame:
    return ErrorReply(request_id=rid, code=r.short_str(), reason=r.long_str(), details=r.mapping())


def _decode_output(rid: int, r: _Reader) -> Frame:
    stream = r.u8()
    try:
        kind = OutputStream(stream)
    except ValueError:
        raise ProtocolError(f"unknown output stream {stream}", request_id=rid) from None
    return Output(request_id=rid, stream=kind, data=r.blob())


def _decode_progress(rid: int, r: _Reader) -> Frame:
    return Progress(request_id=rid, done=r.u64(), total=r.u64())


def _decode_chunk(rid: int, r: _Reader) -> Frame:
    return Chunk(
        request_id=rid,
        index=r.u32(),
        offset=r.u64(),
        checksum=r.fixed(CHECKSUM_SIZE),
        data=r.blob(),
    )


def _decode_challenge(rid: int, r: _Reader) -> Frame:
    return Challenge(nonce=r.blob(), salt=r.blob(), iterations=r.u32(), request_id=rid)


def _decode_auth(rid: int, r: _Reader) -> Frame:
    return Auth(channel=r.short_str(), proof=r.blob(), session_id=r.short_str(), request_id=rid)


def _decode_welcome(rid: int, r: _Reader) -> Frame:
    return Welcome(session_id=r.short_str(), request_id=rid)


def _decode_auth_failed(rid: int, r: _Reader) -> Frame:
    return AuthFailed(reason=r.long_str(), request_id=rid)


_BODY_DECODERS: dict[int, Callable[[int, _Reader], Frame]] = {
    MessageType.REQUEST: _decode_request,
    MessageType.RESULT: _decode_result,
    MessageType.ERROR: _decode_error,
    MessageType.OUTPUT: _decode_output,
    MessageType.PROGRESS: _decode_progress,
    MessageType.CHUNK: _decode_chunk,
    MessageType.CHALLENGE: _decode_challenge,
    MessageType.AUTH: _decode_auth,
    MessageType.WELCOME: _decode_welcome,
    MessageType.AUTH_FAILED: _decode_auth_failed,
}


def _decode_body(type_tag: int, request_id: int, body: bytes) -> Frame:
    decoder = _BODY_DECODERS.get(type_tag)
    if decoder is None:
        raise UnknownMessage(type_tag, request_id)

    reader = _Reader(body)
    try:
        frame = decoder(request_id, reader)
    except _Truncated:
        raise ProtocolError("frame body truncated", request_id=request_id) from None
    except UnicodeDecodeError as e:
        raise ProtocolError(f"invalid UTF-8 in frame body: {e}", request_id=request_id) from e
    except ValueError as e:
        raise ProtocolError(f"frame validation failed: {e}", request_id=request_id) from e
    except ProtocolError as e:
        if e.request_id is None:
            raise ProtocolError(e.reason, request_id=request_id) from e
        raise

    if not reader.done():
        raise ProtocolError("trailing bytes after frame body", request_id=request_id)
    return frame


# =============================================================================
# Public API
# =============================================================================


def encode(frame: Frame) -> bytes:
    """Encode a frame to its wire bytes (header + body).

    Raises:
        ProtocolError: If a field cannot be represented (oversize string,
            integer beyond 64 bits, unsupported value type).
    """
    w = _Writer()
    _encode_body(frame, w)
    body = w.getvalue()
    if len(body) > MAX_LONG_FIELD:
        raise ProtocolError("frame body exceeds 4GiB")
    header = HEADER.pack(MAGIC, VERSION, int(frame.type_tag), frame.request_id, len(body))
    return header + body


def _parse_header(header: bytes, max_frame_size: int) -> tuple[int, int, int]:
    magic, version, type_tag, request_id, body_len = HEADER.unpack(header)
    if magic != MAGIC:
        raise ProtocolError(f"bad frame magic {magic!r}", fatal=True)
    if version != VERSION:
        raise ProtocolError(f"unsupported protocol version {version}", fatal=True)
    if body_len > max_frame_size:
        raise ProtocolError(
            f"frame body of {body_len} bytes exceeds limit of {max_frame_size}",
            request_id=request_id,
            fatal=True,
        )
    return type_tag, request_id, body_len


def decode(data: bytes, max_frame_size: int = MAX_FRAME_SIZE) -> Frame:
    """Decode exactly one complete frame.

    Raises:
        UnknownMessage: If the type tag is not recognised.
        ProtocolError: If the bytes are not exactly one well-formed frame.
    """
    if len(data) < HEADER_SIZE:
        raise ProtocolError("incomplete frame header", fatal=True)

    type_tag, request_id, body_len = _parse_header(bytes(data[:HEADER_SIZE]), max_frame_size)
    if len(data) != HEADER_SIZE + body_len:
        raise ProtocolError(
            f"frame length mismatch: header says {body_len}, got {len(data) - HEADER_SIZE}",
            request_id=request_id,
            fatal=True,
        )
    return _decode_body(type_tag, request_id, bytes(data[HEADER_SIZE:]))


class FrameDecoder:
    """Incremental decoder for a byte stream of frames.

    Bytes may arrive in any split; complete frames are returned only once
    fully buffered. An unknown or malformed frame is consumed before its
    error is raised, so decoding can continue with the next frame. A fatal
    ProtocolError (bad magic, oversize) leaves the decoder unusable.
    """

    def __init__(self, max_frame_size: int = MAX_FRAME_SIZE) -> None:
        self._buffer = bytearray()
        self._max_frame_size = max_frame_size
        self._header: Optional[tuple[int, int, int]] = None
        self._broken = False

    @property
    def buffered(self) -> int:
        """Number of bytes waiting for a complete frame."""
        return len(self._buffer)

    def feed(self, data: bytes) -> None:
        """Append received bytes."""
        self._buffer += data

    def next_frame(self) -> Optional[Frame]:
        """Return the next complete frame, or None if more bytes are needed.

        Raises:
            UnknownMessage: Unrecognised type tag (frame skipped).
            ProtocolError: Malformed frame (skipped unless ``fatal``).
        """
        if self._broken:
            raise ProtocolError("decoder is desynchronised", fatal=True)

        if self._header is None:
            if len(self._buffer) < HEADER_SIZE:
                return None
            try:
                self._header = _parse_header(bytes(self._buffer[:HEADER_SIZE]), self._max_frame_size)
            except ProtocolError:
                self._broken = True
                raise
            del self._buffer[:HEADER_SIZE]

        type_tag, request_id, body_len = self._header
        if len(self._buffer) < body_len:
            return None

        body = bytes(self._buffer[:body_len])
        del self._buffer[:body_len]
        self._header = None
        return _decode_body(type_tag, request_id, body)

    def __iter__(self) -> Iterator[Frame]:
        """Yield all complete buffered frames; errors propagate."""
        while True:
            frame = self.next_frame()
            if frame is None:
                return
            yield frame
