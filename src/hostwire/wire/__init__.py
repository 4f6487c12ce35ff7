"""Hostwire Wire Protocol.

Components:
- messages: typed frames and operation names
- codec: binary frame encoding and incremental decoding
"""

from hostwire.wire.codec import FrameDecoder, decode, encode
from hostwire.wire.messages import (
    Auth,
    AuthFailed,
    Challenge,
    Chunk,
    ErrorReply,
    Frame,
    MessageType,
    Operation,
    Output,
    OutputStream,
    Progress,
    Request,
    Result,
    Welcome,
    build_request,
    is_terminal,
)

__all__ = [
    "FrameDecoder",
    "decode",
    "encode",
    "Auth",
    "AuthFailed",
    "Challenge",
    "Chunk",
    "ErrorReply",
    "Frame",
    "MessageType",
    "Operation",
    "Output",
    "OutputStream",
    "Progress",
    "Request",
    "Result",
    "Welcome",
    "build_request",
    "is_terminal",
]
