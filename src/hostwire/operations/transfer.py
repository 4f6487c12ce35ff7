"""Chunked bulk transfers.

A transfer is identified by the SHA-256 of its content. The sequence is:

    transfer.begin  (control) → agent returns a handle and a resume offset
    Chunk frames    (bulk)    → one per chunk from that offset, each carrying
                                the SHA-256 of its own data
    transfer.commit (control) → agent verifies every chunk and the whole

If any chunk fails verification, commit raises PayloadIntegrityError and
the agent keeps nothing past the last good chunk. Calling ``push_bytes``
again with the same content resumes from the offset the agent reports.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from hostwire.core.exceptions import PayloadIntegrityError, ProtocolError
from hostwire.core.hashing import calculate_bytes_hash, chunk_digest
from hostwire.operations.base import ErrorTable, call
from hostwire.session.session import Session
from hostwire.wire.messages import Chunk, Operation


log = structlog.get_logger()

DEFAULT_CHUNK_SIZE = 256 * 1024

TRANSFER_ERRORS: ErrorTable = {
    "checksum_mismatch": PayloadIntegrityError,
}


@dataclass(frozen=True)
class TransferReceipt:
    """Outcome of a committed transfer."""

    transfer_id: str
    size: int
    resumed_from: int
    bytes_sent: int


def build_chunks(handle: int, data: bytes, chunk_size: int, start: int = 0) -> list[Chunk]:
    """Slice ``data`` from ``start`` into checksummed Chunk frames."""
    chunks = []
    for offset in range(start, len(data), chunk_size):
        piece = data[offset:offset + chunk_size]
        chunks.append(
            Chunk(
                request_id=handle,
                index=offset // chunk_size,
                offset=offset,
                checksum=chunk_digest(piece),
                data=piece,
            )
        )
    return chunks


async def push_bytes(
    session: Session,
    data: bytes,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    timeout: Optional[float] = None,
) -> TransferReceipt:
    """Transfer ``data`` to the agent and return once it is verified.

    Raises:
        PayloadIntegrityError: If the agent rejects a chunk or the whole.
        NetworkError: If the bulk channel fails mid-transfer.
    """
    transfer_id = calculate_bytes_hash(data)
    begun = await call(
        session,
        Operation.TRANSFER_BEGIN,
        {"transfer_id": transfer_id, "size": len(data), "chunk_size": chunk_size},
        TRANSFER_ERRORS,
        timeout=timeout,
    )

    handle = begun.get("handle")
    offset = begun.get("offset", 0)
    if not isinstance(handle, int) or not isinstance(offset, int):
        raise ProtocolError("transfer.begin returned a malformed handle or offset")
    if offset < 0 or offset > len(data) or (offset % chunk_size and offset != len(data)):
        raise ProtocolError(f"transfer.begin returned an invalid resume offset {offset}")

    if offset:
        log.info("transfer_resumed", host=session.host, transfer_id=transfer_id, offset=offset)

    sent = await session.send_chunks(build_chunks(handle, data, chunk_size, offset))

    await call(
        session,
        Operation.TRANSFER_COMMIT,
        {"transfer_id": transfer_id, "handle": handle},
        TRANSFER_ERRORS,
        timeout=timeout,
    )
    log.debug(
        "transfer_committed",
        host=session.host,
        transfer_id=transfer_id,
        size=len(data),
        bytes_sent=sent,
    )
    return TransferReceipt(transfer_id=transfer_id, size=len(data), resumed_from=offset, bytes_sent=sent)
