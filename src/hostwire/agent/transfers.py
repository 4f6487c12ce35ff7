"""Agent-side store for chunked transfers.

Chunks are verified on arrival. The first chunk that fails verification
marks the transfer corrupted; commit then reports ``checksum_mismatch``
with its index and the store keeps only the chunks before it, so the
client can resume from there.

A committed transfer leaves the active tables; its bytes stay in a
bounded cache so a repeated upload of the same content resumes at its
end. Unfinished transfers beyond ``max_active`` are dropped oldest first.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Optional

import structlog

from hostwire.core.exceptions import AgentError
from hostwire.core.hashing import calculate_bytes_hash, verify_chunk
from hostwire.wire.messages import Chunk


log = structlog.get_logger()


@dataclass
class _Transfer:
    transfer_id: str
    size: int
    chunk_size: int
    handle: int = 0
    chunks: dict[int, bytes] = field(default_factory=dict)
    bad_chunk: Optional[int] = None
    settled: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def received(self) -> int:
        return sum(len(c) for c in self.chunks.values())

    def contiguous(self) -> tuple[int, int]:
        """Return (next index, byte offset) of the unbroken prefix."""
        index = offset = 0
        while index in self.chunks:
            offset += len(self.chunks[index])
            index += 1
        return index, offset

    def check_settled(self) -> None:
        if self.bad_chunk is not None or self.received >= self.size:
            self.settled.set()


DEFAULT_MAX_ACTIVE = 64
DEFAULT_MAX_COMPLETED = 64


class TransferStore:
    """Transfers keyed by content digest and by per-attempt handle."""

    def __init__(
        self,
        max_active: int = DEFAULT_MAX_ACTIVE,
        max_completed: int = DEFAULT_MAX_COMPLETED,
    ) -> None:
        self._max_active = max_active
        self._max_completed = max_completed
        self._by_id: dict[str, _Transfer] = {}
        self._by_handle: dict[int, _Transfer] = {}
        self._handles = itertools.count(1)
        self._completed: OrderedDict[str, bytes] = OrderedDict()

    @property
    def active_count(self) -> int:
        """Transfers begun and not yet committed."""
        return len(self._by_id)

    def begin(self, transfer_id: str, size: int, chunk_size: int) -> tuple[int, int]:
        """Start or resume a transfer.

        Returns:
            (handle for Chunk frames, byte offset to resume from)
        """
        transfer = self._by_id.pop(transfer_id, None)
        if transfer is not None:
            self._by_handle.pop(transfer.handle, None)
        if transfer is None or transfer.size != size or transfer.chunk_size != chunk_size:
            transfer = _Transfer(transfer_id=transfer_id, size=size, chunk_size=chunk_size)
            done = self._completed.get(transfer_id)
            if done is not None and len(done) == size:
                transfer.chunks = {
                    i: done[offset:offset + chunk_size]
                    for i, offset in enumerate(range(0, size, chunk_size))
                }
        self._by_id[transfer_id] = transfer
        self._evict_stale()

        next_index, offset = transfer.contiguous()
        transfer.chunks = {i: c for i, c in transfer.chunks.items() if i < next_index}
        transfer.bad_chunk = None
        transfer.settled = asyncio.Event()
        transfer.handle = next(self._handles)
        self._by_handle[transfer.handle] = transfer
        transfer.check_settled()

        log.debug("transfer_begun", transfer_id=transfer_id, size=size, handle=transfer.handle, offset=offset)
        return transfer.handle, offset

    def receive(self, chunk: Chunk) -> None:
        """Verify and store one chunk."""
        transfer = self._by_handle.get(chunk.request_id)
        if transfer is None:
            log.warning("chunk_for_unknown_transfer", handle=chunk.request_id, index=chunk.index)
            return
        if transfer.bad_chunk is not None:
            return

        if chunk.offset != chunk.index * transfer.chunk_size or not verify_chunk(chunk.data, chunk.checksum):
            transfer.bad_chunk = chunk.index
            log.warning("chunk_rejected", transfer_id=transfer.transfer_id, index=chunk.index)
        else:
            transfer.chunks[chunk.index] = chunk.data
        transfer.check_settled()

    async def commit(self, handle: int, timeout: Optional[float] = None) -> bytes:
        """Wait for every chunk and verify the whole.

        Raises:
            AgentError: ``checksum_mismatch`` (with ``chunk_index`` when one
                chunk is to blame), ``incomplete_transfer`` on timeout, or
                ``invalid_request`` for an unknown handle.
        """
        transfer = self._by_handle.get(handle)
        if transfer is None:
            raise AgentError("invalid_request", f"unknown transfer handle {handle}")

        try:
            await asyncio.wait_for(transfer.settled.wait(), timeout)
        except asyncio.TimeoutError:
            raise AgentError(
                "incomplete_transfer",
                f"received {transfer.received} of {transfer.size} bytes",
            ) from None

        if transfer.bad_chunk is not None:
            index = transfer.bad_chunk
            transfer.chunks = {i: c for i, c in transfer.chunks.items() if i < index}
            raise AgentError(
                "checksum_mismatch",
                f"chunk {index} failed verification",
                {"chunk_index": index},
            )

        data = b"".join(transfer.chunks[i] for i in sorted(transfer.chunks))
        if calculate_bytes_hash(data) != transfer.transfer_id:
            transfer.chunks.clear()
            raise AgentError("checksum_mismatch", "transfer digest does not match its id")

        self._by_handle.pop(handle, None)
        if self._by_id.get(transfer.transfer_id) is transfer:
            del self._by_id[transfer.transfer_id]
        self._completed[transfer.transfer_id] = data
        self._completed.move_to_end(transfer.transfer_id)
        while len(self._completed) > self._max_completed:
            self._completed.popitem(last=False)

        log.info("transfer_completed", transfer_id=transfer.transfer_id, size=len(data))
        return data

    def _evict_stale(self) -> None:
        while len(self._by_id) > self._max_active:
            transfer_id = next(iter(self._by_id))
            stale = self._by_id.pop(transfer_id)
            self._by_handle.pop(stale.handle, None)
            log.warning("transfer_evicted", transfer_id=transfer_id, received=stale.received, size=stale.size)

    def get(self, transfer_id: str) -> bytes:
        """Return the data of a committed transfer.

        Raises:
            AgentError: ``not_found`` if the transfer was never committed.
        """
        try:
            return self._completed[transfer_id]
        except KeyError:
            raise AgentError("not_found", f"no committed transfer {transfer_id}") from None
