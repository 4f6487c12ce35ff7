"""Tests for chunked bulk transfers."""

import dataclasses
import random

import pytest

from hostwire.core.exceptions import PayloadIntegrityError
from hostwire.core.hashing import calculate_bytes_hash, verify_chunk
from hostwire.operations import transfer
from hostwire.operations.transfer import build_chunks, push_bytes


def blob(size: int, seed: int = 7) -> bytes:
    return random.Random(seed).randbytes(size)


class TestBuildChunks:
    """Tests for build_chunks()."""

    def test_slices_and_checksums(self):
        """Each chunk carries its index, offset and own digest."""
        data = blob(2500)
        chunks = build_chunks(9, data, 1024)

        assert [(c.index, c.offset, len(c.data)) for c in chunks] == [
            (0, 0, 1024),
            (1, 1024, 1024),
            (2, 2048, 452),
        ]
        assert all(c.request_id == 9 for c in chunks)
        assert all(verify_chunk(c.data, c.checksum) for c in chunks)
        assert b"".join(c.data for c in chunks) == data

    def test_start_offset(self):
        """Chunks before the resume offset are skipped."""
        chunks = build_chunks(1, blob(2500), 1024, start=1024)
        assert [c.index for c in chunks] == [1, 2]

    def test_empty(self):
        """Empty data produces no chunks."""
        assert build_chunks(1, b"", 1024) == []


def corrupt_chunk(monkeypatch: pytest.MonkeyPatch, index: int) -> None:
    """Flip a byte of one chunk while keeping its original checksum."""
    original = transfer.build_chunks

    def tampered(handle, data, chunk_size, start=0):
        chunks = original(handle, data, chunk_size, start)
        return [
            dataclasses.replace(c, data=bytes([c.data[0] ^ 0xFF]) + c.data[1:]) if c.index == index else c
            for c in chunks
        ]

    monkeypatch.setattr(transfer, "build_chunks", tampered)


class TestPushBytes:
    """Tests for push_bytes() against the agent's transfer store."""

    @pytest.mark.asyncio
    async def test_push(self, host, agent):
        """A verified transfer is available to the agent by its digest."""
        data = blob(3000)
        receipt = await push_bytes(host.session, data, chunk_size=1024)

        assert receipt.transfer_id == calculate_bytes_hash(data)
        assert receipt.size == 3000
        assert receipt.resumed_from == 0
        assert receipt.bytes_sent == 3000
        assert agent.server.transfers.get(receipt.transfer_id) == data

    @pytest.mark.asyncio
    async def test_push_empty(self, host, agent):
        """Zero-length transfers commit without chunks."""
        receipt = await push_bytes(host.session, b"", chunk_size=1024)
        assert receipt.bytes_sent == 0
        assert agent.server.transfers.get(receipt.transfer_id) == b""

    @pytest.mark.asyncio
    async def test_repeat_push_skips_data(self, host):
        """Re-sending committed content sends nothing."""
        data = blob(2500)
        await push_bytes(host.session, data, chunk_size=1024)
        receipt = await push_bytes(host.session, data, chunk_size=1024)
        assert receipt.resumed_from == 2500
        assert receipt.bytes_sent == 0

    @pytest.mark.asyncio
    async def test_corrupt_chunk(self, host, monkeypatch):
        """A tampered chunk fails the commit with its index."""
        with monkeypatch.context() as mp:
            corrupt_chunk(mp, 2)
            with pytest.raises(PayloadIntegrityError) as exc_info:
                await push_bytes(host.session, blob(5000), chunk_size=1024)
        assert exc_info.value.chunk_index == 2
        assert exc_info.value.code == "checksum_mismatch"

    @pytest.mark.asyncio
    async def test_resume_after_corruption(self, host, agent, monkeypatch):
        """A retry resumes from the last good chunk."""
        data = blob(5000)
        with monkeypatch.context() as mp:
            corrupt_chunk(mp, 2)
            with pytest.raises(PayloadIntegrityError):
                await push_bytes(host.session, data, chunk_size=1024)

        receipt = await push_bytes(host.session, data, chunk_size=1024)

        assert receipt.resumed_from == 2048
        assert receipt.bytes_sent == 5000 - 2048
        assert agent.server.transfers.get(receipt.transfer_id) == data

    @pytest.mark.asyncio
    async def test_resume_logged(self, host, monkeypatch, captured_logs):
        """Resumed transfers log their offset."""
        data = blob(3000)
        with monkeypatch.context() as mp:
            corrupt_chunk(mp, 1)
            with pytest.raises(PayloadIntegrityError):
                await push_bytes(host.session, data, chunk_size=1024)
        await push_bytes(host.session, data, chunk_size=1024)

        event = next(e for e in captured_logs if e["event"] == "transfer_resumed")
        assert event["offset"] == 1024
