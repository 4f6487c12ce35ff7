"""Unit tests for Channel over real localhost sockets."""

import asyncio
import socket
import struct
from typing import AsyncGenerator

import pytest
import pytest_asyncio

from hostwire.core.exceptions import NetworkError, ProtocolError
from hostwire.core.keystore import ChannelCipher, derive_key
from hostwire.transport.channel import Channel, ChannelName, network_error
from hostwire.wire.messages import Progress, Result


KEY = derive_key("test-token", b"0123456789abcdef", 1_000)


@pytest_asyncio.fixture
async def channel_pair() -> AsyncGenerator[tuple[Channel, Channel], None]:
    """A connected (client, server) channel pair on localhost."""
    accepted: asyncio.Queue = asyncio.Queue()

    async def on_connect(reader, writer):
        await accepted.put(Channel(ChannelName.CONTROL, "client", reader, writer, max_record_size=4096))

    server = await asyncio.start_server(on_connect, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    client = await Channel.open(ChannelName.CONTROL, "127.0.0.1", port, timeout=5.0, max_record_size=4096)
    peer = await asyncio.wait_for(accepted.get(), 5.0)
    try:
        yield client, peer
    finally:
        await client.close()
        await peer.close()
        server.close()
        await server.wait_closed()


def free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestNetworkErrorMapping:
    """Tests for network_error()."""

    def test_resolution_failure_is_terminal(self):
        """Unresolvable names are not worth retrying."""
        error = network_error("nowhere:7101", socket.gaierror(-2, "Name or service not known"))
        assert error.transient is False

    def test_refused_is_transient(self):
        """Refused connections may succeed later."""
        error = network_error("10.0.0.1:7101", ConnectionRefusedError(111, "Connection refused"))
        assert error.transient is True

    def test_eof_and_timeout(self):
        """EOF and timeouts are transient with readable reasons."""
        eof = network_error("a:1", asyncio.IncompleteReadError(b"", 4))
        assert eof.reason == "connection closed by peer"
        assert network_error("a:1", asyncio.TimeoutError()).reason == "timed out"

    def test_bytes_sent_carried(self):
        """Partial bulk progress is kept on the error."""
        assert network_error("a:1", ConnectionResetError(), bytes_sent=10).bytes_sent == 10


class TestChannel:
    """Tests for Channel record I/O."""

    @pytest.mark.asyncio
    async def test_open_refused(self):
        """Connecting to a closed port raises a transient NetworkError."""
        with pytest.raises(NetworkError) as exc_info:
            await Channel.open(ChannelName.CONTROL, "127.0.0.1", free_port(), timeout=5.0)
        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_plain_records(self, channel_pair):
        """Records arrive whole and in order."""
        client, peer = channel_pair
        await client.send_record(b"one")
        await client.send_record(b"")
        await client.send_record(b"three")
        assert await peer.receive_record(5.0) == b"one"
        assert await peer.receive_record(5.0) == b""
        assert await peer.receive_record(5.0) == b"three"

    @pytest.mark.asyncio
    async def test_frames(self, channel_pair):
        """send_frame/receive_frame carry one frame per record."""
        client, peer = channel_pair
        await peer.send_frame(Result(3, {"ok": True}))
        assert await client.receive_frame(5.0) == Result(3, {"ok": True})

    @pytest.mark.asyncio
    async def test_sealed_records(self, channel_pair):
        """With matching ciphers, sealed records open on the peer."""
        client, peer = channel_pair
        client.enable_encryption(ChannelCipher(KEY, "control"))
        peer.enable_encryption(ChannelCipher(KEY, "control"))
        assert client.encrypted

        await client.send_frame(Progress(1, 5, 10))
        assert await peer.receive_frame(5.0) == Progress(1, 5, 10)

    @pytest.mark.asyncio
    async def test_unauthenticated_record_is_fatal(self, channel_pair):
        """A record sealed for another channel is a fatal protocol error."""
        client, peer = channel_pair
        client.enable_encryption(ChannelCipher(KEY, "bulk"))
        peer.enable_encryption(ChannelCipher(KEY, "control"))

        await client.send_record(b"frame")
        with pytest.raises(ProtocolError, match="authentication failed") as exc_info:
            await peer.receive_record(5.0)
        assert exc_info.value.fatal is True

    @pytest.mark.asyncio
    async def test_oversize_send_rejected(self, channel_pair):
        """Records beyond the limit are not written."""
        client, _ = channel_pair
        with pytest.raises(ProtocolError, match="exceeds limit"):
            await client.send_record(b"x" * 5000)

    @pytest.mark.asyncio
    async def test_oversize_receive_is_fatal(self, channel_pair):
        """A declared record length beyond the limit is fatal."""
        client, peer = channel_pair
        client._writer.write(struct.pack(">I", 10_000))
        await client._writer.drain()
        with pytest.raises(ProtocolError) as exc_info:
            await peer.receive_record(5.0)
        assert exc_info.value.fatal is True

    @pytest.mark.asyncio
    async def test_receive_timeout(self, channel_pair):
        """A silent peer times out with a transient NetworkError."""
        _, peer = channel_pair
        with pytest.raises(NetworkError, match="timed out"):
            await peer.receive_record(0.05)

    @pytest.mark.asyncio
    async def test_peer_close_is_network_error(self, channel_pair):
        """EOF surfaces as NetworkError."""
        client, peer = channel_pair
        await client.close()
        with pytest.raises(NetworkError, match="closed by peer"):
            await peer.receive_record(5.0)

    @pytest.mark.asyncio
    async def test_send_after_close(self, channel_pair):
        """A closed channel refuses writes; close is idempotent."""
        client, _ = channel_pair
        await client.close()
        await client.close()
        assert client.closed
        with pytest.raises(NetworkError, match="channel closed"):
            await client.send_record(b"late")

    @pytest.mark.asyncio
    async def test_concurrent_sends_do_not_interleave(self, channel_pair):
        """Concurrent writers produce whole records."""
        client, peer = channel_pair
        payloads = [bytes([i]) * 1000 for i in range(20)]
        await asyncio.gather(*(client.send_record(p) for p in payloads))

        received = [await peer.receive_record(5.0) for _ in payloads]
        assert sorted(received) == sorted(payloads)
