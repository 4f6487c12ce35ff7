"""Two-channel transport to one agent.

A Transport owns the control channel (requests and responses) and the
bulk channel (Chunk frames of file and payload transfers). Both are
authenticated with the same token and bound to one agent-side session.

Usage:
    transport = await Transport.connect(host_config)
    await transport.send(encode(request))
    data = await transport.receive()
    await transport.close()
"""

from __future__ import annotations

import asyncio
from typing import Iterable, Optional

import structlog

from hostwire.core.config import HostConfig, TransportConfig
from hostwire.core.exceptions import NetworkError
from hostwire.transport.channel import Channel, ChannelName
from hostwire.transport.handshake import authenticate
from hostwire.wire.messages import Chunk


log = structlog.get_logger()


class Transport:
    """Authenticated control and bulk connections to one agent."""

    def __init__(self, control: Channel, bulk: Channel, session_id: str) -> None:
        self.control = control
        self.bulk = bulk
        self.session_id = session_id

    @classmethod
    async def connect(
        cls,
        config: HostConfig,
        transport_config: Optional[TransportConfig] = None,
    ) -> "Transport":
        """Open and authenticate both channels.

        Raises:
            NetworkError: If either connection fails.
            AuthError: If the agent rejects the token.
            ProtocolError: If the agent misbehaves during the handshake.
        """
        settings = transport_config or TransportConfig()
        token = config.token.get_secret_value()

        control = await Channel.open(
            ChannelName.CONTROL,
            config.address,
            config.control_port,
            timeout=settings.connect_timeout,
            max_record_size=settings.max_record_size,
        )
        bulk: Optional[Channel] = None
        try:
            session_id = await authenticate(control, token, timeout=settings.handshake_timeout)
            bulk = await Channel.open(
                ChannelName.BULK,
                config.address,
                config.bulk_port,
                timeout=settings.connect_timeout,
                max_record_size=settings.max_record_size,
            )
            await authenticate(bulk, token, session_id, timeout=settings.handshake_timeout)
        except BaseException:
            await control.close()
            if bulk is not None:
                await bulk.close()
            raise

        log.info(
            "transport_connected",
            control=control.endpoint,
            bulk=bulk.endpoint,
            session_id=session_id,
        )
        return cls(control, bulk, session_id)

    @property
    def closed(self) -> bool:
        return self.control.closed or self.bulk.closed

    @property
    def max_request_size(self) -> int:
        """Largest encoded request the control channel will carry."""
        return self.control.max_payload_size

    async def send(self, data: bytes) -> None:
        """Send one encoded frame on the control channel."""
        await self.control.send_record(data)

    async def receive(self, timeout: Optional[float] = None) -> bytes:
        """Receive one encoded frame from the control channel."""
        return await self.control.receive_record(timeout)

    async def send_bulk(self, chunks: Iterable[Chunk]) -> int:
        """Write chunks to the bulk channel in order.

        Returns:
            Number of data bytes written.

        Raises:
            NetworkError: With ``bytes_sent`` set to the data bytes fully
                written before the failure.
        """
        sent = 0
        for chunk in chunks:
            try:
                await self.bulk.send_frame(chunk)
            except NetworkError as e:
                raise NetworkError(e.endpoint, e.reason, e.transient, bytes_sent=sent) from e
            sent += len(chunk.data)
        return sent

    async def close(self) -> None:
        """Close both channels."""
        await asyncio.gather(self.control.close(), self.bulk.close())
        log.debug("transport_closed", session_id=self.session_id)
