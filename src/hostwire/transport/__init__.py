"""Hostwire Transport.

Components:
- channel: one length-prefixed, sealed TCP connection
- handshake: challenge/response authentication for a channel
- connection: the control + bulk channel pair to one agent
"""

from hostwire.transport.channel import Channel, ChannelName
from hostwire.transport.connection import Transport

__all__ = [
    "Channel",
    "ChannelName",
    "Transport",
]
