"""Hostwire Agent.

A minimal asyncio agent: listeners, handshake, request routing and
transfer bookkeeping. Operation handlers are registered by the embedding
program.
"""

from hostwire.agent.server import AgentServer, Handler, Reply
from hostwire.agent.transfers import TransferStore

__all__ = [
    "AgentServer",
    "Handler",
    "Reply",
    "TransferStore",
]
