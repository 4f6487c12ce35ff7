"""Hostwire Sessions.

Components:
- session: request multiplexing over one transport
- state_machine: host connection lifecycle
- host: a managed host and its operations
- registry: named collection of hosts

Host and HostRegistry are exported from the top-level package; importing
them here would cycle through the operation modules.
"""

from hostwire.session.session import ResponseStream, Session
from hostwire.session.state_machine import HostState, HostStateMachine

__all__ = [
    "ResponseStream",
    "Session",
    "HostState",
    "HostStateMachine",
]
