"""
Hostwire - remote host management over an authenticated two-channel protocol.

Run commands, manage files, packages and services, render templates and
deliver payloads on many hosts concurrently from one asyncio program.
"""

from hostwire.protocols import Runnable, TemplateRenderer
from hostwire.session.host import Host
from hostwire.session.registry import HostRegistry

__version__ = "0.1.0"

__all__ = [
    "Host",
    "HostRegistry",
    "Runnable",
    "TemplateRenderer",
]
