"""Runnable protocol for Hostwire.

Anything on a managed host that can be started, stopped and queried
(a system service, a detached command) satisfies this interface. State is
always read live from the agent; implementations keep no cached state.

Usage:
    from hostwire.protocols import Runnable

    service = host.service("nginx")
    assert isinstance(service, Runnable)
    await service.start()
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from hostwire.core.models import RunnableState


@runtime_checkable
class Runnable(Protocol):
    """Protocol for startable, stoppable remote entities.

    Methods:
        status: Query the live state.
        start: Start unless already running.
        stop: Stop unless already stopped.
        restart: Stop then start.

    ``start``, ``stop`` and ``restart`` return True when they changed
    anything on the host.
    """

    async def status(self) -> RunnableState:
        ...

    async def start(self) -> bool:
        """Start the entity.

        Raises:
            ServiceStartFailed: If a service fails to start.
        """
        ...

    async def stop(self) -> bool:
        ...

    async def restart(self) -> bool:
        ...
