"""Host Registry.

Holds every managed host by name, enforces the registry size limit, and
connects or disconnects hosts concurrently.

Usage:
    from hostwire.session.registry import HostRegistry

    registry = HostRegistry(max_hosts=50)
    registry.add("web-1", HostConfig(address="10.0.0.5", token="..."))
    failures = await registry.connect_all()
    await registry.close_all()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

import structlog

from hostwire.core.config import HostConfig, Settings, TransportConfig, get_settings
from hostwire.core.exceptions import HostNotFoundError, HostwireError, ResourceLimitError
from hostwire.session.host import Host
from hostwire.session.state_machine import HostState


log = structlog.get_logger()


@dataclass(frozen=True)
class HostSummary:
    """Snapshot of a host for listing."""

    name: str
    address: str
    state: str


class HostRegistry:
    """Named collection of managed hosts.

    Attributes:
        max_hosts: Maximum number of registered hosts.
    """

    def __init__(
        self,
        max_hosts: Optional[int] = None,
        transport_config: Optional[TransportConfig] = None,
    ) -> None:
        if max_hosts is None or transport_config is None:
            settings = get_settings()
            max_hosts = max_hosts if max_hosts is not None else settings.registry.max_hosts
            transport_config = transport_config or settings.transport
        self._max_hosts = max_hosts
        self._transport_config = transport_config
        self._hosts: dict[str, Host] = {}

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "HostRegistry":
        """Build a registry holding every host in the ``hosts`` table."""
        settings = settings or get_settings()
        registry = cls(settings.registry.max_hosts, settings.transport)
        for name, config in settings.hosts.items():
            registry.add(name, config)
        return registry

    @property
    def max_hosts(self) -> int:
        return self._max_hosts

    @property
    def names(self) -> list[str]:
        return list(self._hosts)

    def __len__(self) -> int:
        return len(self._hosts)

    def __contains__(self, name: object) -> bool:
        return name in self._hosts

    def __iter__(self) -> Iterator[Host]:
        return iter(list(self._hosts.values()))

    def add(self, name: str, config: HostConfig) -> Host:
        """Register a host.

        Raises:
            ResourceLimitError: If the registry is full.
            ValueError: If the name is already registered.
        """
        if name in self._hosts:
            raise ValueError(f"Host already registered: '{name}'")
        if len(self._hosts) >= self._max_hosts:
            raise ResourceLimitError(
                limit_type="max_hosts",
                current_value=len(self._hosts),
                max_value=self._max_hosts,
            )

        host = Host(name, config, self._transport_config)
        self._hosts[name] = host
        log.info("host_registered", host=name, address=config.address)
        return host

    def get(self, name: str) -> Host:
        """Return a registered host.

        Raises:
            HostNotFoundError: If no host has that name.
        """
        try:
            return self._hosts[name]
        except KeyError:
            raise HostNotFoundError(name) from None

    async def remove(self, name: str) -> None:
        """Disconnect and forget a host."""
        host = self.get(name)
        await host.disconnect()
        del self._hosts[name]
        log.info("host_removed", host=name)

    def list_hosts(self) -> list[HostSummary]:
        return [
            HostSummary(name=h.name, address=h.config.address, state=str(h.state))
            for h in self._hosts.values()
        ]

    async def connect_all(self, names: Optional[Iterable[str]] = None) -> dict[str, HostwireError]:
        """Connect hosts concurrently.

        Returns:
            Map of host name to the error that prevented it connecting.
            Hosts that connected are absent.
        """
        hosts = [self.get(n) for n in names] if names is not None else list(self._hosts.values())
        results = await asyncio.gather(*(h.connect() for h in hosts), return_exceptions=True)

        failures: dict[str, HostwireError] = {}
        for host, outcome in zip(hosts, results):
            if isinstance(outcome, HostwireError):
                failures[host.name] = outcome
            elif isinstance(outcome, BaseException):
                raise outcome
        log.info("hosts_connected", connected=len(hosts) - len(failures), failed=len(failures))
        return failures

    async def close_all(self) -> None:
        """Disconnect every host."""
        hosts = [h for h in self._hosts.values() if h.state != HostState.DISCONNECTED]
        await asyncio.gather(*(h.disconnect() for h in hosts))
        log.info("hosts_disconnected", count=len(hosts))

    async def __aenter__(self) -> "HostRegistry":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close_all()
