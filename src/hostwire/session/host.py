"""Managed host.

A Host pairs a name and connection settings with a connection state
machine and, while connected, a Session. Every operation is issued
through the Host so that calls on a disconnected or failed host raise
SessionClosed instead of touching the network.

Usage:
    async with Host("web-1", HostConfig(address="10.0.0.5", token="...")) as host:
        result = await (await host.run_command("uptime")).result()
        await host.service("nginx").start()
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Mapping, Optional, Sequence

import structlog

from hostwire.core.config import HostConfig, Settings, TransportConfig, get_settings
from hostwire.core.exceptions import HostwireError, InvalidRequestError, SessionClosed
from hostwire.core.models import PackageResult, ServiceResult
from hostwire.operations import command as command_ops
from hostwire.operations import directory as directory_ops
from hostwire.operations import file as file_ops
from hostwire.operations import package as package_ops
from hostwire.operations import payload as payload_ops
from hostwire.operations import service as service_ops
from hostwire.operations import telemetry as telemetry_ops
from hostwire.operations import template as template_ops
from hostwire.protocols.renderer import TemplateRenderer
from hostwire.session.session import Session
from hostwire.session.state_machine import HostState, HostStateMachine, StateChangeListener
from hostwire.transport.connection import Transport


log = structlog.get_logger()

HOST_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_host_name(name: str) -> bool:
    """Host names start with a letter or digit; dots, hyphens and underscores follow."""
    return bool(name) and bool(HOST_NAME_PATTERN.match(name))


class Host:
    """One managed host.

    Attributes:
        name: Registry name of the host.
        config: Connection settings.
    """

    def __init__(
        self,
        name: str,
        config: HostConfig,
        transport_config: Optional[TransportConfig] = None,
    ) -> None:
        if not validate_host_name(name):
            raise InvalidRequestError("host", f"invalid host name {name!r}")
        self.name = name
        self.config = config
        self._transport_config = transport_config or TransportConfig()
        self._state = HostStateMachine(name)
        self._session: Optional[Session] = None
        # Serializes connect() and disconnect()
        self._state_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, name: str, settings: Optional[Settings] = None) -> "Host":
        """Build a host from the configured ``hosts`` table.

        Raises:
            ConfigurationError: If no host by that name is configured.
        """
        settings = settings or get_settings()
        return cls(name, settings.host(name), settings.transport)

    @property
    def state(self) -> HostState:
        return self._state.current_state

    @property
    def connected(self) -> bool:
        return self.state == HostState.CONNECTED

    @property
    def session(self) -> Session:
        """The live session.

        Raises:
            SessionClosed: If the host is not connected.
        """
        if self._session is None or self._session.closed:
            raise SessionClosed(self.name, f"host is {self.state.lower()}")
        return self._session

    def add_state_listener(self, callback: StateChangeListener) -> None:
        self._state.add_listener(callback)

    async def connect(self) -> "Host":
        """Open and authenticate the transport. No-op if already connected.

        Concurrent callers share one attempt: later callers wait for it and
        return the connected host.

        Raises:
            NetworkError: Connection failed (host moves to FAILED).
            AuthError: Token rejected (host moves to FAILED).
        """
        async with self._state_lock:
            if self.connected:
                return self

            self._state.transition(HostState.CONNECTING)
            try:
                transport = await Transport.connect(self.config, self._transport_config)
            except BaseException as e:
                log.warning("host_connect_failed", host=self.name, error=str(e) or type(e).__name__)
                self._state.transition(HostState.FAILED)
                raise

            self._session = Session(
                self.name,
                transport,
                on_lost=self._on_session_lost,
                max_frame_size=self._transport_config.max_record_size,
                max_request_size=transport.max_request_size,
            )
            self._session.start()
            self._state.transition(HostState.CONNECTED)
            return self

    async def disconnect(self) -> None:
        """Close the session. Pending requests fail with SessionClosed.

        Called while a connect is in flight, this waits for it to finish
        and then closes what it opened.
        """
        async with self._state_lock:
            session, self._session = self._session, None
            if session is not None:
                await session.close()
            if self.state in (HostState.CONNECTED, HostState.FAILED):
                self._state.transition(HostState.DISCONNECTED)

    def _on_session_lost(self, error: HostwireError) -> None:
        if self.state == HostState.CONNECTED:
            self._state.transition(HostState.FAILED)

    async def __aenter__(self) -> "Host":
        return await self.connect()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    # Operations

    async def run_command(
        self,
        command: command_ops.Command,
        *,
        shell: bool = False,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> command_ops.CommandStream:
        return await command_ops.run_command(
            self.session, command, shell=shell, cwd=cwd, env=env, timeout=timeout
        )

    def spawn(
        self,
        command: command_ops.Command,
        *,
        shell: bool = False,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> command_ops.RemoteProcess:
        """Return a Runnable for a detached command (not started yet)."""
        return command_ops.RemoteProcess(
            self.session, command, shell=shell, cwd=cwd, env=env, timeout=timeout
        )

    async def file_op(self, action: str, path: str, *args: Any, **kwargs: Any) -> Any:
        if action == file_ops.FileAction.UPLOAD:
            kwargs.setdefault("chunk_size", self._transport_config.chunk_size)
        return await file_ops.file_op(self.session, action, path, *args, **kwargs)

    async def directory_op(self, action: str, path: str, *args: Any, **kwargs: Any) -> Any:
        return await directory_ops.directory_op(self.session, action, path, *args, **kwargs)

    async def package_op(
        self,
        action: str,
        name: str,
        *,
        provider: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> PackageResult:
        return await package_ops.package_op(
            self.session, action, name, provider=provider, timeout=timeout
        )

    async def service_op(self, action: str, name: str, *, timeout: Optional[float] = None) -> ServiceResult:
        return await service_ops.service_op(self.session, action, name, timeout=timeout)

    def service(self, name: str, *, timeout: Optional[float] = None) -> service_ops.Service:
        """Return a Runnable for a named service."""
        return service_ops.Service(self.session, name, timeout=timeout)

    async def render_template(
        self,
        source: str,
        variables: Optional[Mapping[str, Any]] = None,
        *,
        engine: Optional[str] = None,
        destination: Optional[str] = None,
        renderer: Optional[TemplateRenderer] = None,
        overwrite: bool = True,
        timeout: Optional[float] = None,
    ) -> template_ops.RenderResult:
        return await template_ops.render_template(
            self.session,
            source,
            variables,
            engine=engine,
            destination=destination,
            renderer=renderer,
            overwrite=overwrite,
            chunk_size=self._transport_config.chunk_size,
            timeout=timeout,
        )

    async def send_payload(
        self,
        source: payload_ops.PayloadSource,
        entrypoint: str,
        args: Sequence[str] = (),
        *,
        timeout: Optional[float] = None,
    ) -> payload_ops.PayloadStream:
        return await payload_ops.send_payload(
            self.session,
            source,
            entrypoint,
            args,
            chunk_size=self._transport_config.chunk_size,
            timeout=timeout,
        )

    async def telemetry(self, *, timeout: Optional[float] = None) -> telemetry_ops.HostTelemetry:
        return await telemetry_ops.telemetry(self.session, timeout=timeout)

    def __repr__(self) -> str:
        return f"Host(name={self.name!r}, address={self.config.address!r}, state={self.state!s})"
