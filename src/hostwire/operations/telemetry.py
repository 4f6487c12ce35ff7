"""Host facts reported by the agent."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from hostwire.core.exceptions import ProtocolError
from hostwire.operations.base import call
from hostwire.session.session import Session
from hostwire.wire.messages import Operation


@dataclass(frozen=True)
class HostTelemetry:
    """CPU, OS, filesystem and network facts of a host."""

    cpu: dict[str, Any] = field(default_factory=dict)
    os: dict[str, Any] = field(default_factory=dict)
    filesystems: list[dict[str, Any]] = field(default_factory=list)
    network: list[dict[str, Any]] = field(default_factory=list)

    @property
    def hostname(self) -> Optional[str]:
        return self.os.get("hostname")

    @classmethod
    def from_wire(cls, value: dict[str, Any]) -> "HostTelemetry":
        for key, kind in (("cpu", dict), ("os", dict), ("filesystems", list), ("network", list)):
            if not isinstance(value.get(key, kind()), kind):
                raise ProtocolError(f"telemetry field '{key}' must be a {kind.__name__}")
        return cls(
            cpu=value.get("cpu", {}),
            os=value.get("os", {}),
            filesystems=value.get("filesystems", []),
            network=value.get("network", []),
        )


async def telemetry(session: Session, *, timeout: Optional[float] = None) -> HostTelemetry:
    value = await call(session, Operation.HOST_TELEMETRY, {}, timeout=timeout)
    return HostTelemetry.from_wire(value)
