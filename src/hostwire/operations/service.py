"""Service lifecycle management.

Start and stop first read the live state from the agent, so starting a
running service or stopping a stopped one sends nothing further and
returns ``changed=False``.

Restart is a single agent-side action. If its stop half succeeds and its
start half fails, ServiceStartFailed is raised with ``left_stopped=True``;
the service is not reverted.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Optional, Union

import structlog

from hostwire.core.exceptions import ServiceNotFound, ServiceStartFailed, ServiceStopFailed
from hostwire.core.models import RunnableState, ServiceResult
from hostwire.operations.base import ErrorTable, call, parse_action, require_text
from hostwire.session.session import Session
from hostwire.wire.messages import Operation


log = structlog.get_logger()


class ServiceAction(StrEnum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    STATUS = "status"
    ENABLE = "enable"
    DISABLE = "disable"


SERVICE_ERRORS: ErrorTable = {
    "service_not_found": ServiceNotFound,
    "start_failed": ServiceStartFailed,
    "stop_failed": ServiceStopFailed,
}


async def service_status(session: Session, name: str, *, timeout: Optional[float] = None) -> RunnableState:
    """Query the live state of a service."""
    name = require_text(Operation.SERVICE_STATUS, "name", name)
    value = await call(session, Operation.SERVICE_STATUS, {"name": name}, SERVICE_ERRORS, timeout=timeout)
    return RunnableState.parse(value.get("state"))


async def service_op(
    session: Session,
    action: Union[ServiceAction, str],
    name: str,
    *,
    timeout: Optional[float] = None,
) -> ServiceResult:
    """Apply a lifecycle action to a named service.

    Raises:
        ServiceNotFound: No such service on the host.
        ServiceStartFailed: Start (or the start half of restart) failed.
        ServiceStopFailed: Stop failed.
    """
    service_action = parse_action("service", ServiceAction, action)
    name = require_text(Operation.SERVICE_ACTION, "name", name)

    if service_action in (ServiceAction.STATUS, ServiceAction.START, ServiceAction.STOP):
        state = await service_status(session, name, timeout=timeout)
        if service_action == ServiceAction.STATUS:
            return ServiceResult(name=name, action=str(service_action), state=state, changed=False)
        if service_action == ServiceAction.START and state == RunnableState.RUNNING:
            return ServiceResult(name=name, action=str(service_action), state=state, changed=False)
        if service_action == ServiceAction.STOP and state == RunnableState.STOPPED:
            return ServiceResult(name=name, action=str(service_action), state=state, changed=False)

    value = await call(
        session,
        Operation.SERVICE_ACTION,
        {"name": name, "action": str(service_action)},
        SERVICE_ERRORS,
        timeout=timeout,
    )
    result = ServiceResult.from_wire(name, str(service_action), value)
    log.info(
        "service_action_completed",
        host=session.host,
        service=name,
        action=str(service_action),
        state=str(result.state),
        changed=result.changed,
    )
    return result


class Service:
    """A named service on one host, usable as a Runnable."""

    def __init__(self, session: Session, name: str, *, timeout: Optional[float] = None) -> None:
        self._session = session
        self.name = require_text(Operation.SERVICE_ACTION, "name", name)
        self._timeout = timeout

    async def status(self) -> RunnableState:
        return await service_status(self._session, self.name, timeout=self._timeout)

    async def start(self) -> bool:
        result = await service_op(self._session, ServiceAction.START, self.name, timeout=self._timeout)
        return result.changed

    async def stop(self) -> bool:
        result = await service_op(self._session, ServiceAction.STOP, self.name, timeout=self._timeout)
        return result.changed

    async def restart(self) -> bool:
        result = await service_op(self._session, ServiceAction.RESTART, self.name, timeout=self._timeout)
        return result.changed

    async def enable(self) -> bool:
        result = await service_op(self._session, ServiceAction.ENABLE, self.name, timeout=self._timeout)
        return result.changed

    async def disable(self) -> bool:
        result = await service_op(self._session, ServiceAction.DISABLE, self.name, timeout=self._timeout)
        return result.changed

    def __repr__(self) -> str:
        return f"Service(host={self._session.host!r}, name={self.name!r})"
