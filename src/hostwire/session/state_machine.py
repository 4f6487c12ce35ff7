"""Connection state of a managed host.

    DISCONNECTED ──► CONNECTING ──► CONNECTED
          ▲              │              │
          │              ▼              │
          └──────────  FAILED ◄─────────┘

CONNECTED may also go straight back to DISCONNECTED, and FAILED may retry
by going to CONNECTING. Anything else raises InvalidStateTransition.
"""

import asyncio
import inspect
from datetime import datetime, timezone
from enum import StrEnum
from typing import Awaitable, Callable, Union

import structlog

from hostwire.core.exceptions import InvalidStateTransition


log = structlog.get_logger()


class HostState(StrEnum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    FAILED = "FAILED"


_NEXT_STATES: dict[HostState, frozenset[HostState]] = {
    HostState.DISCONNECTED: frozenset({HostState.CONNECTING}),
    HostState.CONNECTING: frozenset({HostState.CONNECTED, HostState.FAILED}),
    HostState.CONNECTED: frozenset({HostState.DISCONNECTED, HostState.FAILED}),
    HostState.FAILED: frozenset({HostState.CONNECTING, HostState.DISCONNECTED}),
}

VALID_TRANSITIONS: frozenset[tuple[HostState, HostState]] = frozenset(
    (src, dst) for src, targets in _NEXT_STATES.items() for dst in targets
)


def is_valid_transition(from_state: HostState, to_state: HostState) -> bool:
    return to_state in _NEXT_STATES.get(from_state, frozenset())


def get_valid_targets(from_state: HostState) -> set[HostState]:
    return set(_NEXT_STATES.get(from_state, frozenset()))


# Called with (old_state, new_state); coroutine functions are scheduled as tasks.
StateChangeListener = Callable[[HostState, HostState], Union[None, Awaitable[None]]]


class HostStateMachine:
    """Tracks one host's state, its timestamped history and listeners.

    Listener failures are logged as ``state_listener_error`` and never
    undo or block a transition.
    """

    def __init__(self, host: str) -> None:
        self._host = host
        self._state = HostState.DISCONNECTED
        self._trail: list[tuple[HostState, datetime]] = [(self._state, _now())]
        self._listeners: list[StateChangeListener] = []

    @property
    def host(self) -> str:
        return self._host

    @property
    def current_state(self) -> HostState:
        return self._state

    @property
    def history(self) -> list[tuple[HostState, datetime]]:
        """(state, entered_at) pairs, oldest first. A copy."""
        return self._trail.copy()

    def add_listener(self, callback: StateChangeListener) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: StateChangeListener) -> None:
        """Raises ValueError if ``callback`` was never added."""
        self._listeners.remove(callback)

    def transition(self, to_state: HostState) -> None:
        """Move to ``to_state`` and tell the listeners.

        Raises:
            InvalidStateTransition: ``to_state`` is not reachable from the
                current state. The state is left as it was.
        """
        previous = self._state
        if not is_valid_transition(previous, to_state):
            raise InvalidStateTransition(
                host=self._host,
                from_state=str(previous),
                to_state=str(to_state),
            )

        self._state = to_state
        self._trail.append((to_state, _now()))
        log.info(
            "host_state_changed",
            host=self._host,
            from_state=str(previous),
            to_state=str(to_state),
        )

        for listener in list(self._listeners):
            self._call_listener(listener, previous, to_state)

    def _call_listener(
        self, listener: StateChangeListener, previous: HostState, current: HostState
    ) -> None:
        if not inspect.iscoroutinefunction(listener):
            try:
                listener(previous, current)
            except Exception as e:
                log.warning("state_listener_error", host=self._host, error=str(e))
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.warning("async_listener_no_loop", host=self._host)
            return
        task = loop.create_task(listener(previous, current))
        task.add_done_callback(self._log_listener_task)

    def _log_listener_task(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        log.warning(
            "state_listener_error",
            host=self._host,
            error=str(task.exception()),
            async_task=True,
        )


def _now() -> datetime:
    return datetime.now(timezone.utc)
