"""Connection state machine shared by every protocol adapter."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from vibehub.core.errors import SessionStateError
from vibehub.core.model import ConnectionState

LOGGER = logging.getLogger(__name__)

Listener = Callable[[ConnectionState, ConnectionState], None]

_ALLOWED: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.DISCOVERING}),
    ConnectionState.DISCOVERING: frozenset(
        {ConnectionState.CONNECTING, ConnectionState.ERROR, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.ERROR, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.CONNECTED: frozenset({ConnectionState.ERROR, ConnectionState.DISCONNECTED}),
    ConnectionState.ERROR: frozenset({ConnectionState.DISCONNECTED}),
}


class Session:
    """Per-adapter session: connection state, retry counter and owned devices."""

    def __init__(self, name: str, *, cooldown_s: float = 2.0) -> None:
        self.name = name
        self.cooldown_s = cooldown_s
        self.state = ConnectionState.DISCONNECTED
        self.retries = 0
        self.device_ids: set[str] = set()
        self.last_error: str | None = None
        self._listeners: list[Listener] = []
        self._changed = asyncio.Event()

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def can_transition(self, target: ConnectionState) -> bool:
        return target in _ALLOWED[self.state]

    def transition(self, target: ConnectionState) -> None:
        if target is self.state:
            return
        if not self.can_transition(target):
            raise SessionStateError(
                f"Session '{self.name}' cannot move from {self.state.value} to {target.value}"
            )
        previous = self.state
        self.state = target
        if target is ConnectionState.CONNECTED:
            self.retries = 0
            self.last_error = None
        LOGGER.info("[%s] %s -> %s", self.name, previous.value, target.value)
        self._changed.set()
        self._changed = asyncio.Event()
        for listener in self._listeners:
            try:
                listener(previous, target)
            except Exception:
                LOGGER.exception("[%s] state listener failed", self.name)

    def fail(self, reason: str) -> None:
        """Enter Error from any live state; a no-op when already down."""
        if self.state in (ConnectionState.DISCONNECTED, ConnectionState.ERROR):
            self.last_error = reason
            return
        self.retries += 1
        self.last_error = reason
        LOGGER.warning("[%s] session error: %s", self.name, reason)
        self.transition(ConnectionState.ERROR)

    async def cool_down(self) -> None:
        """Return from Error to Disconnected once the cooldown has elapsed."""
        if self.state is not ConnectionState.ERROR:
            return
        await asyncio.sleep(self.cooldown_s)
        if self.state is ConnectionState.ERROR:
            self.transition(ConnectionState.DISCONNECTED)

    def reset(self) -> None:
        """Drop to Disconnected from whatever state the session is in."""
        if self.state is ConnectionState.DISCONNECTED:
            return
        self.transition(ConnectionState.DISCONNECTED)

    async def wait_for_change(self) -> ConnectionState:
        await self._changed.wait()
        return self.state

    async def wait_until_down(self) -> ConnectionState:
        while self.state not in (ConnectionState.ERROR, ConnectionState.DISCONNECTED):
            await self.wait_for_change()
        return self.state
