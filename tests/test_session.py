from __future__ import annotations

import asyncio

import pytest

from vibehub.core.errors import SessionStateError
from vibehub.core.model import ConnectionState
from vibehub.core.session import Session


def test_happy_path_transitions() -> None:
    session = Session("gatt")
    seen: list[tuple[ConnectionState, ConnectionState]] = []
    session.subscribe(lambda prev, cur: seen.append((prev, cur)))

    session.transition(ConnectionState.DISCOVERING)
    session.transition(ConnectionState.CONNECTING)
    session.transition(ConnectionState.CONNECTED)
    session.reset()

    assert [cur for _, cur in seen] == [
        ConnectionState.DISCOVERING,
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.DISCONNECTED,
    ]


def test_illegal_transition_raises() -> None:
    session = Session("adv")

    with pytest.raises(SessionStateError):
        session.transition(ConnectionState.CONNECTED)
    assert session.state is ConnectionState.DISCONNECTED


def test_error_leads_back_to_disconnected_after_cooldown() -> None:
    async def scenario() -> None:
        session = Session("osc", cooldown_s=0.01)
        session.transition(ConnectionState.DISCOVERING)
        session.fail("no radio")

        assert session.state is ConnectionState.ERROR
        assert session.retries == 1
        assert session.last_error == "no radio"
        with pytest.raises(SessionStateError):
            session.transition(ConnectionState.DISCOVERING)

        await session.cool_down()
        assert session.state is ConnectionState.DISCONNECTED

    asyncio.run(scenario())


def test_fail_when_down_is_a_no_op() -> None:
    session = Session("remote")
    session.fail("tunnel closed")

    assert session.state is ConnectionState.DISCONNECTED
    assert session.retries == 0


def test_wait_until_down_wakes_on_error() -> None:
    async def scenario() -> None:
        session = Session("gatt")
        for state in (ConnectionState.DISCOVERING, ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            session.transition(state)

        waiter = asyncio.ensure_future(session.wait_until_down())
        await asyncio.sleep(0)
        session.fail("peripheral vanished")

        assert await asyncio.wait_for(waiter, timeout=1.0) is ConnectionState.ERROR

    asyncio.run(scenario())
