import asyncio

import pytest

from kiroweb.web.models import SessionStatus
from kiroweb.web.protocol import (
    ServerEventType,
    evt_runner_error,
    evt_session_status,
    evt_stream_message,
    evt_user_prompt,
)


@pytest.mark.asyncio
async def test_store_is_updated_before_listeners_run(store, dispatcher) -> None:
    session = store.create_session(cwd="/work")
    observed = []

    def listener(event):
        fresh = store.get_session(session.id)
        observed.append((event.type, fresh.status, len(store.get_messages(session.id))))

    dispatcher.subscribe(listener)
    await dispatcher.publish(evt_session_status(session.id, "running"))
    await dispatcher.publish(evt_user_prompt(session.id, "fix bug"))
    await dispatcher.publish(evt_stream_message(session.id, {"type": "assistant", "uuid": "a1", "message": {}}))

    assert observed == [
        (ServerEventType.SESSION_STATUS, SessionStatus.RUNNING, 0),
        (ServerEventType.STREAM_USER_PROMPT, SessionStatus.RUNNING, 1),
        (ServerEventType.STREAM_MESSAGE, SessionStatus.RUNNING, 2),
    ]
    assert store.get_messages(session.id)[0]["prompt"] == "fix bug"


@pytest.mark.asyncio
async def test_events_are_persisted_in_order(store, dispatcher) -> None:
    session = store.create_session(cwd="/work")

    for i in range(5):
        await dispatcher.publish(evt_stream_message(session.id, {"type": "assistant", "uuid": str(i)}))

    events = dispatcher.get_events_since(session_id=session.id, since_id=None)
    assert [e["seq"] for e in events] == [1, 2, 3, 4, 5]
    assert [e["payload"]["message"]["uuid"] for e in events] == ["0", "1", "2", "3", "4"]


@pytest.mark.asyncio
async def test_invalid_transition_is_dropped(store, dispatcher) -> None:
    session = store.create_session(cwd="/work")
    seen = []
    dispatcher.subscribe(seen.append)

    envelope = await dispatcher.publish(evt_session_status(session.id, "completed"))

    assert envelope is None
    assert seen == []
    assert store.get_session(session.id).status == SessionStatus.IDLE


@pytest.mark.asyncio
async def test_failing_listener_does_not_block_others(store, dispatcher) -> None:
    seen = []

    def broken(event):
        raise RuntimeError("listener bug")

    async def async_listener(event):
        seen.append(event.type)

    dispatcher.subscribe(broken)
    unsubscribe = dispatcher.subscribe(async_listener)

    await dispatcher.publish(evt_runner_error("boom"))
    unsubscribe()
    await dispatcher.publish(evt_runner_error("boom again"))

    assert seen == [ServerEventType.RUNNER_ERROR]


@pytest.mark.asyncio
async def test_wait_for_new_wakes_on_publish(store, dispatcher) -> None:
    waiter = asyncio.create_task(dispatcher.wait_for_new(timeout_s=2.0))
    await asyncio.sleep(0.01)

    await dispatcher.publish(evt_runner_error("wake up"))

    assert await waiter is True
    assert await dispatcher.wait_for_new(timeout_s=0.01) is False
