import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import FakeTwitchAPI, make_sub
from cogs.twitch.eventsub_ws import EventSubReconnect, EventSubSession, SessionState


def _notification(event, sub_type="stream.online"):
    return {
        "metadata": {"message_type": "notification", "subscription_type": sub_type},
        "payload": {"event": event},
    }


@pytest.fixture
def session():
    return EventSubSession(FakeTwitchAPI(), reconnect_base_delay=0.0)


async def test_welcome_sets_session_and_state(session):
    session._handle_welcome("S1")

    assert session.session_id == "S1"
    assert session.state is SessionState.WELCOMED
    assert session.is_ready
    assert await session.wait_until_welcomed(0.01)

    await session._handle_message({"metadata": {"message_type": "session_keepalive"}, "payload": {}})
    assert session.state is SessionState.ACTIVE


async def test_wait_until_welcomed_times_out(session):
    assert await session.wait_until_welcomed(0.01) is False


async def test_welcome_runs_callback(session):
    on_welcome = AsyncMock()
    session.set_callbacks(on_welcome=on_welcome)

    session._handle_welcome("S1")
    await asyncio.sleep(0)

    on_welcome.assert_awaited_once_with("S1")


async def test_stream_online_emits_once(session):
    on_online = AsyncMock()
    session.set_callbacks(on_online=on_online)
    session._handle_welcome("S1")

    await session._handle_message(_notification({"broadcaster_user_name": "streamerX"}))

    on_online.assert_awaited_once_with(None, "streamerX")


async def test_subscription_type_from_payload(session):
    on_online = AsyncMock()
    session.set_callbacks(on_online=on_online)
    frame = {
        "metadata": {"message_type": "notification"},
        "payload": {
            "subscription": {"type": "stream.online"},
            "event": {"broadcaster_user_id": "123", "broadcaster_user_login": "streamerx"},
        },
    }

    await session._handle_message(frame)

    on_online.assert_awaited_once_with("123", "streamerx")


@pytest.mark.parametrize(
    "frame",
    [
        {"metadata": {"message_type": "session_keepalive"}, "payload": {}},
        {"metadata": {"message_type": "something_new"}, "payload": {}},
        _notification({"broadcaster_user_id": "1"}, sub_type="stream.offline"),
        _notification({}),
        ["not", "an", "object"],
    ],
)
async def test_other_frames_are_ignored(session, frame):
    on_online = AsyncMock()
    session.set_callbacks(on_online=on_online)

    await session._handle_message(frame)

    on_online.assert_not_awaited()


async def test_online_callback_errors_do_not_escape(session):
    session.set_callbacks(on_online=AsyncMock(side_effect=RuntimeError("boom")))

    await session._handle_message(_notification({"broadcaster_user_name": "streamerX"}))


async def test_reconnect_frame_raises_with_url(session):
    frame = {
        "metadata": {"message_type": "session_reconnect"},
        "payload": {"session": {"id": "S1", "reconnect_url": "wss://example.test/ws"}},
    }
    with pytest.raises(EventSubReconnect) as exc_info:
        await session._handle_message(frame)
    assert exc_info.value.args[0] == "wss://example.test/ws"


async def test_revocation_calls_callback(session):
    on_revocation = AsyncMock()
    session.set_callbacks(on_revocation=on_revocation)
    frame = {
        "metadata": {"message_type": "revocation", "subscription_type": "stream.online"},
        "payload": {"subscription": {"id": "sub-1", "status": "authorization_revoked"}},
    }

    await session._handle_message(frame)

    on_revocation.assert_awaited_once_with("sub-1")


async def test_connection_loss_deletes_only_dead_session_subscriptions():
    api = FakeTwitchAPI()
    api.remote = {
        "id1": make_sub("id1", "123", "A"),
        "id2": make_sub("id2", "456", "A"),
        "id3": make_sub("id3", "789", "B"),
    }
    session = EventSubSession(api)
    on_orphaned = AsyncMock()
    session.set_callbacks(on_orphaned=on_orphaned)
    session._handle_welcome("A")

    orphaned = await session.handle_connection_lost()

    assert sorted(orphaned) == ["id1", "id2"]
    assert sorted(api.deleted) == ["id1", "id2"]
    assert list(api.remote) == ["id3"]
    assert session.session_id is None
    assert session.state is SessionState.DISCONNECTED
    assert not session.is_ready
    on_orphaned.assert_awaited_once()


async def test_connection_loss_without_session_touches_nothing():
    api = FakeTwitchAPI()
    api.remote = {"id1": make_sub("id1", "123", "A")}
    session = EventSubSession(api)

    assert await session.handle_connection_lost() == []
    assert api.calls == []


async def test_run_gives_up_after_max_attempts():
    api = FakeTwitchAPI()
    session = EventSubSession(api, reconnect_base_delay=0.0, max_reconnect_attempts=2)
    session._run_once = AsyncMock(side_effect=ConnectionResetError("gone"))

    await asyncio.wait_for(session.run(), timeout=1)

    assert session.is_failed
    assert session._run_once.await_count == 3
    assert session.state is SessionState.DISCONNECTED


async def test_backoff_grows_and_is_capped(monkeypatch):
    session = EventSubSession(
        FakeTwitchAPI(), reconnect_base_delay=1.0, reconnect_max_delay=3.0, max_reconnect_attempts=4
    )
    session._run_once = AsyncMock(side_effect=ConnectionResetError("gone"))
    delays = []

    async def _fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr("cogs.twitch.eventsub_ws.asyncio.sleep", _fake_sleep)

    await session.run()

    assert delays == [1.0, 2.0, 3.0, 3.0]


async def test_reconnect_request_switches_url_without_cleanup():
    api = FakeTwitchAPI()
    session = EventSubSession(api, ws_url="wss://default.test/ws", max_reconnect_attempts=1)
    seen_urls = []

    async def _run_once():
        seen_urls.append(session._ws_url)
        if len(seen_urls) == 1:
            raise EventSubReconnect("wss://moved.test/ws")
        session._stop = True

    session._run_once = _run_once

    await asyncio.wait_for(session.run(), timeout=1)

    assert seen_urls == ["wss://default.test/ws", "wss://moved.test/ws"]
    assert api.calls == []
