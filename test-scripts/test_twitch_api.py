from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from cogs.stream_alerts.errors import NotAuthenticated, StreamerNotFound
from cogs.twitch.models import CreateFailure, Credential, RemoteSubscription, utcnow
from cogs.twitch.token_manager import TwitchTokenManager
from cogs.twitch.twitch_api import TwitchAPI, TwitchAPIError


def _raw_sub(sub_id, broadcaster_id="123", session_id="S1"):
    return {
        "id": sub_id,
        "status": "enabled",
        "type": "stream.online",
        "version": "1",
        "condition": {"broadcaster_user_id": broadcaster_id},
        "transport": {"method": "websocket", "session_id": session_id, "connected_at": "2024-01-01T00:00:00Z"},
        "created_at": "2024-01-01T00:00:00Z",
        "cost": 1,
    }


@pytest.fixture
def api():
    client = TwitchAPI("cid")
    client._request = AsyncMock()
    return client


async def test_resolve_user_id(api):
    api._request.return_value = (200, {"data": [{"id": "123", "login": "streamerx"}]})

    assert await api.resolve_user_id(" StreamerX ") == "123"
    api._request.assert_awaited_once_with("GET", "/users", params={"login": "streamerx"})


async def test_resolve_user_id_not_found(api):
    api._request.return_value = (200, {"data": []})

    with pytest.raises(StreamerNotFound) as exc_info:
        await api.resolve_user_id("nobody")
    assert exc_info.value.login == "nobody"


async def test_resolve_user_id_http_error(api):
    api._request.return_value = (400, {"message": "bad"})

    with pytest.raises(TwitchAPIError) as exc_info:
        await api.resolve_user_id("x")
    assert exc_info.value.status == 400


async def test_list_subscriptions_follows_pagination(api):
    api._request.side_effect = [
        (200, {"data": [_raw_sub("a"), {"broken": True}], "pagination": {"cursor": "c1"}}),
        (200, {"data": [_raw_sub("b", session_id="S2")], "pagination": {}}),
    ]

    subs = await api.list_subscriptions("stream.online")

    assert [s.id for s in subs] == ["a", "b"]
    assert subs[0].broadcaster_id == "123"
    assert subs[1].session_id == "S2"
    second_call = api._request.await_args_list[1]
    assert second_call.kwargs["params"] == {"type": "stream.online", "after": "c1"}


async def test_list_subscriptions_non_success_is_empty(api):
    api._request.return_value = (500, {"message": "oops"})

    assert await api.list_subscriptions() == []


async def test_list_subscriptions_network_error_is_empty(api):
    api._request.side_effect = aiohttp.ClientConnectionError("down")

    assert await api.list_subscriptions() == []


async def test_list_subscriptions_unauthenticated_is_empty(api):
    api._request.side_effect = NotAuthenticated("no token")

    assert await api.list_subscriptions() == []


async def test_create_subscription_payload(api):
    api._request.return_value = (202, {"data": [_raw_sub("sub-1")]})

    result = await api.create_subscription("123", "S1")

    assert isinstance(result, RemoteSubscription)
    assert result.id == "sub-1"
    body = api._request.await_args.kwargs["json_body"]
    assert body["condition"] == {"broadcaster_user_id": "123"}
    assert body["transport"] == {"method": "websocket", "session_id": "S1"}


@pytest.mark.parametrize(
    "response, expected",
    [
        ((409, {"message": "subscription already exists"}), CreateFailure.CONFLICT),
        ((400, {"message": "bad"}), CreateFailure.FAILED),
        ((202, {"data": []}), CreateFailure.FAILED),
    ],
)
async def test_create_subscription_failures(api, response, expected):
    api._request.return_value = response

    assert await api.create_subscription("123", "S1") is expected


async def test_create_subscription_network_error(api):
    api._request.side_effect = aiohttp.ClientConnectionError("down")

    assert await api.create_subscription("123", "S1") is CreateFailure.FAILED


@pytest.mark.parametrize("status, expected", [(204, True), (404, False)])
async def test_delete_subscription(api, status, expected):
    api._request.return_value = (status, None)

    assert await api.delete_subscription("sub-1") is expected
    api._request.assert_awaited_once_with("DELETE", "/eventsub/subscriptions", params={"id": "sub-1"})


async def test_request_without_token_manager_is_not_authenticated():
    client = TwitchAPI("cid")
    with pytest.raises(NotAuthenticated):
        await client._request("GET", "/users")


async def test_expired_token_without_refresh_requests_new_authorization():
    tokens = TwitchTokenManager("cid", "secret", "http://localhost:3000/twitch")
    tokens.load(Credential("old", "old-refresh", utcnow() - timedelta(seconds=5)))
    tokens._request_token = AsyncMock(return_value=None)
    on_unauth = MagicMock()
    tokens.set_unauthenticated_callback(on_unauth)
    client = TwitchAPI("cid")
    client.set_token_manager(tokens)

    assert await client.list_subscriptions() == []
    on_unauth.assert_called_once_with()
    assert tokens.credential is None


@pytest.mark.parametrize("body", ["<html>gateway</html>", None])
async def test_non_json_success_body_is_handled(api, body):
    api._request.return_value = (200, body)

    assert await api.list_subscriptions() == []
    assert await api.create_subscription("123", "S1") is CreateFailure.FAILED
    with pytest.raises(StreamerNotFound):
        await api.resolve_user_id("streamerX")
