# tests/test_core.py
import asyncio

import httpx
import pytest

from cai_core import CharacterAI, CheckAndThrow, DMConversation, SessionStatus
from cai_core.exceptions import APIError, AuthError, ChannelConnectionError, StateError

PROFILE = {
    "user": {
        "user": {
            "username": "tester",
            "id": 1234,
            "user": {"username": "tester", "id": 1234, "account": {"name": "Tester"}},
        }
    }
}


@pytest.fixture
def api(server):
    """[Fixture] 认证、资料、会话与消息接口。"""
    server.route("GET", "/chat/user/settings/", httpx.Response(200, json={}))
    server.route("GET", "/chat/user/", httpx.Response(200, json=PROFILE))
    server.route(
        "GET",
        "/chats/recent/char-1",
        httpx.Response(200, json={"chats": [{"chat_id": "chat-1", "character_id": "char-1"}]}),
    )
    server.route(
        "GET",
        "/turns/chat-1/",
        httpx.Response(200, json={"turns": [{"turn_key": {"turn_id": "t0"}}]}),
    )
    server.route(
        "POST",
        "/character/v1/get_character_info",
        httpx.Response(200, json={"character": {"external_id": "char-1", "name": "Bot"}}),
    )
    return server


@pytest.fixture
def client(config, requester, channel_factory, api):
    return CharacterAI(config, requester=requester, channel_factory=channel_factory)


@pytest.mark.asyncio
async def test_authenticate_opens_channels(client, api, sockets, config):
    await client.authenticate("Token session-abc")

    assert client.authenticated
    assert client.status == SessionStatus.OPEN
    assert client.my_profile.username == "tester"
    assert client.my_profile.user_id == 1234

    settings_request = api.requests[0]
    assert settings_request.headers["Authorization"] == "Token session-abc"

    group_ws = sockets.latest(config.group_chat_websocket_url)
    assert group_ws.sent_frames()[1]["subscribe"]["channel"] == "user#1234"
    _, kwargs, _ = sockets.created[0]
    assert 'HTTP_AUTHORIZATION="Token session-abc"' in kwargs["additional_headers"]["Cookie"]

    await client.close()
    assert not client.authenticated
    assert client.status == SessionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_authenticate_rejected(client, api):
    api.route("GET", "/chat/user/settings/", httpx.Response(401))

    with pytest.raises(AuthError):
        await client.authenticate("bad")
    assert not client.authenticated
    assert client.requester.token == ""


@pytest.mark.asyncio
async def test_authenticate_requires_token(client):
    with pytest.raises(AuthError):
        await client.authenticate()


@pytest.mark.asyncio
async def test_authenticate_twice(client):
    await client.authenticate("tok")
    with pytest.raises(StateError):
        await client.authenticate("tok")
    await client.close()


@pytest.mark.asyncio
async def test_failed_channel_open_resets_token(client, sockets, config):
    sockets.fail_urls.add(config.group_chat_websocket_url)

    with pytest.raises(ChannelConnectionError):
        await client.authenticate("tok")
    assert not client.authenticated
    assert client.requester.token == ""


@pytest.mark.asyncio
async def test_check_and_throw(client):
    with pytest.raises(StateError, match="认证"):
        client.check_and_throw(CheckAndThrow.REQUIRES_AUTHENTICATION)
    client.check_and_throw(CheckAndThrow.REQUIRES_NO_AUTHENTICATION)

    with pytest.raises(StateError):
        await client.unauthenticate()
    with pytest.raises(StateError):
        await client.fetch_character("char-1")


@pytest.mark.asyncio
async def test_automatic_reconnect_property(config, requester):
    client = CharacterAI(config, requester=requester)
    assert client.automatic_reconnect is True
    client.automatic_reconnect = False
    assert client.supervisor.automatic_reconnect is False


@pytest.mark.asyncio
async def test_send_dm_command_marks_conversation(client, sockets, config, wait_until):
    await client.authenticate("tok")
    conversation = DMConversation(client, {"chat_id": "chat-9", "character_id": "c"})

    task = asyncio.create_task(
        client.send_dm_command(
            "create_and_generate_turn",
            {"x": 1},
            expected_return_command="add_turn",
            conversation=conversation,
        )
    )
    dm_ws = sockets.latest(config.dm_websocket_url)
    await wait_until(lambda: len(dm_ws.commands()) == 1)
    assert "chat-9" in client.registry

    request_id = dm_ws.commands()[0]["request_id"]
    dm_ws.feed({"command": "add_turn", "request_id": request_id, "is_final": True})
    assert (await task)["request_id"] == request_id
    await client.close()


@pytest.mark.asyncio
async def test_send_group_chat_command_waits_for_final(client, sockets, config, wait_until):
    await client.authenticate("tok")
    group_ws = sockets.latest(config.group_chat_websocket_url)

    task = asyncio.create_task(client.send_group_chat_command("room_message", {}))
    await wait_until(lambda: len(group_ws.commands()) == 1)
    request_id = group_ws.commands()[0]["request_id"]

    group_ws.feed({"push": {"pub": {"data": {"command": "x", "request_id": request_id}}}})
    await asyncio.sleep(0.02)
    assert not task.done()

    group_ws.feed(
        {"push": {"pub": {"data": {"command": "x", "request_id": request_id, "is_final": True}}}}
    )
    assert (await task)["is_final"] is True
    await client.close()


@pytest.mark.asyncio
async def test_conversation_send_message_streams(client, sockets, config, wait_until):
    await client.authenticate("tok")
    conversation = await client.fetch_latest_dm_conversation("char-1")
    assert conversation.chat_id == "chat-1"
    assert len(conversation.turns) == 1

    chunks = []
    task = asyncio.create_task(conversation.send_message("hi", sink=chunks.append))
    dm_ws = sockets.latest(config.dm_websocket_url)
    await wait_until(lambda: len(dm_ws.commands()) == 1)
    frame = dm_ws.commands()[0]
    assert frame["command"] == "create_and_generate_turn"
    assert frame["payload"]["turn"]["candidates"][0]["raw_content"] == "hi"
    assert frame["payload"]["turn"]["author"]["author_id"] == "1234"

    request_id = frame["request_id"]
    human_echo = {"author": {"is_human": True}, "candidates": [{"is_final": True}]}
    ai_partial = {"author": {"is_human": False}, "candidates": [{"is_final": False}]}
    ai_final = {"author": {"is_human": False}, "candidates": [{"is_final": True}]}
    dm_ws.feed({"command": "add_turn", "request_id": request_id, "turn": human_echo})
    dm_ws.feed({"command": "update_turn", "request_id": request_id, "turn": ai_partial})
    dm_ws.feed({"command": "add_turn", "request_id": request_id, "turn": ai_final})

    reply = await task
    assert reply["turn"] == ai_final
    assert [c["turn"] for c in chunks] == [human_echo, ai_partial]
    assert conversation.turns[0] == ai_final
    assert "chat-1" in client.registry
    await client.close()


@pytest.mark.asyncio
async def test_fetch_character(client, api):
    await client.authenticate("tok")
    character = await client.fetch_character("char-1")
    assert character["name"] == "Bot"

    api.route("POST", "/character/v1/get_character_info", httpx.Response(500))
    with pytest.raises(APIError) as e:
        await client.fetch_character("char-1")
    assert e.value.status_code == 500
    await client.close()


@pytest.mark.asyncio
async def test_refresh_failure_raises_api_error(client, api):
    await client.authenticate("tok")
    conversation = DMConversation(client, {"chat_id": "missing"})
    with pytest.raises(APIError):
        await conversation.refresh_messages()
    await client.close()


@pytest.mark.asyncio
async def test_reconnect_refreshes_active_conversation(client, api, sockets, config, wait_until):
    await client.authenticate("tok")
    conversation = await client.fetch_latest_dm_conversation("char-1")
    client.mark_chat_as_active(conversation)

    api.route(
        "GET",
        "/turns/chat-1/",
        httpx.Response(200, json={"turns": [{"turn_key": {"turn_id": "t1"}}, {}]}),
    )
    sockets.latest(config.dm_websocket_url).drop()

    await wait_until(lambda: client.supervisor.reconnect_task is not None)
    await client.supervisor.reconnect_task
    await client.supervisor.resurrect_task

    assert client.status == SessionStatus.OPEN
    assert len(conversation.turns) == 2
    await client.close()
