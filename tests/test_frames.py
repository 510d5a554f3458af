# tests/test_frames.py
"""
测试帧编解码的纯函数部分 (不涉及任何 I/O)。
"""

import json

import pytest

from cai_core.exceptions import MalformedFrameError
from cai_core.protocols import constants, frames


def test_encode_command_fields():
    raw = frames.encode_command("create_and_generate_turn", "Android", {"a": 1}, "rid-1")
    assert json.loads(raw) == {
        "command": "create_and_generate_turn",
        "origin_id": "Android",
        "payload": {"a": 1},
        "request_id": "rid-1",
    }


def test_request_ids_are_unique():
    ids = {frames.new_request_id() for _ in range(200)}
    assert len(ids) == 200


@pytest.mark.parametrize("raw", ["not json", "[1, 2]", "42", b"\xff\xfe"])
def test_decode_frame_rejects_malformed(raw):
    with pytest.raises(MalformedFrameError):
        frames.decode_frame(raw)


def test_extract_command_frame_unwraps_group_push():
    inner = {"command": "add_turn", "request_id": "r"}
    wrapped = {"push": {"channel": "room#1", "pub": {"data": inner}}}
    assert frames.extract_command_frame(wrapped) == inner
    # 私聊帧原样返回
    assert frames.extract_command_frame(inner) is inner


def _turn(is_human: bool, is_final: bool) -> dict:
    return {
        "command": "add_turn",
        "turn": {
            "author": {"is_human": is_human},
            "candidates": [{"candidate_id": "c", "is_final": is_final}],
        },
    }


@pytest.mark.parametrize(
    "frame, expected",
    [
        ({"is_final": True}, True),
        ({"is_final": False}, False),
        ({"command": "update_turn"}, False),
        (_turn(is_human=False, is_final=True), True),
        (_turn(is_human=False, is_final=False), False),
        # 用户自己的 turn 回显不是 AI 的最终回复
        (_turn(is_human=True, is_final=True), False),
    ],
)
def test_is_final_frame(frame, expected):
    assert frames.is_final_frame(frame) is expected


def test_handshake_reply_parsing():
    assert frames.parse_handshake_reply({"id": 1, "connect": {}}) is True
    assert frames.parse_handshake_reply({"id": 1, "error": {"code": 1}}) is False
    assert frames.parse_handshake_reply({"id": 2, "subscribe": {}}) is None
    assert frames.parse_handshake_reply({"command": "add_turn"}) is None


def test_handshake_and_subscribe_frames():
    handshake = json.loads(frames.build_handshake_frame())
    assert handshake["id"] == constants.HANDSHAKE_ID
    assert "connect" in handshake

    subscribe = json.loads(frames.build_subscribe_frame(123))
    assert subscribe["subscribe"]["channel"] == "user#123"


def test_ping_frame_detection():
    assert frames.is_ping_frame("{}")
    assert frames.is_ping_frame(b" {} ")
    assert not frames.is_ping_frame('{"command": "x"}')


def test_auth_cookie():
    cookie = frames.build_auth_cookie("abc", "60")
    assert cookie == 'HTTP_AUTHORIZATION="Token abc"; edge_rollout=60'


def test_parse_edge_rollout():
    headers = ["session=1; Path=/", "edge_rollout=77; Path=/; Secure"]
    assert frames.parse_edge_rollout(headers) == "77"
    assert frames.parse_edge_rollout(["session=1"]) is None
    assert frames.parse_edge_rollout([]) is None
