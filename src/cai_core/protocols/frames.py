# File: src/cai_core/protocols/frames.py
"""
CharacterAI 帧编解码 (Frames)

负责出站命令帧的序列化、入站帧的解析与解包，
以及"是否为最终帧"、"是否为握手确认"等纯函数判定。
"""

import json
import re
import uuid
from collections.abc import Iterable
from typing import Any

from ..exceptions import MalformedFrameError
from . import constants

_EDGE_ROLLOUT_PATTERN = re.compile(rf"{constants.EDGE_ROLLOUT_COOKIE}=([^;]+)")


def new_request_id() -> str:
    """生成会话内唯一的关联 ID (随机 128 位 UUID 字符串)。"""
    return str(uuid.uuid4())


def encode_command(command: str, origin_id: str, payload: Any, request_id: str) -> str:
    """序列化一条出站命令帧。

    Args:
        command: 命令标签。
        origin_id: 调用方提供的来源标识。
        payload: 任意可 JSON 序列化的负载。
        request_id: 关联 ID。

    Returns:
        str: JSON 文本帧。
    """
    return json.dumps(
        {
            constants.FIELD_COMMAND: command,
            constants.FIELD_ORIGIN_ID: origin_id,
            constants.FIELD_PAYLOAD: payload,
            constants.FIELD_REQUEST_ID: request_id,
        }
    )


def decode_frame(raw: str | bytes) -> dict[str, Any]:
    """解析入站帧。

    Raises:
        MalformedFrameError: 数据不是合法 JSON，或顶层不是对象。
    """
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedFrameError(f"无法解析入站帧: {e}") from e

    if not isinstance(frame, dict):
        raise MalformedFrameError(f"入站帧顶层不是对象: {type(frame).__name__}")
    return frame


def extract_command_frame(frame: dict[str, Any]) -> dict[str, Any]:
    """取出真正的命令帧。

    群聊通道的推送被包裹为 {"push": {"pub": {"data": {...}}}}，
    私聊通道的帧本身就是命令帧。
    """
    push = frame.get("push")
    if isinstance(push, dict):
        data = (push.get("pub") or {}).get("data")
        if isinstance(data, dict):
            return data
    return frame


def is_final_frame(frame: dict[str, Any]) -> bool:
    """判断帧是否为一次流式回复的最终帧。

    满足以下任一条件即视为最终帧:
    1. 帧上显式携带 is_final: true。
    2. 帧携带的 turn 不是用户本人发出的，且其候选回复中有 is_final: true。
    """
    if frame.get("is_final") is True:
        return True

    turn = frame.get("turn")
    if not isinstance(turn, dict):
        return False

    author = turn.get("author") or {}
    if author.get("is_human"):
        return False

    candidates = turn.get("candidates") or []
    return any(
        isinstance(candidate, dict) and candidate.get("is_final") is True
        for candidate in candidates
    )


def is_ping_frame(raw: str | bytes) -> bool:
    """群聊服务端的保活 ping 是一个空对象帧。"""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    return raw.strip() == constants.PING_FRAME


def build_handshake_frame() -> str:
    return json.dumps(
        {
            "connect": {"name": constants.HANDSHAKE_CLIENT_NAME},
            "id": constants.HANDSHAKE_ID,
        }
    )


def build_subscribe_frame(user_id: int | str) -> str:
    return json.dumps(
        {
            "subscribe": {"channel": f"user#{user_id}"},
            "id": constants.SUBSCRIBE_ID,
        }
    )


def parse_handshake_reply(frame: dict[str, Any]) -> bool | None:
    """解析群聊握手回复。

    Returns:
        None: 该帧不是握手回复。
        True: 服务端确认了连接。
        False: 服务端拒绝了连接。
    """
    if frame.get("id") != constants.HANDSHAKE_ID:
        return None
    if "error" in frame:
        return False
    if "connect" in frame:
        return True
    return None


def build_auth_cookie(authorization: str, edge_rollout: str) -> str:
    """构造两条通道共用的认证 Cookie 头。"""
    return (
        f'HTTP_AUTHORIZATION="{constants.TOKEN_PREFIX}{authorization}"; '
        f"{constants.EDGE_ROLLOUT_COOKIE}={edge_rollout}"
    )


def parse_edge_rollout(set_cookie_headers: Iterable[str]) -> str | None:
    """从 Set-Cookie 头中提取 edge_rollout，不存在时返回 None。"""
    for header in set_cookie_headers:
        match = _EDGE_ROLLOUT_PATTERN.search(header)
        if match:
            return match.group(1)
    return None
