"""
CharacterAI 协议层 (Protocol Layer)

本包负责帧的纯粹构建 (Build) 与解析 (Parse)。

- 不包含任何 socket 操作或网络 I/O。
- 不包含任何状态管理 (State)。
- 不依赖于 core、channel 或 correlator 层。
"""

from . import constants
from .frames import (
    build_auth_cookie,
    build_handshake_frame,
    build_subscribe_frame,
    decode_frame,
    encode_command,
    extract_command_frame,
    is_final_frame,
    is_ping_frame,
    new_request_id,
    parse_edge_rollout,
    parse_handshake_reply,
)

# 公共 API
__all__ = [
    "constants",
    "build_auth_cookie",
    "build_handshake_frame",
    "build_subscribe_frame",
    "decode_frame",
    "encode_command",
    "extract_command_frame",
    "is_final_frame",
    "is_ping_frame",
    "new_request_id",
    "parse_edge_rollout",
    "parse_handshake_reply",
]
