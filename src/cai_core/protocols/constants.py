# File: src/cai_core/protocols/constants.py
"""
CharacterAI 协议常量

集中存放接口地址、命令标签与握手帧等固定值。
"""

# --- 接口地址 ---
BASE_URL = "https://character.ai/"
NEO_API_URL = "https://neo.character.ai/"
PLUS_API_URL = "https://plus.character.ai/"
DM_WEBSOCKET_URL = "wss://neo.character.ai/ws/"
GROUP_CHAT_WEBSOCKET_URL = "wss://neo.character.ai/connection/websocket"

# --- 认证 ---
TOKEN_PREFIX = "Token "
ENV_PREFIX = "CAI_"
DEFAULT_USER_AGENT = "cai-core/1.0"

# 响应中缺少 edge_rollout Cookie 时的默认值
FALLBACK_EDGE_ROLLOUT = "60"
EDGE_ROLLOUT_COOKIE = "edge_rollout"

# --- 出站帧字段 ---
FIELD_COMMAND = "command"
FIELD_ORIGIN_ID = "origin_id"
FIELD_PAYLOAD = "payload"
FIELD_REQUEST_ID = "request_id"

# --- 命令标签 ---
CMD_CREATE_AND_GENERATE_TURN = "create_and_generate_turn"
CMD_ADD_TURN = "add_turn"
CMD_ERROR = "neo_error"

DEFAULT_ORIGIN_ID = "Android"

# --- 群聊通道握手 (Centrifugo) ---
HANDSHAKE_ID = 1
SUBSCRIBE_ID = 2
HANDSHAKE_CLIENT_NAME = "py"
PING_FRAME = "{}"
