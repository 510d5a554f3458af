# src/cai_core/__init__.py
"""
CAI-Core v1.0.0
CharacterAI 异步客户端核心库: 双通道命令关联、断线重连与会话复活。
"""

# 暴露核心配置
from .config import (
    CAIConfig,
    create_config_from_dict,
    load_config_from_env,
    load_config_from_toml,
)

# 暴露引擎与组件
from .channel import SocketChannel
from .conversation import DMConversation
from .core import CharacterAI
from .correlator import CommandCorrelator, PendingRequest
from .registry import ActiveConversationRegistry, ConversationHandle
from .supervisor import ReconnectionSupervisor

# 暴露异常体系 (方便上层 try-except)
from .exceptions import (
    APIError,
    AuthError,
    CAIError,
    ChannelConnectionError,
    CommandRejectedError,
    ConfigError,
    CorrelationError,
    CorrelationLostError,
    CorrelationTimeoutError,
    MalformedFrameError,
    NetworkError,
    NotConnectedError,
    ProtocolError,
    StateError,
)
from .state import ChannelStatus, CheckAndThrow, SessionState, SessionStatus

__version__ = "1.0.0"

__all__ = [
    "CharacterAI",
    "CAIConfig",
    "SocketChannel",
    "CommandCorrelator",
    "PendingRequest",
    "ReconnectionSupervisor",
    "ActiveConversationRegistry",
    "ConversationHandle",
    "DMConversation",
    "ChannelStatus",
    "CheckAndThrow",
    "SessionState",
    "SessionStatus",
    "create_config_from_dict",
    "load_config_from_env",
    "load_config_from_toml",
    "CAIError",
    "ConfigError",
    "StateError",
    "AuthError",
    "APIError",
    "NetworkError",
    "ChannelConnectionError",
    "NotConnectedError",
    "ProtocolError",
    "MalformedFrameError",
    "CorrelationError",
    "CorrelationTimeoutError",
    "CorrelationLostError",
    "CommandRejectedError",
]
