# File: src/cai_core/state.py
"""
CAI-Core - 状态模块

负责定义通道与会话的生命周期状态。
本模块不包含业务逻辑，仅作为数据容器供 Supervisor 与 Core 共享读写。
"""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto

# 状态历史只保留最近的若干条，重连循环没有终止状态
HISTORY_LIMIT = 32


class ChannelStatus(Enum):
    """单条物理连接的状态。

    状态流转示意:
    CONNECTING -> OPEN -> CLOSED
         |                  ^
         +------------------+
    通道关闭后不会被复用，重连时总是创建新的通道对象。
    """

    CONNECTING = auto()
    """正在建立传输层连接或等待握手确认。"""

    OPEN = auto()
    """连接可用，可以收发帧。"""

    CLOSED = auto()
    """连接已关闭 (主动关闭或异常断开)。"""


class SessionStatus(Enum):
    """会话 (两条通道整体) 的生命周期状态枚举。

    状态流转示意:
    DISCONNECTED -> CONNECTING -> OPEN -> DISCONNECTED (循环)
    """

    DISCONNECTED = auto()
    """通道未打开。可能是尚未认证、主动注销或重连失败。"""

    CONNECTING = auto()
    """正在预取路由元数据并打开两条通道。"""

    OPEN = auto()
    """私聊与群聊通道均已可用。"""


@dataclass
class SessionState:
    """存储会话的易变状态数据。

    Attributes:
        status: 当前会话状态。
        last_error: 最近一次打开/重连失败的错误描述。
        edge_rollout: 最近一次打开通道时使用的路由令牌。
        connect_count: 成功进入 OPEN 的次数 (含首次打开)。
        reconnect_count: 因断线触发的重连周期次数。
        history: 最近的状态变更记录 (最多 HISTORY_LIMIT 条)。
    """

    status: SessionStatus = SessionStatus.DISCONNECTED
    last_error: str = ""
    edge_rollout: str = ""
    connect_count: int = 0
    reconnect_count: int = 0
    history: deque[SessionStatus] = field(
        default_factory=lambda: deque(maxlen=HISTORY_LIMIT)
    )

    @property
    def is_open(self) -> bool:
        return self.status == SessionStatus.OPEN


class CheckAndThrow(Enum):
    """check_and_throw 的前置条件。"""

    REQUIRES_AUTHENTICATION = auto()
    REQUIRES_NO_AUTHENTICATION = auto()
