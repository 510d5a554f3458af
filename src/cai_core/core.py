# File: src/cai_core/core.py
"""
CharacterAI 会话引擎 (Core Engine)

职责：
1. 资源组装：Config + Requester + Profile + Correlator + Supervisor。
2. 认证生命周期：authenticate -> (通道打开/重连) -> unauthenticate。
3. 命令分发：私聊/群聊命令交给对应的关联器，并登记活跃会话。
"""

import logging
from typing import Any, Optional

from .config import CAIConfig
from .conversation import DMConversation
from .correlator import CommandCorrelator, StreamSink
from .exceptions import APIError, AuthError, StateError
from .network import Requester
from .profile import PrivateProfile
from .protocols import constants
from .registry import ActiveConversationRegistry, ConversationHandle
from .state import CheckAndThrow, SessionState, SessionStatus
from .supervisor import ChannelFactory, ReconnectionSupervisor, StatusCallback

logger = logging.getLogger(__name__)


class CharacterAI:
    """CharacterAI 客户端会话 (Async)。"""

    def __init__(
        self,
        config: Optional[CAIConfig] = None,
        *,
        requester: Optional[Requester] = None,
        channel_factory: Optional[ChannelFactory] = None,
        status_callback: Optional[StatusCallback] = None,
    ) -> None:
        """初始化会话 (不会发起任何网络请求)。

        Args:
            config: 全局配置对象，默认使用官方地址。
            requester: 可选的 HTTP 客户端 (测试时可注入)。
            channel_factory: 可选的通道工厂 (测试时可注入)。
            status_callback: 初始状态回调。也可以使用 add_listener。
        """
        self.config = config or CAIConfig()
        self.requester = requester or Requester(self.config)
        self.my_profile = PrivateProfile(self)
        self.registry = ActiveConversationRegistry()
        self._token = ""

        self.dm = CommandCorrelator("dm", default_timeout=self.config.command_timeout)
        self.group_chat = CommandCorrelator(
            "group", default_timeout=self.config.command_timeout
        )
        self.supervisor = ReconnectionSupervisor(
            self.config,
            self.requester,
            self.registry,
            self.dm,
            self.group_chat,
            identity=lambda: (self._token, self.my_profile.user_id),
            channel_factory=channel_factory,
        )
        if status_callback:
            self.add_listener(status_callback)

    @property
    def authenticated(self) -> bool:
        return self._token != ""

    @property
    def automatic_reconnect(self) -> bool:
        return self.supervisor.automatic_reconnect

    @automatic_reconnect.setter
    def automatic_reconnect(self, value: bool) -> None:
        self.supervisor.automatic_reconnect = value

    @property
    def status(self) -> SessionStatus:
        return self.supervisor.status

    @property
    def state(self) -> SessionState:
        return self.supervisor.state

    def add_listener(self, callback: StatusCallback) -> None:
        """注册会话状态变更监听器。"""
        self.supervisor.add_listener(callback)

    def remove_listener(self, callback: StatusCallback) -> None:
        """移除会话状态变更监听器。"""
        self.supervisor.remove_listener(callback)

    def mark_chat_as_active(self, conversation: ConversationHandle) -> None:
        """登记活跃会话，重连后会刷新它的消息。"""
        self.registry.mark(conversation)

    # --- 认证 ---

    async def authenticate(self, session_token: Optional[str] = None) -> None:
        """使用会话令牌登录并打开两条通道。

        Args:
            session_token: 会话令牌，可带 "Token " 前缀；缺省时使用配置中的令牌。

        Raises:
            StateError: 已经认证过。
            AuthError: 令牌被拒绝。
            NetworkError: 网络通信异常。
            ChannelConnectionError: 通道打开失败。
        """
        self.check_and_throw(CheckAndThrow.REQUIRES_NO_AUTHENTICATION)

        token = (session_token or self.config.session_token).strip()
        if token.startswith(constants.TOKEN_PREFIX):
            token = token[len(constants.TOKEN_PREFIX) :]
        if not token:
            raise AuthError("缺少会话令牌")

        self.requester.update_token(token)
        try:
            response = await self.requester.request(
                f"{self.config.plus_api_url}chat/user/settings/",
                "GET",
                include_authorization=True,
            )
            if not response.is_success:
                raise AuthError("无效的认证令牌")

            self._token = token
            logger.info("认证成功")

            await self.my_profile.refresh_profile()
            await self.supervisor.start()
        except Exception:
            # 失败时不保留被拒绝的令牌
            self._token = ""
            self.requester.update_token("")
            raise

    async def unauthenticate(self) -> None:
        """关闭通道并清除令牌。"""
        self.check_and_throw(CheckAndThrow.REQUIRES_AUTHENTICATION)
        await self.supervisor.stop()
        self._token = ""
        self.requester.update_token("")
        logger.info("已注销")

    def check_and_throw(
        self,
        argument: CheckAndThrow,
        requires_authenticated_message: str = "必须先完成认证才能执行此操作",
    ) -> None:
        """检查认证前置条件。

        Raises:
            StateError: 前置条件不满足。
        """
        if argument == CheckAndThrow.REQUIRES_AUTHENTICATION and not self.authenticated:
            raise StateError(requires_authenticated_message)

        if argument == CheckAndThrow.REQUIRES_NO_AUTHENTICATION and self.authenticated:
            raise StateError("已经认证过")

    # --- 命令 ---

    async def send_dm_command(
        self,
        command: str,
        payload: Any,
        *,
        origin_id: str = constants.DEFAULT_ORIGIN_ID,
        expected_return_command: Optional[str] = None,
        streaming: bool = False,
        wait_for_ai_response: bool = True,
        sink: Optional[StreamSink] = None,
        conversation: Optional[ConversationHandle] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """通过私聊通道发送命令并等待回复。参数含义见 CommandCorrelator.send_command。"""
        if conversation is not None:
            self.mark_chat_as_active(conversation)

        return await self.dm.send_command(
            command,
            payload,
            origin_id=origin_id,
            expected_return_command=expected_return_command,
            streaming=streaming,
            wait_for_final=wait_for_ai_response,
            sink=sink,
            timeout=timeout,
        )

    async def send_group_chat_command(
        self,
        command: str,
        payload: Any,
        *,
        origin_id: str = constants.DEFAULT_ORIGIN_ID,
        expected_return_command: Optional[str] = None,
        streaming: bool = False,
        sink: Optional[StreamSink] = None,
        conversation: Optional[ConversationHandle] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """通过群聊通道发送命令，总是等待最终帧。"""
        if conversation is not None:
            self.mark_chat_as_active(conversation)

        return await self.group_chat.send_command(
            command,
            payload,
            origin_id=origin_id,
            expected_return_command=expected_return_command,
            streaming=streaming,
            wait_for_final=True,
            sink=sink,
            timeout=timeout,
        )

    # --- REST ---

    async def fetch_character(self, character_id: str) -> dict[str, Any]:
        """获取角色信息 (原始字典)。"""
        self.check_and_throw(CheckAndThrow.REQUIRES_AUTHENTICATION)

        response = await self.requester.request(
            f"{self.config.neo_api_url}character/v1/get_character_info",
            "POST",
            include_authorization=True,
            json={"external_id": character_id, "lang": "en"},
        )
        if not response.is_success:
            raise APIError(f"获取角色 {character_id} 失败", response.status_code)
        return response.json().get("character") or {}

    async def fetch_latest_dm_conversation(self, character_id: str) -> DMConversation:
        """获取与角色最近的一次私聊会话，并加载其消息历史。"""
        self.check_and_throw(CheckAndThrow.REQUIRES_AUTHENTICATION)

        response = await self.requester.request(
            f"{self.config.neo_api_url}chats/recent/{character_id}",
            "GET",
            include_authorization=True,
        )
        if not response.is_success:
            raise APIError(f"获取最近会话失败: {response.text}", response.status_code)

        chats = response.json().get("chats") or []
        if not chats:
            raise APIError(f"与角色 {character_id} 没有私聊会话", response.status_code)

        conversation = DMConversation(self, chats[0])
        await conversation.refresh_messages()
        return conversation

    # --- 资源管理 ---

    async def close(self) -> None:
        """注销 (若已认证) 并释放 HTTP 客户端。"""
        if self.authenticated:
            await self.unauthenticate()
        await self.requester.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
