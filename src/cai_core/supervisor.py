# src/cai_core/supervisor.py
"""
CAI-Core - 重连监督器 (Reconnection Supervisor)

职责：
1. 打开流程：预取 edge_rollout -> 打开群聊通道 (需握手) -> 打开私聊通道。
2. 断线处理：任意通道断开后 (若启用自动重连) 只运行一个重连周期。
3. 复活：每次进入 OPEN 后并发刷新所有活跃会话，单个失败不影响其他会话。
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any, Optional

from .channel import SocketChannel
from .config import CAIConfig
from .correlator import CommandCorrelator
from .exceptions import ChannelConnectionError, NetworkError
from .network import Requester
from .protocols import frames
from .registry import ActiveConversationRegistry, ConversationHandle
from .state import SessionState, SessionStatus

logger = logging.getLogger(__name__)

# 回调函数类型别名：支持同步或异步函数
StatusCallback = Callable[[SessionStatus, str], Any | Awaitable[Any]]
ChannelFactory = Callable[..., SocketChannel]
IdentityProvider = Callable[[], tuple[str, int | str]]


class ReconnectionSupervisor:
    """管理私聊/群聊两条通道的打开、断线重连与会话复活。

    重连策略: 每次断线最多自动尝试一次；失败后保持 DISCONNECTED，
    由调用方决定何时调用 reconnect() 重试。
    """

    def __init__(
        self,
        config: CAIConfig,
        requester: Requester,
        registry: ActiveConversationRegistry,
        dm: CommandCorrelator,
        group_chat: CommandCorrelator,
        identity: IdentityProvider,
        channel_factory: Optional[ChannelFactory] = None,
    ) -> None:
        """
        Args:
            config: 全局配置对象。
            requester: HTTP 客户端，用于预取路由元数据。
            registry: 活跃会话登记表。
            dm: 私聊通道的命令关联器。
            group_chat: 群聊通道的命令关联器。
            identity: 返回 (会话令牌, 用户 ID) 的函数，每次打开时读取。
            channel_factory: 通道工厂，默认创建 SocketChannel。
        """
        self.config = config
        self.automatic_reconnect = config.automatic_reconnect
        self._requester = requester
        self._registry = registry
        self._dm = dm
        self._group_chat = group_chat
        self._identity = identity
        self._channel_factory = channel_factory or self._default_channel_factory

        self.dm_channel: Optional[SocketChannel] = None
        self.group_channel: Optional[SocketChannel] = None
        self.last_resurrect_failures: list[tuple[str, BaseException]] = []

        self._state = SessionState()
        self._listeners: list[StatusCallback] = []
        self._listener_tasks: set[asyncio.Task] = set()
        self._open_lock = asyncio.Lock()
        self._reconnect_task: Optional[asyncio.Task] = None
        self._resurrect_task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def state(self) -> SessionState:
        """获取当前会话状态的只读副本。"""
        return replace(self._state, history=self._state.history.copy())

    @property
    def status(self) -> SessionStatus:
        return self._state.status

    @property
    def reconnect_task(self) -> Optional[asyncio.Task]:
        return self._reconnect_task

    @property
    def resurrect_task(self) -> Optional[asyncio.Task]:
        return self._resurrect_task

    def add_listener(self, callback: StatusCallback) -> None:
        """注册状态变更监听器。"""
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: StatusCallback) -> None:
        """移除状态变更监听器。"""
        if callback in self._listeners:
            self._listeners.remove(callback)

    # --- 对外接口 ---

    async def start(self) -> None:
        """首次打开两条通道 (DISCONNECTED -> CONNECTING -> OPEN)。

        Raises:
            ChannelConnectionError: 预取元数据或任一通道打开失败。
        """
        self._stopping = False
        await self._cycle()

    async def reconnect(self) -> None:
        """由调用方驱动的重连。

        若自动重连正在进行，则等待其结果而不是并行再开一轮。

        Raises:
            ChannelConnectionError: 本次重连失败。
        """
        task = self._reconnect_task
        if task is not None and not task.done():
            await task
            if self._state.is_open:
                return

        self._stopping = False
        await self._cycle()

    async def stop(self) -> None:
        """关闭两条通道，期间的断开事件不会触发重连。"""
        self._stopping = True

        for task in (self._reconnect_task, self._resurrect_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reconnect_task = None
        self._resurrect_task = None

        async with self._open_lock:
            await self._close_channels()

        self._dm.detach()
        self._group_chat.detach()
        self._update_status(SessionStatus.DISCONNECTED, "已停止")

    async def resurrect_active_conversations(self) -> list[tuple[str, BaseException]]:
        """并发刷新所有活跃会话的消息 (all-settled)。

        Returns:
            list: 刷新失败的 (chat_id, 异常) 列表。
        """
        handles = self._registry.all()
        if not handles:
            self.last_resurrect_failures = []
            return []

        logger.info(f"正在刷新 {len(handles)} 个活跃会话...")

        async def _refresh(handle: ConversationHandle) -> None:
            await handle.refresh_messages()

        results = await asyncio.gather(
            *(_refresh(handle) for handle in handles), return_exceptions=True
        )

        failures = [
            (handle.chat_id, result)
            for handle, result in zip(handles, results)
            if isinstance(result, BaseException)
        ]
        for chat_id, exc in failures:
            logger.warning(f"会话 {chat_id} 刷新失败: {exc}")
        if failures:
            logger.warning(f"{len(failures)}/{len(handles)} 个会话刷新失败")

        self.last_resurrect_failures = failures
        return failures

    # --- 内部流程 ---

    async def _cycle(self) -> None:
        """[Internal] 一个完整的 关闭旧通道 -> 打开新通道 周期 (串行化)。"""
        async with self._open_lock:
            await self._close_channels()
            await self._open_channels()

    async def _open_channels(self) -> None:
        """[Internal] CONNECTING -> OPEN。调用方必须持有 _open_lock。"""
        self._update_status(SessionStatus.CONNECTING, "正在打开通道...")

        try:
            edge_rollout = await self._fetch_edge_rollout()
            token, user_id = self._identity()

            self.group_channel = self._channel_factory(
                self.config.group_chat_websocket_url,
                name="group",
                authorization=token,
                edge_rollout=edge_rollout,
                user_id=user_id,
            )
            await self.group_channel.open(require_handshake_ack=True)

            self.dm_channel = self._channel_factory(
                self.config.dm_websocket_url,
                name="dm",
                authorization=token,
                edge_rollout=edge_rollout,
                user_id=user_id,
            )
            await self.dm_channel.open(require_handshake_ack=False)

            # 群聊通道可能在等待私聊通道期间断开，此时还没有任何监听器
            dropped = [c.name for c in (self.group_channel, self.dm_channel) if not c.is_open]
            if dropped:
                raise ChannelConnectionError(f"通道在打开过程中断开: {', '.join(dropped)}")

        except asyncio.CancelledError:
            await self._close_channels()
            raise

        except ChannelConnectionError as e:
            await self._fail_open(e)
            raise

        except Exception as e:
            error = ChannelConnectionError(f"打开 WebSocket 失败: {e}")
            await self._fail_open(error)
            raise error from e

        self._group_chat.attach(self.group_channel)
        self._dm.attach(self.dm_channel)
        for channel in (self.group_channel, self.dm_channel):
            channel.on("disconnected", self._make_disconnect_handler(channel))

        self._state.edge_rollout = edge_rollout
        self._state.last_error = ""
        self._state.connect_count += 1
        self._update_status(SessionStatus.OPEN, "私聊与群聊通道已打开")

        self._resurrect_task = asyncio.create_task(
            self.resurrect_active_conversations(), name="CAIResurrectTask"
        )

    async def _fail_open(self, error: ChannelConnectionError) -> None:
        await self._close_channels()
        self._state.last_error = str(error)
        self._update_status(SessionStatus.DISCONNECTED, f"打开通道失败: {error}")

    async def _close_channels(self) -> None:
        """[Internal] 关闭当前通道。先解除引用，使其断开事件被视为过期。"""
        channels = [c for c in (self.group_channel, self.dm_channel) if c is not None]
        self.group_channel = None
        self.dm_channel = None
        for channel in channels:
            await channel.close()

    async def _fetch_edge_rollout(self) -> str:
        """[Internal] 预取路由令牌，每次打开都会重新获取。

        Raises:
            ChannelConnectionError: 请求本身失败，或响应既无令牌又不是 2xx。
        """
        try:
            response = await self._requester.request(
                self.config.base_url, "GET", include_authorization=False
            )
        except NetworkError as e:
            raise ChannelConnectionError(f"预取 edge_rollout 失败: {e}") from e

        edge_rollout = frames.parse_edge_rollout(response.headers.get_list("set-cookie"))
        if edge_rollout is None:
            if not response.is_success:
                raise ChannelConnectionError(
                    f"无法获取 edge_rollout (HTTP {response.status_code})"
                )
            logger.debug(f"响应缺少 edge_rollout，使用默认值 {self.config.fallback_edge_rollout}")
            edge_rollout = self.config.fallback_edge_rollout

        return edge_rollout

    def _make_disconnect_handler(self, channel: SocketChannel) -> Callable[[], None]:
        def _on_disconnected() -> None:
            if channel is not self.dm_channel and channel is not self.group_channel:
                return
            if self._stopping:
                return
            if self._reconnect_task is not None and not self._reconnect_task.done():
                logger.debug(f"[{channel.name}] 重连已在进行中，忽略重复的断开事件")
                return

            self._update_status(SessionStatus.DISCONNECTED, f"{channel.name} 通道已断开")
            if not self.automatic_reconnect:
                logger.info("未启用自动重连，等待调用方重新连接")
                return

            self._state.reconnect_count += 1
            self._reconnect_task = asyncio.create_task(
                self._auto_reconnect(channel.name), name="CAIReconnectTask"
            )

        return _on_disconnected

    async def _auto_reconnect(self, trigger: str) -> None:
        """[Internal] 自动重连任务，失败只记录，不再重试。"""
        logger.warning(f"[{trigger}] 通道断开，开始自动重连")
        try:
            await self._cycle()
        except ChannelConnectionError as e:
            logger.error(f"自动重连失败: {e}")

    def _default_channel_factory(
        self,
        url: str,
        *,
        name: str,
        authorization: str,
        edge_rollout: str,
        user_id: int | str,
    ) -> SocketChannel:
        return SocketChannel(
            url,
            authorization=authorization,
            edge_rollout=edge_rollout,
            user_id=user_id,
            name=name,
            open_timeout=self.config.open_timeout,
            handshake_timeout=self.config.handshake_timeout,
            user_agent=self.config.user_agent,
        )

    def _update_status(self, status: SessionStatus, msg: str) -> None:
        """更新内部状态并异步触发所有回调。"""
        self._state.status = status
        self._state.history.append(status)
        logger.info(f"[{status.name}] {msg}")

        for callback in self._listeners:
            try:
                if inspect.iscoroutinefunction(callback):
                    task = asyncio.create_task(callback(status, msg))  # type: ignore
                    self._listener_tasks.add(task)
                    task.add_done_callback(self._on_listener_done)
                else:
                    loop = asyncio.get_running_loop()
                    loop.call_soon(callback, status, msg)
            except RuntimeError:
                pass
            except Exception as e:
                logger.error(f"回调执行异常: {e}")

    def _on_listener_done(self, task: asyncio.Task) -> None:
        """[Internal] 回收异步回调任务，并记录其异常。"""
        self._listener_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"回调执行异常: {error}")
