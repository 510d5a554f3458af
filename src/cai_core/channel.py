# src/cai_core/channel.py
"""
CAI-Core - 通道模块 (Socket Channel) [WebSocket]

一个 SocketChannel 对象持有一条物理 WebSocket 连接:
1. open(): 建立连接，群聊通道额外等待服务端握手确认。
2. send(): 发送单帧，通道未 OPEN 时立即失败。
3. 事件: connected / disconnected / message，通过显式的监听器列表分发。

通道不做任何重试，重连策略属于 Supervisor。
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from .exceptions import ChannelConnectionError, MalformedFrameError, NotConnectedError
from .protocols import constants, frames
from .state import ChannelStatus

logger = logging.getLogger(__name__)

EVENT_CONNECTED = "connected"
EVENT_DISCONNECTED = "disconnected"
EVENT_MESSAGE = "message"
EVENTS = (EVENT_CONNECTED, EVENT_DISCONNECTED, EVENT_MESSAGE)

Listener = Callable[..., Any | Awaitable[Any]]
Connector = Callable[..., Awaitable[Any]]


class SocketChannel:
    """单条持久化 WebSocket 连接。

    通道只会被打开一次；断开后由 Supervisor 创建新的实例替换它。
    """

    def __init__(
        self,
        url: str,
        *,
        authorization: str,
        edge_rollout: str,
        user_id: int | str = 0,
        name: str = "channel",
        open_timeout: float = 10.0,
        handshake_timeout: float = 10.0,
        user_agent: Optional[str] = None,
        connect: Optional[Connector] = None,
    ) -> None:
        """初始化通道 (不会发起连接)。

        Args:
            url: WebSocket 地址。
            authorization: 会话令牌 (不含 "Token " 前缀)。
            edge_rollout: 预取得到的路由令牌。
            user_id: 当前用户 ID，群聊通道握手后用于订阅个人频道。
            name: 日志中使用的通道名。
            open_timeout: 传输层连接超时。
            handshake_timeout: 等待握手确认的超时。
            user_agent: 可选的 User-Agent。
            connect: 连接工厂，默认使用 websockets 的异步客户端。
        """
        self.url = url
        self.name = name
        self.user_id = user_id
        self.open_timeout = open_timeout
        self.handshake_timeout = handshake_timeout
        self.user_agent = user_agent
        self._cookie = frames.build_auth_cookie(authorization, edge_rollout)
        self._connect = connect or ws_connect

        self.status = ChannelStatus.CONNECTING
        self._ws: Any = None
        self._reader_task: Optional[asyncio.Task] = None
        self._handshake: Optional[asyncio.Future] = None
        self._listeners: dict[str, list[Listener]] = {event: [] for event in EVENTS}
        self._once: set[tuple[str, Listener]] = set()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name} {self.status.name} {self.url}>"

    @property
    def is_open(self) -> bool:
        return self.status == ChannelStatus.OPEN

    # --- 发布 / 订阅 ---

    def on(self, event: str, callback: Listener) -> None:
        """注册事件监听器。"""
        if event not in self._listeners:
            raise ValueError(f"未知的通道事件: {event}")
        if callback not in self._listeners[event]:
            self._listeners[event].append(callback)

    def once(self, event: str, callback: Listener) -> None:
        """注册只触发一次的事件监听器。"""
        self.on(event, callback)
        self._once.add((event, callback))

    def off(self, event: str, callback: Listener) -> None:
        """移除事件监听器。"""
        if callback in self._listeners.get(event, []):
            self._listeners[event].remove(callback)
        self._once.discard((event, callback))

    async def _emit(self, event: str, *args: Any) -> None:
        """按注册顺序依次调用监听器，协程监听器会被 await。"""
        for callback in list(self._listeners[event]):
            if (event, callback) in self._once:
                self.off(event, callback)
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[{self.name}] {event} 监听器执行异常: {e}", exc_info=True)

    # --- 生命周期 ---

    async def open(self, require_handshake_ack: bool = False) -> "SocketChannel":
        """建立物理连接。

        Args:
            require_handshake_ack: 为 True 时 (群聊语义) 阻塞直到服务端确认握手；
                否则 (私聊语义) 传输层连接成功即返回。

        Returns:
            SocketChannel: 自身，便于链式调用。

        Raises:
            ChannelConnectionError: 连接、握手失败或超时。
        """
        if self.status != ChannelStatus.CONNECTING:
            raise ChannelConnectionError(f"[{self.name}] 通道不可重复打开 ({self.status.name})")

        logger.debug(f"[{self.name}] 正在连接 {self.url}")
        try:
            self._ws = await self._connect(
                self.url,
                additional_headers={"Cookie": self._cookie},
                user_agent_header=self.user_agent,
                open_timeout=self.open_timeout,
            )
        except Exception as e:
            self.status = ChannelStatus.CLOSED
            raise ChannelConnectionError(f"[{self.name}] 连接失败 {self.url}: {e}") from e

        if require_handshake_ack:
            self._handshake = asyncio.get_running_loop().create_future()

        self._reader_task = asyncio.create_task(
            self._read_loop(), name=f"CAIChannelReader-{self.name}"
        )

        if require_handshake_ack:
            await self._await_handshake()

        self.status = ChannelStatus.OPEN
        logger.info(f"[{self.name}] 通道已打开")
        await self._emit(EVENT_CONNECTED)
        return self

    async def _await_handshake(self) -> None:
        """[Internal] 发送握手帧并等待确认，失败时关闭连接。"""
        assert self._handshake is not None
        try:
            await self._ws.send(frames.build_handshake_frame())
            await asyncio.wait_for(self._handshake, timeout=self.handshake_timeout)
            await self._ws.send(frames.build_subscribe_frame(self.user_id))
        except asyncio.TimeoutError:
            await self.close()
            raise ChannelConnectionError(
                f"[{self.name}] 等待握手确认超时 ({self.handshake_timeout}s)"
            ) from None
        except ChannelConnectionError:
            await self.close()
            raise
        except Exception as e:
            await self.close()
            raise ChannelConnectionError(f"[{self.name}] 握手失败: {e}") from e
        finally:
            self._handshake = None

    async def send(self, frame: str) -> None:
        """
        发送单帧。

        Raises:
            NotConnectedError: 通道未处于 OPEN 状态，或发送时连接已断开。
        """
        if self.status != ChannelStatus.OPEN or self._ws is None:
            raise NotConnectedError(f"[{self.name}] 通道未连接 ({self.status.name})")

        try:
            await self._ws.send(frame)
        except ConnectionClosed as e:
            raise NotConnectedError(f"[{self.name}] 发送时连接已断开: {e}") from e
        logger.debug(f"[{self.name}] -> {frame}")

    async def close(self) -> None:
        """主动关闭通道。disconnected 事件同样只触发一次。"""
        if self.status == ChannelStatus.CLOSED and self._reader_task is None:
            return

        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug(f"[{self.name}] 关闭连接时异常: {e}")

        task = self._reader_task
        if task is not None and task is not asyncio.current_task():
            await task
        else:
            await self._handle_closed()

    async def _read_loop(self) -> None:
        """[Internal] 读取循环：按到达顺序分发入站帧。"""
        try:
            async for raw in self._ws:
                if self._handshake is not None and not self._handshake.done():
                    if self._check_handshake(raw):
                        continue

                if frames.is_ping_frame(raw):
                    await self._ws.send(constants.PING_FRAME)
                    continue

                logger.debug(f"[{self.name}] <- {raw}")
                await self._emit(EVENT_MESSAGE, raw)

        except ConnectionClosed as e:
            logger.warning(f"[{self.name}] 连接断开: {e}")
        except asyncio.CancelledError:
            logger.debug(f"[{self.name}] 读取任务被取消")
            raise
        except Exception as e:
            logger.error(f"[{self.name}] 读取循环异常: {e}", exc_info=True)
        finally:
            await self._handle_closed()

    def _check_handshake(self, raw: Any) -> bool:
        """[Internal] 若 raw 是握手回复则完成握手 Future，并返回 True。"""
        try:
            reply = frames.parse_handshake_reply(frames.decode_frame(raw))
        except MalformedFrameError:
            return False

        if reply is None:
            return False

        assert self._handshake is not None
        if reply:
            self._handshake.set_result(True)
        else:
            self._handshake.set_exception(
                ChannelConnectionError(f"[{self.name}] 服务端拒绝握手: {raw}")
            )
        return True

    async def _handle_closed(self) -> None:
        """[Internal] 标记关闭并广播 disconnected (每条已打开的连接仅一次)。"""
        self._reader_task = None
        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_exception(
                ChannelConnectionError(f"[{self.name}] 握手完成前连接已关闭")
            )

        previous = self.status
        self.status = ChannelStatus.CLOSED
        if previous != ChannelStatus.OPEN:
            return

        logger.info(f"[{self.name}] 通道已关闭")
        await self._emit(EVENT_DISCONNECTED)
