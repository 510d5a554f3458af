# src/cai_core/correlator.py
"""
CAI-Core - 命令关联器 (Command Correlator)

职责：
1. 为每条出站命令生成关联 ID，并在发送前登记挂起请求。
2. 按关联 ID (而不是到达顺序) 把入站帧匹配回对应的调用方。
3. 流式命令的中间帧转交给调用方提供的 sink，只有最终帧才完成请求。
4. 通道断开时，一次性拒绝该通道上的全部挂起请求。
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from .exceptions import (
    CommandRejectedError,
    CorrelationLostError,
    CorrelationTimeoutError,
    MalformedFrameError,
    NotConnectedError,
)
from .protocols import constants, frames

if TYPE_CHECKING:
    from .channel import SocketChannel

logger = logging.getLogger(__name__)

StreamSink = Callable[[dict[str, Any]], Any | Awaitable[Any]]


@dataclass
class PendingRequest:
    """一条正在等待回复的命令。

    Attributes:
        request_id: 关联 ID。
        command: 出站命令标签 (仅用于日志)。
        expected_return_command: 期望的回复命令标签，None 表示不限制。
        future: 单次完成的结果句柄。
        streaming: 是否把中间帧转交给 sink。
        wait_for_final: 是否只接受带最终标记的帧。
        sink: 流式中间帧的接收者。
    """

    request_id: str
    command: str
    expected_return_command: Optional[str]
    future: asyncio.Future
    streaming: bool = False
    wait_for_final: bool = True
    sink: Optional[StreamSink] = None

    def matches(self, frame: dict[str, Any]) -> bool:
        """判断帧能否完成本请求。"""
        command = frame.get(constants.FIELD_COMMAND)
        if self.expected_return_command is not None and command != self.expected_return_command:
            return False
        return not self.wait_for_final or frames.is_final_frame(frame)


class CommandCorrelator:
    """在一条 SocketChannel 之上复用多个并发的逻辑请求。

    挂起请求表没有容量上限；唯一的批量取消路径是通道断开。
    """

    def __init__(self, name: str, default_timeout: Optional[float] = None) -> None:
        """
        Args:
            name: 日志中使用的名字 (如 "dm"、"group")。
            default_timeout: 未显式指定 timeout 时使用的超时，None 表示不超时。
        """
        self.name = name
        self.default_timeout = default_timeout
        self._channel: Optional["SocketChannel"] = None
        self._pending: dict[str, PendingRequest] = {}

    @property
    def channel(self) -> Optional["SocketChannel"]:
        return self._channel

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def attach(self, channel: "SocketChannel") -> None:
        """绑定到一条新通道。

        旧通道上仍未完成的请求会被拒绝，随后解除对旧通道的订阅。
        """
        if channel is self._channel:
            return

        self.detach()
        self._channel = channel
        channel.on("message", self._on_message)
        channel.on("disconnected", self._on_disconnected)
        logger.debug(f"[{self.name}] 已绑定通道 {channel!r}")

    def detach(self) -> None:
        """解除当前通道绑定，并拒绝所有挂起请求。"""
        old = self._channel
        if old is None:
            return

        old.off("message", self._on_message)
        old.off("disconnected", self._on_disconnected)
        self._channel = None
        self._fail_all("通道已被替换")

    async def send_command(
        self,
        command: str,
        payload: Any,
        *,
        origin_id: str = constants.DEFAULT_ORIGIN_ID,
        expected_return_command: Optional[str] = None,
        streaming: bool = False,
        wait_for_final: bool = True,
        sink: Optional[StreamSink] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """发送命令并等待匹配的回复帧。

        Args:
            command: 命令标签。
            payload: 命令负载。
            origin_id: 来源标识。
            expected_return_command: 期望的回复命令标签。
            streaming: 为 True 时把中间帧交给 sink。
            wait_for_final: 为 True 时只接受带最终标记的帧；
                为 False 时第一条匹配帧即完成请求。
            sink: 流式中间帧的接收者 (同步或异步函数)。
            timeout: 超时秒数，None 时使用 default_timeout。

        Returns:
            dict: 完成本请求的回复帧 (已解包)。

        Raises:
            NotConnectedError: 通道未连接，此时不会登记任何挂起请求。
            CorrelationLostError: 等待期间通道断开。
            CorrelationTimeoutError: 超时。
            CommandRejectedError: 服务器以错误帧回复。
        """
        channel = self._channel
        if channel is None or not channel.is_open:
            raise NotConnectedError(f"[{self.name}] 通道未连接，无法发送 {command}")

        request_id = frames.new_request_id()
        pending = PendingRequest(
            request_id=request_id,
            command=command,
            expected_return_command=expected_return_command,
            future=asyncio.get_running_loop().create_future(),
            streaming=streaming,
            wait_for_final=wait_for_final,
            sink=sink,
        )
        # 先登记再发送，回复可能早于 send 返回
        self._pending[request_id] = pending

        try:
            try:
                await channel.send(
                    frames.encode_command(command, origin_id, payload, request_id)
                )
            except Exception:
                if pending.future.done() and not pending.future.cancelled():
                    pending.future.exception()
                raise

            if timeout is None:
                timeout = self.default_timeout
            if timeout is None:
                return await pending.future

            try:
                return await asyncio.wait_for(pending.future, timeout=timeout)
            except asyncio.TimeoutError:
                raise CorrelationTimeoutError(
                    f"[{self.name}] 等待 {command} 的回复超时 ({timeout}s)", request_id
                ) from None
        finally:
            self._pending.pop(request_id, None)

    async def _on_message(self, raw: Any) -> None:
        """[Internal] 通道 message 事件：解析并匹配入站帧。"""
        try:
            frame = frames.extract_command_frame(frames.decode_frame(raw))
        except MalformedFrameError as e:
            logger.warning(f"[{self.name}] 丢弃无法解析的帧: {e}")
            return

        request_id = frame.get(constants.FIELD_REQUEST_ID)
        pending = self._pending.get(request_id) if request_id else None
        if pending is None or pending.future.done():
            logger.debug(f"[{self.name}] 未关联的帧: {frame.get(constants.FIELD_COMMAND)}")
            return

        if frame.get(constants.FIELD_COMMAND) == constants.CMD_ERROR:
            self._pending.pop(request_id, None)
            pending.future.set_exception(
                CommandRejectedError(
                    f"[{self.name}] 服务器拒绝了 {pending.command}: {frame.get('comment', frame)}",
                    request_id,
                    frame,
                )
            )
            return

        if pending.matches(frame):
            self._pending.pop(request_id, None)
            pending.future.set_result(frame)
            return

        if pending.streaming and pending.sink is not None:
            await self._deliver(pending, frame)

    async def _deliver(self, pending: PendingRequest, frame: dict[str, Any]) -> None:
        """[Internal] 把中间帧交给 sink，sink 的异常只记录不传播。"""
        assert pending.sink is not None
        try:
            result = pending.sink(frame)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"[{self.name}] 流式回调异常 ({pending.request_id}): {e}")

    def _on_disconnected(self) -> None:
        """[Internal] 通道 disconnected 事件。"""
        self._fail_all("等待回复期间通道断开")

    def _fail_all(self, reason: str) -> None:
        """[Internal] 以 CorrelationLostError 拒绝全部挂起请求。"""
        if not self._pending:
            return

        pending, self._pending = self._pending, {}
        logger.warning(f"[{self.name}] {reason}，拒绝 {len(pending)} 个挂起请求")
        for request in pending.values():
            if not request.future.done():
                request.future.set_exception(
                    CorrelationLostError(f"[{self.name}] {reason}", request.request_id)
                )
