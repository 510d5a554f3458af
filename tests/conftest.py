# tests/conftest.py
import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest
from websockets.exceptions import ConnectionClosedOK

# 确保 src 目录在 sys.path 中
src_path = Path(__file__).resolve().parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from cai_core.channel import SocketChannel
from cai_core.config import CAIConfig
from cai_core.network import Requester


class FakeWebSocket:
    """内存中的 WebSocket 替身。

    - send() 记录出站帧；收到握手帧时按配置自动回复确认或拒绝。
    - feed() 注入入站帧，drop() 模拟连接意外断开。
    """

    def __init__(self, auto_ack: bool = True, reject_handshake: bool = False):
        self.auto_ack = auto_ack
        self.reject_handshake = reject_handshake
        self.sent: list[str] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(data)

        try:
            frame = json.loads(data)
        except ValueError:
            return
        if isinstance(frame, dict) and "connect" in frame and self.auto_ack:
            if self.reject_handshake:
                self.feed({"id": frame["id"], "error": {"code": 3501, "message": "bad request"}})
            else:
                self.feed({"id": frame["id"], "connect": {"client": "fake", "version": "0"}})

    def feed(self, frame) -> None:
        self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self) -> None:
        self._inbox.put_nowait(None)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)

    def sent_frames(self) -> list:
        return [json.loads(s) for s in self.sent]

    def commands(self) -> list[dict]:
        return [f for f in self.sent_frames() if isinstance(f, dict) and "request_id" in f]

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is None:
            self.closed = True
            raise StopAsyncIteration
        return item


class SocketRecorder:
    """记录每次连接创建的 FakeWebSocket，供测试断言。"""

    def __init__(self):
        self.created: list[tuple[str, dict, FakeWebSocket]] = []
        self.fail_urls: set[str] = set()
        self.auto_ack = True
        self.reject_handshake = False

    async def connect(self, url: str, **kwargs) -> FakeWebSocket:
        if url in self.fail_urls:
            raise OSError(f"connection refused: {url}")
        ws = FakeWebSocket(auto_ack=self.auto_ack, reject_handshake=self.reject_handshake)
        self.created.append((url, kwargs, ws))
        return ws

    def sockets_for(self, url: str) -> list[FakeWebSocket]:
        return [ws for u, _, ws in self.created if u == url]

    def latest(self, url: str) -> FakeWebSocket:
        return self.sockets_for(url)[-1]


class FakeServer:
    """httpx.MockTransport 的路由表：(method, path) -> Response 或可调用对象。"""

    def __init__(self):
        self.routes: dict[tuple[str, str], object] = {}
        self.requests: list[httpx.Request] = []

    def route(self, method: str, path: str, response) -> None:
        self.routes[(method, path)] = response

    def count(self, method: str, path: str) -> int:
        return sum(1 for r in self.requests if r.method == method and r.url.path == path)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        target = self.routes.get((request.method, request.url.path))
        if target is None:
            return httpx.Response(404, json={"error": "not found"})
        if callable(target):
            return target(request)
        return target


@pytest.fixture
def config():
    """[Fixture] 指向测试地址的配置对象。"""
    return CAIConfig(
        base_url="https://cai.test/",
        neo_api_url="https://neo.cai.test/",
        plus_api_url="https://plus.cai.test/",
        dm_websocket_url="wss://neo.cai.test/ws/",
        group_chat_websocket_url="wss://neo.cai.test/connection/websocket",
        handshake_timeout=1.0,
    )


@pytest.fixture
def sockets():
    return SocketRecorder()


@pytest.fixture
def channel_factory(sockets):
    """[Fixture] 与 Supervisor 默认工厂同签名，但使用 FakeWebSocket。"""

    def _factory(url, *, name, authorization, edge_rollout, user_id):
        return SocketChannel(
            url,
            authorization=authorization,
            edge_rollout=edge_rollout,
            user_id=user_id,
            name=name,
            handshake_timeout=1.0,
            connect=sockets.connect,
        )

    return _factory


@pytest.fixture
def server():
    """[Fixture] 预置了 edge_rollout Cookie 的假 HTTP 服务端。"""
    fake = FakeServer()
    fake.route(
        "GET",
        "/",
        httpx.Response(200, headers={"set-cookie": "edge_rollout=42; Path=/; Secure"}),
    )
    return fake


@pytest.fixture
def requester(config, server):
    client = httpx.AsyncClient(transport=httpx.MockTransport(server.handle))
    return Requester(config, client=client)


@pytest.fixture
def wait_until():
    """[Fixture] 轮询直到条件成立，超时则测试失败。"""

    async def _wait(predicate, timeout: float = 1.0) -> None:
        async def _poll():
            while not predicate():
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_poll(), timeout)

    return _wait
