# src/cai_core/network.py
"""
CAI-Core - 网络模块 (Network) [HTTP]

封装 httpx.AsyncClient 的请求逻辑与认证头注入。
该模块屏蔽了底层传输异常，向上层提供统一的 NetworkError。
"""

import logging
from typing import Any, Optional

import httpx

from .config import CAIConfig
from .exceptions import NetworkError
from .protocols import constants

logger = logging.getLogger(__name__)


class Requester:
    """
    封装 httpx 异步请求的客户端。
    """

    def __init__(self, config: CAIConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._token = config.session_token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=config.http_timeout,
            headers={"User-Agent": config.user_agent},
        )

    @property
    def token(self) -> str:
        return self._token

    def update_token(self, token: str) -> None:
        """更新用于 Authorization 头的会话令牌。"""
        self._token = token

    async def request(
        self,
        url: str,
        method: str = "GET",
        *,
        include_authorization: bool = False,
        json: Any = None,
    ) -> httpx.Response:
        """
        发送一次 HTTP 请求。

        非 2xx 状态码不会抛出异常，由调用方根据业务判断。

        Raises:
            NetworkError: 传输层失败 (超时、DNS、连接被拒等)。
        """
        headers = {}
        if include_authorization:
            headers["Authorization"] = f"{constants.TOKEN_PREFIX}{self._token}"

        try:
            response = await self._client.request(method, url, headers=headers, json=json)
        except httpx.HTTPError as e:
            raise NetworkError(f"请求失败 {method} {url}: {e}") from e

        logger.debug(f"{method} {url} -> {response.status_code}")
        return response

    async def close(self) -> None:
        """关闭内部创建的 httpx 客户端"""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
