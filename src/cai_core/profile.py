# src/cai_core/profile.py
"""
CAI-Core - 个人资料 (Private Profile)

为通道提供当前用户的身份 (用户名、用户 ID)。
"""

import logging
from typing import TYPE_CHECKING, Any

from .exceptions import APIError
from .state import CheckAndThrow

if TYPE_CHECKING:
    from .core import CharacterAI

logger = logging.getLogger(__name__)


class PrivateProfile:
    """当前登录用户的资料。"""

    def __init__(self, client: "CharacterAI") -> None:
        self._client = client
        self.username = ""
        self.user_id: int | str = 0
        self.information: dict[str, Any] = {}

    async def refresh_profile(self) -> None:
        """从 plus 接口重新拉取用户信息。

        Raises:
            StateError: 未认证。
            APIError: 接口返回非 2xx。
        """
        self._client.check_and_throw(CheckAndThrow.REQUIRES_AUTHENTICATION)

        response = await self._client.requester.request(
            f"{self._client.config.plus_api_url}chat/user/",
            "GET",
            include_authorization=True,
        )
        if not response.is_success:
            raise APIError(f"获取个人资料失败: {response.text}", response.status_code)

        self.load_from_information((response.json().get("user") or {}).get("user"))

    def load_from_information(self, information: dict[str, Any] | None) -> None:
        """合并用户信息。外层与内层嵌套的 user 字段都会被读取。"""
        if not information:
            return

        merged = dict(information)
        nested = merged.pop("user", None)
        if isinstance(nested, dict):
            merged.update(nested)

        self.information = merged
        self.username = str(merged.get("username", self.username))
        self.user_id = merged.get("id", self.user_id)
        logger.debug(f"个人资料已更新: {self.username} ({self.user_id})")
