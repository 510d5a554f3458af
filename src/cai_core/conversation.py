# src/cai_core/conversation.py
"""
CAI-Core - 私聊会话 (DM Conversation)

会话句柄只保存原始的 turn 字典，不做字段映射。
它满足登记表的要求: 稳定的 chat_id 与幂等的 refresh_messages()。
"""

import logging
import uuid
from typing import TYPE_CHECKING, Any, Optional

from .correlator import StreamSink
from .exceptions import APIError
from .protocols import constants

if TYPE_CHECKING:
    from .core import CharacterAI

logger = logging.getLogger(__name__)


class DMConversation:
    """与单个角色的私聊会话。"""

    def __init__(self, client: "CharacterAI", information: dict[str, Any]) -> None:
        self._client = client
        self.information = information
        self.chat_id: str = str(information["chat_id"])
        self.character_id: str = str(information.get("character_id", ""))
        self.turns: list[dict[str, Any]] = []

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} chat_id={self.chat_id} turns={len(self.turns)}>"

    async def refresh_messages(self) -> None:
        """重新拉取消息历史 (幂等)。

        Raises:
            APIError: 接口返回非 2xx。
        """
        response = await self._client.requester.request(
            f"{self._client.config.neo_api_url}turns/{self.chat_id}/",
            "GET",
            include_authorization=True,
        )
        if not response.is_success:
            raise APIError(f"刷新会话 {self.chat_id} 失败: {response.text}", response.status_code)

        self.turns = list(response.json().get("turns") or [])
        logger.debug(f"会话 {self.chat_id} 已刷新，共 {len(self.turns)} 条消息")

    async def send_message(
        self,
        content: str,
        *,
        sink: Optional[StreamSink] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """发送一条消息并等待角色的最终回复。

        Args:
            content: 消息文本。
            sink: 可选的流式回调，接收生成过程中的中间帧。
            timeout: 可选超时。

        Returns:
            dict: 带最终标记的回复帧。
        """
        profile = self._client.my_profile
        turn_id = str(uuid.uuid4())
        payload = {
            "character_id": self.character_id,
            "num_candidates": 1,
            "tts_enabled": False,
            "selected_language": "",
            "user_name": profile.username,
            "turn": {
                "author": {
                    "author_id": str(profile.user_id),
                    "is_human": True,
                    "name": profile.username,
                },
                "candidates": [{"candidate_id": turn_id, "raw_content": content}],
                "primary_candidate_id": turn_id,
                "turn_key": {"chat_id": self.chat_id, "turn_id": turn_id},
            },
        }

        reply = await self._client.send_dm_command(
            constants.CMD_CREATE_AND_GENERATE_TURN,
            payload,
            expected_return_command=constants.CMD_ADD_TURN,
            streaming=sink is not None,
            wait_for_ai_response=True,
            sink=sink,
            conversation=self,
            timeout=timeout,
        )
        if isinstance(reply.get("turn"), dict):
            self.turns.insert(0, reply["turn"])
        return reply
