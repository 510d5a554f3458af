# src/cai_core/registry.py
"""
CAI-Core - 活跃会话登记表 (Active-Conversation Registry)

记录本次会话中发出过命令的会话，重连后由 Supervisor 逐个刷新其消息。
条目不会被主动移除，生命周期等于会话生命周期。
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class ConversationHandle(Protocol):
    """登记表对会话对象的最小要求。"""

    chat_id: str

    async def refresh_messages(self) -> None: ...


class ActiveConversationRegistry:
    """chat_id -> 会话句柄 的映射，只需要 upsert 语义。"""

    def __init__(self) -> None:
        self._conversations: dict[str, ConversationHandle] = {}

    def mark(self, conversation: ConversationHandle) -> None:
        """登记或更新一个会话 (幂等)。"""
        self._conversations[conversation.chat_id] = conversation

    def get(self, chat_id: str) -> ConversationHandle | None:
        return self._conversations.get(chat_id)

    def all(self) -> list[ConversationHandle]:
        """返回当前所有会话句柄的快照，顺序无意义。"""
        return list(self._conversations.values())

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, chat_id: object) -> bool:
        return chat_id in self._conversations
