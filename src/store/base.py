"""Conversation store interface.

Every operation is scoped by the caller's owner key. A conversation owned by
another key is indistinguishable from one that does not exist.
"""

from abc import ABC, abstractmethod
from typing import Union

from shared.models import Conversation, Message, Role

DEFAULT_LIST_LIMIT = 20
MAX_LIST_LIMIT = 100


def clamp_limit(limit: int) -> int:
    """Normalise a page size: non-positive means the default, large values are capped."""
    if limit <= 0:
        return DEFAULT_LIST_LIMIT
    return min(limit, MAX_LIST_LIMIT)


class ConversationStore(ABC):
    """
    Persistence for conversations and their messages.

    Implementations raise ``PersistenceError`` when the backing storage fails
    and ``ConversationNotFoundError`` for missing or foreign conversations.
    """

    async def init(self) -> None:
        """Prepare the backing storage. No-op unless overridden."""
        return None

    @abstractmethod
    async def create_conversation(self, owner_key: str) -> Conversation:
        """Create a conversation with a fresh identifier."""

    @abstractmethod
    async def get_conversation(self, owner_key: str, conversation_id: str) -> Conversation:
        """Fetch a conversation owned by ``owner_key``."""

    @abstractmethod
    async def ensure_conversation(self, owner_key: str, conversation_id: str) -> Conversation:
        """Return the conversation, creating it under ``owner_key`` when absent."""

    @abstractmethod
    async def append_message(
        self,
        owner_key: str,
        conversation_id: str,
        role: Union[Role, str],
        content: str
    ) -> Message:
        """Append a message, creating the conversation when absent."""

    @abstractmethod
    async def list_messages(
        self,
        owner_key: str,
        conversation_id: str,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> list[Message]:
        """The most recent ``limit`` messages, oldest first."""

    async def close(self) -> None:
        """Release resources held by the store."""
        return None
