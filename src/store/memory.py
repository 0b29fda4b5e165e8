"""In-memory conversation store.

Keeps conversations and messages in process memory. Suitable for
development and tests; nothing survives a restart.
"""

import asyncio
import itertools
import uuid
from typing import Union

from shared.errors import ConversationNotFoundError, InvalidInputError
from shared.logging import get_logger, mask_key
from shared.models import Conversation, Message, Role, utc_now
from store.base import DEFAULT_LIST_LIMIT, ConversationStore, clamp_limit

logger = get_logger(__name__)


def _require(owner_key: str, conversation_id: str) -> None:
    if not owner_key:
        raise InvalidInputError("owner key is required")
    if not conversation_id:
        raise InvalidInputError("conversation_id is required")


class InMemoryConversationStore(ConversationStore):
    """
    Conversation store backed by dictionaries.

    Responsibilities:
    - Create and retrieve conversations per owner
    - Append messages with monotonically increasing ids
    - Return recent history oldest-first
    """

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    def _owned(self, owner_key: str, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None or conversation.owner_key != owner_key:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def _ensure_locked(self, owner_key: str, conversation_id: str) -> Conversation:
        if conversation_id not in self._conversations:
            self._conversations[conversation_id] = Conversation(
                conversation_id=conversation_id,
                owner_key=owner_key
            )
            self._messages[conversation_id] = []
            logger.info(
                "Conversation created",
                conversation_id=conversation_id,
                owner=mask_key(owner_key)
            )
        return self._owned(owner_key, conversation_id)

    async def create_conversation(self, owner_key: str) -> Conversation:
        conversation_id = str(uuid.uuid4())
        _require(owner_key, conversation_id)
        async with self._lock:
            conversation = self._ensure_locked(owner_key, conversation_id)
            return conversation.model_copy()

    async def get_conversation(self, owner_key: str, conversation_id: str) -> Conversation:
        async with self._lock:
            return self._owned(owner_key, conversation_id).model_copy()

    async def ensure_conversation(self, owner_key: str, conversation_id: str) -> Conversation:
        _require(owner_key, conversation_id)
        async with self._lock:
            return self._ensure_locked(owner_key, conversation_id).model_copy()

    async def append_message(
        self,
        owner_key: str,
        conversation_id: str,
        role: Union[Role, str],
        content: str
    ) -> Message:
        _require(owner_key, conversation_id)
        async with self._lock:
            conversation = self._ensure_locked(owner_key, conversation_id)
            message = Message(
                id=next(self._ids),
                conversation_id=conversation_id,
                role=Role(role),
                content=content
            )
            self._messages[conversation_id].append(message)
            conversation.updated_at = message.created_at
            return message

    async def list_messages(
        self,
        owner_key: str,
        conversation_id: str,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> list[Message]:
        limit = clamp_limit(limit)
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None or conversation.owner_key != owner_key:
                return []
            return list(self._messages[conversation_id][-limit:])

    def get_stats(self) -> dict[str, int]:
        """Store statistics."""
        return {
            "total_conversations": len(self._conversations),
            "total_messages": sum(len(m) for m in self._messages.values()),
        }
