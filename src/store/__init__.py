"""Conversation persistence.

In-memory and SQL implementations behind one ``ConversationStore``
interface. ``create_store`` picks one from configuration.
"""

from shared.config import DatabaseSettings
from store.base import ConversationStore, clamp_limit
from store.memory import InMemoryConversationStore
from store.sql import SQLConversationStore


def create_store(settings: DatabaseSettings) -> ConversationStore:
    """Build the configured store; no database URL means in-memory."""
    if settings.url:
        return SQLConversationStore(settings.url, echo=settings.echo)
    return InMemoryConversationStore()


__all__ = [
    "ConversationStore",
    "InMemoryConversationStore",
    "SQLConversationStore",
    "clamp_limit",
    "create_store",
]
