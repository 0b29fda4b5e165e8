"""Tests for the conversation stores."""

import pytest
import pytest_asyncio

from helpers import unreachable_sql_store
from shared.config import DatabaseSettings
from shared.errors import ConversationNotFoundError, InvalidInputError, PersistenceError
from shared.models import Role
from store import InMemoryConversationStore, SQLConversationStore, clamp_limit, create_store


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryConversationStore()
    else:
        backend = SQLConversationStore(f"sqlite+aiosqlite:///{tmp_path}/store.db")
    await backend.init()
    yield backend
    await backend.close()


class TestClampLimit:
    """Tests for page size normalisation."""

    def test_clamp(self):
        assert clamp_limit(0) == 20
        assert clamp_limit(-5) == 20
        assert clamp_limit(7) == 7
        assert clamp_limit(100) == 100
        assert clamp_limit(1000) == 100


class TestCreateStore:
    """Tests for store selection."""

    def test_memory_by_default(self):
        assert isinstance(create_store(DatabaseSettings(url=None)), InMemoryConversationStore)

    def test_sql_when_url_set(self, tmp_path):
        store = create_store(DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path}/x.db"))
        assert isinstance(store, SQLConversationStore)


class TestConversationStore:
    """Behaviour shared by every store backend."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        created = await store.create_conversation("key-a")

        fetched = await store.get_conversation("key-a", created.conversation_id)

        assert fetched.conversation_id == created.conversation_id
        assert fetched.owner_key == "key-a"
        assert fetched.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_foreign_conversation_is_not_found(self, store):
        created = await store.create_conversation("key-a")

        with pytest.raises(ConversationNotFoundError):
            await store.get_conversation("key-b", created.conversation_id)
        with pytest.raises(ConversationNotFoundError):
            await store.ensure_conversation("key-b", created.conversation_id)
        with pytest.raises(ConversationNotFoundError):
            await store.append_message("key-b", created.conversation_id, Role.USER, "hi")

    @pytest.mark.asyncio
    async def test_missing_conversation(self, store):
        with pytest.raises(ConversationNotFoundError):
            await store.get_conversation("key-a", "does-not-exist")

    @pytest.mark.asyncio
    async def test_ensure_creates_once(self, store):
        first = await store.ensure_conversation("key-a", "conv-1")
        second = await store.ensure_conversation("key-a", "conv-1")

        assert first.conversation_id == second.conversation_id == "conv-1"
        assert first.created_at == second.created_at

    @pytest.mark.asyncio
    async def test_ensure_requires_ids(self, store):
        with pytest.raises(InvalidInputError):
            await store.ensure_conversation("", "conv-1")
        with pytest.raises(InvalidInputError):
            await store.append_message("key-a", "", Role.USER, "hi")

    @pytest.mark.asyncio
    async def test_append_and_list(self, store):
        await store.append_message("key-a", "conv-1", Role.USER, "question")
        await store.append_message("key-a", "conv-1", "assistant", "answer")

        messages = await store.list_messages("key-a", "conv-1")

        assert [(m.role, m.content) for m in messages] == [
            (Role.USER, "question"),
            (Role.ASSISTANT, "answer"),
        ]
        assert messages[0].id < messages[1].id
        assert all(m.conversation_id == "conv-1" for m in messages)

    @pytest.mark.asyncio
    async def test_append_bumps_updated_at(self, store):
        created = await store.ensure_conversation("key-a", "conv-1")
        await store.append_message("key-a", "conv-1", Role.USER, "hi")

        fetched = await store.get_conversation("key-a", "conv-1")

        assert fetched.updated_at >= created.updated_at

    @pytest.mark.asyncio
    async def test_list_returns_most_recent_oldest_first(self, store):
        for i in range(5):
            await store.append_message("key-a", "conv-1", Role.USER, f"m{i}")

        messages = await store.list_messages("key-a", "conv-1", limit=3)

        assert [m.content for m in messages] == ["m2", "m3", "m4"]

    @pytest.mark.asyncio
    async def test_list_limit_defaults_when_not_positive(self, store):
        for i in range(25):
            await store.append_message("key-a", "conv-1", Role.USER, f"m{i}")

        assert len(await store.list_messages("key-a", "conv-1", limit=0)) == 20
        assert len(await store.list_messages("key-a", "conv-1", limit=500)) == 25

    @pytest.mark.asyncio
    async def test_list_foreign_or_missing_is_empty(self, store):
        await store.append_message("key-a", "conv-1", Role.USER, "private")

        assert await store.list_messages("key-b", "conv-1") == []
        assert await store.list_messages("key-a", "nope") == []

    @pytest.mark.asyncio
    async def test_conversations_are_isolated(self, store):
        await store.append_message("key-a", "conv-1", Role.USER, "one")
        await store.append_message("key-a", "conv-2", Role.USER, "two")

        assert [m.content for m in await store.list_messages("key-a", "conv-1")] == ["one"]
        assert [m.content for m in await store.list_messages("key-a", "conv-2")] == ["two"]

    @pytest.mark.asyncio
    async def test_owner_key_not_serialised(self, store):
        created = await store.create_conversation("secret-key")
        assert "secret-key" not in created.model_dump_json()


class TestSQLStoreUnavailable:
    """Connection failures surface as persistence errors."""

    @pytest.mark.asyncio
    async def test_refused_connection_is_a_persistence_error(self, tmp_path):
        store = unreachable_sql_store(tmp_path)

        with pytest.raises(PersistenceError, match="ensure_conversation failed"):
            await store.ensure_conversation("key-a", "conv-1")
        with pytest.raises(PersistenceError, match="list_messages failed"):
            await store.list_messages("key-a", "conv-1")
        with pytest.raises(PersistenceError, match="append_message failed"):
            await store.append_message("key-a", "conv-1", Role.USER, "hi")

        await store.close()
