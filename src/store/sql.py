"""SQL conversation store using SQLAlchemy's async ORM.

Supports PostgreSQL (production, via asyncpg) and SQLite (tests, via
aiosqlite). Tables are created on ``init()``.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional, Union

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, String, Text, select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.errors import ConversationNotFoundError, InvalidInputError, PersistenceError
from shared.logging import get_logger, mask_key
from shared.models import Conversation, Message, Role, utc_now
from store.base import DEFAULT_LIST_LIMIT, ConversationStore, clamp_limit

logger = get_logger(__name__)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""
    pass


class ConversationRecord(Base):
    """Conversation registry row."""
    __tablename__ = "chat_conversations"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner_key: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )


class MessageRecord(Base):
    """One persisted message. The autoincrement id is the ordering key."""
    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    conversation_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("chat_conversations.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )


def _aware(value: datetime) -> datetime:
    # SQLite drops the offset on the way back
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_conversation(record: ConversationRecord) -> Conversation:
    return Conversation(
        conversation_id=record.id,
        owner_key=record.owner_key,
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
    )


def _to_message(record: MessageRecord) -> Message:
    return Message(
        id=record.id,
        conversation_id=record.conversation_id,
        role=Role(record.role),
        content=record.content,
        created_at=_aware(record.created_at),
    )


class SQLConversationStore(ConversationStore):
    """Conversation store persisted through SQLAlchemy."""

    def __init__(self, url: str, echo: bool = False) -> None:
        connect_args: dict[str, Any] = {}
        if url.startswith("sqlite"):
            connect_args["check_same_thread"] = False

        self._engine = create_async_engine(url, echo=echo, connect_args=connect_args)
        self._sessions = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        self._display_url = url.split("@")[-1] if "@" in url else url

    @retry(
        retry=retry_if_exception_type((OperationalError, OSError)),
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        reraise=True
    )
    async def _create_tables(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def init(self) -> None:
        """Create tables, retrying while the database is still coming up."""
        logger.info("Initializing conversation store", database=self._display_url)
        try:
            await self._create_tables()
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"database initialization failed: {e}") from e
        logger.info("Conversation store initialized")

    async def close(self) -> None:
        await self._engine.dispose()
        logger.info("Database connection closed")

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            logger.error("Conversation store operation failed", operation=operation, error=str(e))
            raise PersistenceError(f"{operation} failed: {e}") from e

    async def _ensure(
        self,
        session: AsyncSession,
        owner_key: str,
        conversation_id: str
    ) -> ConversationRecord:
        record: Optional[ConversationRecord] = await session.get(ConversationRecord, conversation_id)
        if record is None:
            record = ConversationRecord(id=conversation_id, owner_key=owner_key)
            session.add(record)
            try:
                await session.commit()
                logger.info(
                    "Conversation created",
                    conversation_id=conversation_id,
                    owner=mask_key(owner_key)
                )
            except IntegrityError:
                # Concurrent creator won; use its row
                await session.rollback()
                record = await session.get(ConversationRecord, conversation_id)

        if record is None or record.owner_key != owner_key:
            raise ConversationNotFoundError(conversation_id)
        return record

    async def create_conversation(self, owner_key: str) -> Conversation:
        if not owner_key:
            raise InvalidInputError("owner key is required")
        async with self._session("create_conversation") as session:
            record = await self._ensure(session, owner_key, str(uuid.uuid4()))
            return _to_conversation(record)

    async def get_conversation(self, owner_key: str, conversation_id: str) -> Conversation:
        async with self._session("get_conversation") as session:
            record = await session.get(ConversationRecord, conversation_id)
            if record is None or record.owner_key != owner_key:
                raise ConversationNotFoundError(conversation_id)
            return _to_conversation(record)

    async def ensure_conversation(self, owner_key: str, conversation_id: str) -> Conversation:
        if not owner_key or not conversation_id:
            raise InvalidInputError("owner key and conversation_id are required")
        async with self._session("ensure_conversation") as session:
            record = await self._ensure(session, owner_key, conversation_id)
            return _to_conversation(record)

    async def append_message(
        self,
        owner_key: str,
        conversation_id: str,
        role: Union[Role, str],
        content: str
    ) -> Message:
        if not owner_key or not conversation_id:
            raise InvalidInputError("owner key and conversation_id are required")
        role = Role(role)
        async with self._session("append_message") as session:
            conversation = await self._ensure(session, owner_key, conversation_id)
            now = utc_now()
            record = MessageRecord(
                conversation_id=conversation_id,
                role=role.value,
                content=content,
                created_at=now,
            )
            session.add(record)
            conversation.updated_at = now
            await session.commit()
            return _to_message(record)

    async def list_messages(
        self,
        owner_key: str,
        conversation_id: str,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> list[Message]:
        limit = clamp_limit(limit)
        async with self._session("list_messages") as session:
            conversation = await session.get(ConversationRecord, conversation_id)
            if conversation is None or conversation.owner_key != owner_key:
                return []
            stmt = (
                select(MessageRecord)
                .where(MessageRecord.conversation_id == conversation_id)
                .order_by(MessageRecord.id.desc())
                .limit(limit)
            )
            rows = (await session.scalars(stmt)).all()
            return [_to_message(row) for row in reversed(rows)]
