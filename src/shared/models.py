"""Core data models for the agent service.

This module defines the request/response shapes, the conversation records
kept by the store, and the in-memory turn structures exchanged between the
orchestration engine, the model client and the tool gateway client.
"""

import base64
import binascii
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Message roles understood by the model endpoint and the store."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


TEXT_CONTENT_TYPES = ("text/", "application/json", "application/xml", "application/csv")


class Attachment(BaseModel):
    """A file sent alongside a chat message."""
    file_name: str = Field(default="upload")
    content_type: str = Field(default="application/octet-stream")
    base64: str = Field(..., description="Standard base64-encoded file content")

    @field_validator("file_name", "content_type", mode="before")
    @classmethod
    def strip_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("file_name")
    @classmethod
    def default_file_name(cls, value: str) -> str:
        return value or "upload"

    @field_validator("content_type")
    @classmethod
    def default_content_type(cls, value: str) -> str:
        return value or "application/octet-stream"

    @field_validator("base64")
    @classmethod
    def check_base64(cls, value: str) -> str:
        value = value.strip()
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"attachment content is not valid base64: {e}")
        return value

    def content(self) -> bytes:
        """Decoded file bytes."""
        return base64.b64decode(self.base64)

    @property
    def size(self) -> int:
        return len(self.content())

    @property
    def is_text(self) -> bool:
        return self.content_type.lower().startswith(TEXT_CONTENT_TYPES)


class ChatRequest(BaseModel):
    """One inbound turn request."""
    message: str = Field(..., min_length=1, description="User message")
    conversation_id: Optional[str] = Field(
        default=None,
        description="Conversation to continue; absent means no history and no persistence"
    )
    attachments: list[Attachment] = Field(default_factory=list)

    @field_validator("message", mode="before")
    @classmethod
    def strip_message(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("conversation_id", mode="before")
    @classmethod
    def blank_conversation_is_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value


class PosterImpression(BaseModel):
    """Impressions of a single poster within a campaign."""
    poster_id: str
    poster_name: str = ""
    impressions: int = 0
    play_time: Optional[int] = None


class CampaignImpressions(BaseModel):
    """Impression totals and per-poster breakdown for one campaign."""
    campaign_id: str
    impressions: int
    posters: list[PosterImpression] = Field(default_factory=list)


class ChatData(BaseModel):
    """Structured payload extracted from tool results."""
    campaign_impressions: Optional[CampaignImpressions] = None


class Step(BaseModel):
    """Outcome of one tool invocation (or synthetic event) within a turn."""
    model_config = ConfigDict(frozen=True)

    tool: str
    campaign_id: Optional[str] = None
    status: int
    error: Optional[str] = None
    body: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return 200 <= self.status < 300 and self.error is None


class ChatResponse(BaseModel):
    """Final result of one turn. Immutable once constructed."""
    model_config = ConfigDict(frozen=True)

    answer: str
    data: Optional[ChatData] = None
    steps: tuple[Step, ...] = ()

    def to_wire(self) -> dict[str, Any]:
        """JSON-ready form: absent data and empty steps are omitted."""
        payload = self.model_dump(mode="json", exclude_none=True)
        if not self.steps:
            payload.pop("steps", None)
        return payload


class Conversation(BaseModel):
    """Conversation registry entry, scoped to exactly one owner key."""
    conversation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_key: str = Field(..., exclude=True)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Message(BaseModel):
    """A persisted conversation message."""
    model_config = ConfigDict(frozen=True)

    id: int
    conversation_id: str
    role: Role
    content: str
    created_at: datetime = Field(default_factory=utc_now)


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""
    id: str
    name: str
    arguments: str = Field(default="{}", description="Raw JSON arguments as produced by the model")


class ChatMessage(BaseModel):
    """One entry of the working message list sent to the model."""
    role: Role
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_call_id: Optional[str] = None


class ModelReply(BaseModel):
    """What the model returned for one round."""
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    finish_reason: str = "stop"

    @property
    def is_final(self) -> bool:
        return not self.tool_calls


class TokenEvent(BaseModel):
    """A partial chunk of answer text."""
    text: str


class FinalEvent(BaseModel):
    """Terminal event of a streamed turn."""
    response: ChatResponse


StreamEvent = Union[TokenEvent, FinalEvent]


class CallContext(BaseModel):
    """Explicit per-call context passed from the caller into the engine."""
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    caller_key: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
