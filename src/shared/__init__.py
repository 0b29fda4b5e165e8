"""Shared utilities and base classes for the campaign chat agent."""

from shared.models import (
    Attachment,
    ChatRequest,
    ChatResponse,
    ChatData,
    Step,
    Conversation,
    Message,
    CallContext,
)
from shared.config import Settings, get_settings
from shared.errors import AgentError, ErrorKind
from shared.logging import get_logger, setup_logging

__all__ = [
    "Attachment",
    "ChatRequest",
    "ChatResponse",
    "ChatData",
    "Step",
    "Conversation",
    "Message",
    "CallContext",
    "Settings",
    "get_settings",
    "AgentError",
    "ErrorKind",
    "get_logger",
    "setup_logging",
]
