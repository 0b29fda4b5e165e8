"""Error kinds and exception hierarchy for the agent service.

Every exception carries an ``ErrorKind`` and an HTTP-style status so the
API layer can render a structured ``{"error": kind, "message": ...}`` body
without inspecting exception types.

Only ``InvalidInputError``, ``UnauthorizedError``/``ForbiddenError``,
``NotFoundError`` and ``UpstreamUnavailableError`` abort a turn. The rest are
absorbed into the step trace by the orchestration engine.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Machine-readable error categories exposed to callers."""
    INVALID_INPUT = "invalid_input"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    TOOL_EXECUTION_FAILED = "tool_execution_failed"
    PERSISTENCE_DEGRADED = "persistence_degraded"
    ROUND_LIMIT_EXCEEDED = "round_limit_exceeded"
    INTERNAL_ERROR = "internal_error"


class AgentError(Exception):
    """Base exception for all agent service errors."""
    kind: ErrorKind = ErrorKind.INTERNAL_ERROR
    status_code: int = 500

    def __init__(self, message: str = "", *, kind: Optional[ErrorKind] = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    def to_dict(self) -> dict[str, str]:
        """Render as the structured error body returned to callers."""
        body = {"error": self.kind.value}
        if self.message:
            body["message"] = self.message
        return body


class ConfigurationError(AgentError):
    """Settings are missing or inconsistent."""
    pass


class InvalidInputError(AgentError):
    """Request rejected before the core runs."""
    kind = ErrorKind.INVALID_INPUT
    status_code = 400


class UnauthorizedError(AgentError):
    """Caller did not present credentials."""
    kind = ErrorKind.UNAUTHORIZED
    status_code = 401


class ForbiddenError(AgentError):
    """Caller presented credentials that are not accepted."""
    kind = ErrorKind.FORBIDDEN
    status_code = 403


class NotFoundError(AgentError):
    """A requested resource does not exist for this caller."""
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class ConversationNotFoundError(NotFoundError):
    """Conversation is missing or owned by a different caller key."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation '{conversation_id}' not found")
        self.conversation_id = conversation_id


class UpstreamUnavailableError(AgentError):
    """The model endpoint could not produce any answer for the turn."""
    kind = ErrorKind.UPSTREAM_UNAVAILABLE
    status_code = 502


class TurnTimeoutError(UpstreamUnavailableError):
    """The whole-turn deadline elapsed."""
    status_code = 504


class ModelError(AgentError):
    """Base exception for model endpoint failures."""
    kind = ErrorKind.UPSTREAM_UNAVAILABLE
    status_code = 502
    upstream_status: int = 0


class ModelTransportError(ModelError):
    """Network failure or timeout talking to the model endpoint."""
    pass


class ModelStatusError(ModelError):
    """Model endpoint answered with a non-success status."""

    def __init__(self, message: str, upstream_status: int) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status


class ModelResponseError(ModelError):
    """Model endpoint answered with a body we cannot interpret."""
    pass


class ToolExecutionError(AgentError):
    """Base exception for tool calls rejected before reaching the gateway."""
    kind = ErrorKind.TOOL_EXECUTION_FAILED
    status_code = 400


class UnknownToolError(ToolExecutionError):
    """Tool name is not part of the static catalog."""
    status_code = 404

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Unknown tool '{tool_name}'")
        self.tool_name = tool_name


class ToolArgumentsError(ToolExecutionError):
    """Tool arguments do not match the tool's schema."""
    status_code = 422

    def __init__(self, tool_name: str, errors: list[str]) -> None:
        super().__init__(f"Invalid arguments for '{tool_name}': {'; '.join(errors)}")
        self.tool_name = tool_name
        self.errors = errors


class PersistenceError(AgentError):
    """Conversation store read or write failed."""
    kind = ErrorKind.PERSISTENCE_DEGRADED
    status_code = 503
