"""Response assembly for a finished turn.

Turns the closing model message and the step trace into the caller-facing
``ChatResponse``. Structured data is extracted from tool bodies only when a
known shape is recognized; anything else stays as raw text in the trace.
"""

import json
from typing import Any, Optional

from pydantic import ValidationError

from shared.logging import get_logger
from shared.models import CampaignImpressions, ChatData, ChatResponse, Step

logger = get_logger(__name__)

FALLBACK_ANSWER = "I wasn't able to produce an answer for this request."


def _parse_impressions(body: Optional[str]) -> Optional[CampaignImpressions]:
    """Recognize a campaign impressions body, bare or wrapped in ``data``."""
    if not body:
        return None
    try:
        payload: Any = json.loads(body)
    except ValueError:
        return None

    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        payload = payload["data"]
    if not isinstance(payload, dict):
        return None
    if "campaign_id" not in payload or "impressions" not in payload:
        return None

    try:
        return CampaignImpressions.model_validate(payload)
    except ValidationError:
        return None


class ResponseAssembler:
    """Builds the final response of a turn. Pure: never raises, never mutates steps."""

    def __init__(self, fallback_answer: str = FALLBACK_ANSWER) -> None:
        self.fallback_answer = fallback_answer

    def compose_answer(self, final_message: Optional[str]) -> str:
        """Answer text for the closing model message."""
        text = (final_message or "").strip()
        return text or self.fallback_answer

    def extract_data(self, steps: list[Step]) -> Optional[ChatData]:
        """Structured data from successful steps; the last recognized step wins."""
        found: Optional[CampaignImpressions] = None
        for step in steps:
            if not step.succeeded:
                continue
            impressions = _parse_impressions(step.body)
            if impressions is not None:
                found = impressions
        if found is None:
            return None
        return ChatData(campaign_impressions=found)

    def assemble(self, final_message: Optional[str], steps: list[Step]) -> ChatResponse:
        """
        Build the response for a turn.

        Args:
            final_message: Closing assistant text (may be empty)
            steps: Execution trace in order

        Returns:
            Immutable response carrying the answer, optional data and the trace
        """
        data = self.extract_data(steps)
        if data is not None:
            logger.debug(
                "Structured data extracted",
                campaign_id=data.campaign_impressions.campaign_id
            )
        return ChatResponse(
            answer=self.compose_answer(final_message),
            data=data,
            steps=tuple(steps)
        )
