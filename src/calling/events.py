"""Custom events carried inside the calling platform's message envelope."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

LOGGER = logging.getLogger(__name__)

EXTEND_CALL_DURATION = "extend_call_duration"


class ExtensionEvent(BaseModel):
    """Announces that one participant paid to extend the call."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Literal["extend_call_duration"] = EXTEND_CALL_DURATION
    extended_duration_seconds: int = Field(alias="extendedDurationSeconds", gt=0)
    extended_by: str = Field(alias="extendedBy")
    extended_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        alias="extendedAt",
    )

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def parse_custom_event(payload: Any) -> ExtensionEvent | None:
    """Return the extension event in ``payload``; anything else yields None.

    Unknown event types are ignored so newer peers can add their own.
    """

    if not isinstance(payload, dict):
        return None
    body = payload.get("custom") if isinstance(payload.get("custom"), dict) else payload
    if body.get("type") != EXTEND_CALL_DURATION:
        return None
    try:
        return ExtensionEvent.model_validate(body)
    except ValidationError as exc:
        LOGGER.warning("Ignoring malformed extension event: %s", exc)
        return None
