"""Post-call report/ban check."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from backend.client import BackendClient
from backend.errors import OrchestratorError
from backend.schemas import ModerationStatus

LOGGER = logging.getLogger(__name__)


class ModerationAction(str, Enum):
    NONE = "none"
    WARN = "warn"
    BLOCK = "block"


@dataclass(frozen=True)
class ModerationDecision:
    action: ModerationAction
    # Report count the backend returned; the caller stores it for next time.
    observed_report_count: int | None = None
    report_count: int | None = None
    ban_expires_at: datetime | None = None
    weekly_ban_count: int = 0


def decide(status: ModerationStatus, last_report_count: int, warning_limit: int = 3) -> ModerationDecision:
    """Apply the decision table to a freshly fetched status.

    The endpoint is stateless, so a warning is only raised when the report
    count went up since ``last_report_count``.
    """

    if status.is_banned:
        return ModerationDecision(
            action=ModerationAction.BLOCK,
            observed_report_count=status.report_count,
            ban_expires_at=status.ban_expires_at,
            weekly_ban_count=status.weekly_ban_count,
        )
    if 0 < status.report_count < warning_limit and status.report_count > last_report_count:
        return ModerationDecision(
            action=ModerationAction.WARN,
            observed_report_count=status.report_count,
            report_count=status.report_count,
        )
    return ModerationDecision(action=ModerationAction.NONE, observed_report_count=status.report_count)


class ModerationGate:
    def __init__(self, backend: BackendClient, *, warning_limit: int = 3) -> None:
        self._backend = backend
        self._warning_limit = warning_limit

    async def check_after_call(self, last_report_count: int) -> ModerationDecision:
        try:
            status = await self._backend.ban_status()
        except OrchestratorError as exc:
            LOGGER.warning("Ban status check failed: %s", exc.detail)
            return ModerationDecision(action=ModerationAction.NONE)
        LOGGER.info(
            "Ban status: banned=%s reports=%s weekly_bans=%s",
            status.is_banned,
            status.report_count,
            status.weekly_ban_count,
        )
        return decide(status, last_report_count, self._warning_limit)
