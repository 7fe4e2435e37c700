"""User-visible notices emitted by the orchestrator."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

LOGGER = logging.getLogger(__name__)


class NoticeKind(str, Enum):
    NO_MATCH = "no_match"
    QUEUE_ERROR = "queue_error"
    BANNED = "banned"
    CONNECTION_ERROR = "connection_error"
    PARTNER_LEFT = "partner_left"
    TIME_UP = "time_up"
    ONE_MINUTE_WARNING = "one_minute_warning"
    CALL_EXTENDED = "call_extended"
    PARTNER_EXTENDED = "partner_extended"
    EXTENSION_FAILED = "extension_failed"
    EARLY_EXIT_PENALTY = "early_exit_penalty"
    REPORT_WARNING = "report_warning"
    REPORT_SUBMITTED = "report_submitted"
    REPORT_RATE_LIMITED = "report_rate_limited"
    REPORT_FAILED = "report_failed"


@dataclass(frozen=True)
class Notice:
    kind: NoticeKind
    title: str
    message: str
    # Blocking notices stay up until the user acknowledges them.
    blocking: bool = False
    expires_at: datetime | None = None
    visible_seconds: float = 3.0


class Notifier(Protocol):
    def notify(self, notice: Notice) -> None:  # pragma: no cover - protocol stub
        ...


class LoggingNotifier:
    """Default notifier that writes notices to the log."""

    def notify(self, notice: Notice) -> None:
        level = logging.WARNING if notice.blocking else logging.INFO
        LOGGER.log(level, "[%s] %s: %s", notice.kind.value, notice.title, notice.message)


def format_countdown(expires_at: datetime, now: datetime | None = None) -> str:
    """Render the remaining ban time as ``"2d 3h"``, ``"3h 12m"`` or ``"4m 10s"``."""

    now = now or datetime.now(timezone.utc)
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    remaining = max(0, int((expires_at - now).total_seconds()))
    days, rest = divmod(remaining, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, seconds = divmod(rest, 60)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m {seconds}s"


def no_match_notice() -> Notice:
    return Notice(
        kind=NoticeKind.NO_MATCH,
        title="No match",
        message="Could not find a match. Please try again later.",
        visible_seconds=4.0,
    )


def queue_error_notice(detail: str) -> Notice:
    return Notice(kind=NoticeKind.QUEUE_ERROR, title="Error", message=detail)


def ban_notice(
    expires_at: datetime | None,
    *,
    weekly_ban_count: int = 0,
    detail: str | None = None,
    now: datetime | None = None,
) -> Notice:
    if detail:
        message = detail
    elif expires_at is not None:
        message = f"You can join calls again in {format_countdown(expires_at, now)}."
    else:
        message = "You are temporarily banned from calls."
    if weekly_ban_count > 1:
        message += f" This is ban number {weekly_ban_count} this week."
    return Notice(
        kind=NoticeKind.BANNED,
        title="Temporarily Banned",
        message=message,
        blocking=True,
        expires_at=expires_at,
        visible_seconds=6.0,
    )


def report_warning_notice(report_count: int, limit: int) -> Notice:
    remaining = limit - report_count
    if remaining == 1:
        message = (
            f"You have been reported {report_count} times. "
            "One more report will result in a temporary ban."
        )
    else:
        message = "You have been reported by another user. Please keep conversations respectful."
    return Notice(
        kind=NoticeKind.REPORT_WARNING,
        title="Warning",
        message=message,
        visible_seconds=5.0,
    )


def early_exit_notice(cost: int = 1) -> Notice:
    return Notice(
        kind=NoticeKind.EARLY_EXIT_PENALTY,
        title="Early Exit Penalty",
        message=f"{cost} coin deducted for ending call before 1 minute",
        visible_seconds=5.0,
    )
