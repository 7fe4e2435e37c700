"""Pydantic models for backend responses."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

QueueStatus = Literal["waiting", "matched", "not_in_queue"]


class BackendModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Envelope(BackendModel):
    """Common `{success, data, message}` wrapper used by every endpoint."""

    success: bool = True
    data: Any = None
    message: str | None = None


class QueueEntry(BackendModel):
    user_id: str | None = None
    status: QueueStatus = "waiting"
    call_id: str | None = None
    matched_with: str | None = None


class QueueJoinResponse(BackendModel):
    status: Literal["waiting", "matched"]
    call_id: str | None = Field(default=None, alias="callId")
    matched_with: str | None = Field(default=None, alias="matchedWith")


class QueueStatusResponse(BackendModel):
    status: QueueStatus
    queue_entry: QueueEntry | None = Field(default=None, alias="queueEntry")

    @property
    def call_id(self) -> str | None:
        return self.queue_entry.call_id if self.queue_entry else None

    @property
    def matched_with(self) -> str | None:
        return self.queue_entry.matched_with if self.queue_entry else None


class DebitResponse(BackendModel):
    success: bool
    message: str | None = None


class ModerationStatus(BackendModel):
    """Account-level report/ban state. Never cached across sessions."""

    is_banned: bool = Field(default=False, alias="isBanned")
    ban_expires_at: datetime | None = Field(default=None, alias="banExpiresAt")
    report_count: int = Field(default=0, ge=0, alias="reportCount")
    weekly_ban_count: int = Field(default=0, ge=0, alias="weeklyBanCount")


class ReportResponse(BackendModel):
    success: bool
    message: str | None = None


class UserProfile(BackendModel):
    id: str = Field(alias="_id")
    name: str | None = None
    stars: int = 0

    @field_validator("stars", mode="before")
    @classmethod
    def none_is_zero(cls, value: Any) -> Any:
        return 0 if value is None else value
