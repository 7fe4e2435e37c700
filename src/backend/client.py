"""HTTP client for the matchmaking, stars and moderation endpoints."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from backend.errors import BackendError, BackendUnavailable, DebitFailed, ModerationBlocked, RateLimited
from backend.schemas import (
    DebitResponse,
    Envelope,
    ModerationStatus,
    QueueJoinResponse,
    QueueStatusResponse,
    ReportResponse,
    UserProfile,
)
from config.settings import Settings, get_settings
from session.context import SessionContext

LOGGER = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class BackendClient:
    """Thin async wrapper around the backend REST contract."""

    def __init__(
        self,
        context: SessionContext,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._context = context
        self._base_url = settings.backend_base_url
        self._timeout = settings.request_timeout_seconds
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        headers.update(self._context.auth_headers())
        return headers

    async def _request(self, method: str, path: str, *, json: dict[str, Any] | None = None) -> Envelope:
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=json, headers=self._headers())
        except httpx.TransportError as exc:
            LOGGER.warning("%s %s failed: %s", method, path, exc)
            raise BackendUnavailable(str(exc) or None) from exc

        envelope = self._parse_envelope(response)
        if response.status_code == 403:
            raise ModerationBlocked(envelope.message, ban_expires_at=_ban_expiry(envelope.data))
        if response.status_code == 429:
            raise RateLimited(envelope.message)
        if response.status_code >= 500:
            raise BackendUnavailable(envelope.message, status_code=response.status_code)
        if response.is_error:
            raise BackendError(envelope.message, status_code=response.status_code)
        return envelope

    @staticmethod
    def _parse_envelope(response: httpx.Response) -> Envelope:
        try:
            return Envelope.model_validate(response.json())
        except (ValueError, ValidationError):
            if response.is_error:
                return Envelope(success=False)
            raise BackendError("Malformed backend response.", status_code=response.status_code)

    @staticmethod
    def _parse(model: type[ModelT], data: Any) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            LOGGER.warning("Unexpected %s payload: %s", model.__name__, exc)
            raise BackendError("Malformed backend response.") from exc

    @staticmethod
    def _require_data(envelope: Envelope, default_message: str) -> Any:
        if not envelope.success or envelope.data is None:
            raise BackendError(envelope.message or default_message)
        return envelope.data

    async def join_queue(self) -> QueueJoinResponse:
        envelope = await self._request("POST", "/matchmaking/join")
        data = self._require_data(envelope, "Failed to join queue")
        return self._parse(QueueJoinResponse, data)

    async def queue_status(self) -> QueueStatusResponse:
        envelope = await self._request("GET", "/matchmaking/status")
        data = self._require_data(envelope, "Failed to read queue status")
        return self._parse(QueueStatusResponse, data)

    async def leave_queue(self) -> None:
        await self._request("POST", "/matchmaking/leave")

    async def decrease_stars(self, amount: int) -> DebitResponse:
        envelope = await self._request("POST", "/users/stars/decrease", json={"amount": amount})
        if not envelope.success:
            raise DebitFailed(envelope.message)
        return DebitResponse(success=envelope.success, message=envelope.message)

    async def ban_status(self) -> ModerationStatus:
        envelope = await self._request("GET", "/reports/ban-status")
        data = self._require_data(envelope, "Failed to read ban status")
        return self._parse(ModerationStatus, data)

    async def submit_report(self, reported_user_id: str, reason: str) -> ReportResponse:
        envelope = await self._request(
            "POST",
            "/reports/submit",
            json={"reportedUserId": reported_user_id, "reason": reason},
        )
        return ReportResponse(success=envelope.success, message=envelope.message)

    async def current_user(self) -> UserProfile:
        envelope = await self._request("GET", "/users/me")
        data = self._require_data(envelope, "Failed to load user")
        return self._parse(UserProfile, data)


def _ban_expiry(data: Any) -> datetime | None:
    if not isinstance(data, dict):
        return None
    raw = data.get("banExpiresAt")
    if not raw:
        return None
    try:
        return ModerationStatus.model_validate({"banExpiresAt": raw}).ban_expires_at
    except ValidationError:
        return None
