"""Domain-specific exceptions for orchestrator operations.

These exceptions are safe to import from any layer without pulling in httpx.
"""

from __future__ import annotations

from datetime import datetime


class OrchestratorError(Exception):
    status_code: int = 500
    default_detail: str = "Something went wrong."

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class BackendError(OrchestratorError):
    status_code = 502
    default_detail = "Backend request failed."

    def __init__(self, detail: str | None = None, *, status_code: int | None = None) -> None:
        super().__init__(detail)
        if status_code is not None:
            self.status_code = status_code


class BackendUnavailable(BackendError):
    status_code = 503
    default_detail = "Backend is unreachable."


class QueueUnavailable(BackendUnavailable):
    default_detail = "Failed to join queue. Please try again."


class ModerationBlocked(BackendError):
    status_code = 403
    default_detail = "You are temporarily banned."

    def __init__(self, detail: str | None = None, *, ban_expires_at: datetime | None = None) -> None:
        super().__init__(detail)
        self.ban_expires_at = ban_expires_at


class RateLimited(BackendError):
    status_code = 429
    default_detail = "Too many requests. Please try again later."


class DebitFailed(BackendError):
    status_code = 402
    default_detail = "Could not deduct stars."


class CallJoinFailed(OrchestratorError):
    status_code = 503
    default_detail = "Could not join the call. Please try again."
