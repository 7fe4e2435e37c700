"""Explicit per-user session context shared by all subsystems."""

from __future__ import annotations

from dataclasses import dataclass

from backend.schemas import UserProfile


@dataclass
class SessionContext:
    """Identity, credentials and account counters for the signed-in user.

    Created at sign-in and discarded at sign-out. Token refresh is owned by a
    collaborator which replaces ``access_token`` in place.
    """

    user_id: str
    access_token: str | None = None
    star_balance: int = 0
    last_report_count: int = 0

    def auth_headers(self) -> dict[str, str]:
        if not self.access_token:
            return {}
        return {"Authorization": f"Bearer {self.access_token}"}

    def apply_profile(self, profile: UserProfile) -> None:
        self.star_balance = profile.stars
