from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from calling.platform import Participant

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DisconnectSignal:
    peer_id: str | None


class DisconnectDetector:
    """Tells "partner never joined yet" apart from "partner joined then left"."""

    def __init__(self) -> None:
        self._seen_partner = False
        self._last_peer_id: str | None = None

    @property
    def seen_partner(self) -> bool:
        return self._seen_partner

    def observe(self, participants: Sequence[Participant], self_id: str) -> DisconnectSignal | None:
        partner = next((p for p in participants if p.user_id != self_id), None)
        if partner is not None:
            if not self._seen_partner:
                LOGGER.info("Partner present: %s", partner.user_id)
            self._seen_partner = True
            self._last_peer_id = partner.user_id
            return None

        if self._seen_partner and len(participants) == 1:
            # Cleared before returning so a flapping roster signals only once.
            self._seen_partner = False
            LOGGER.info("Partner disconnected: %s", self._last_peer_id)
            return DisconnectSignal(peer_id=self._last_peer_id)
        return None
