"""Entry point for the matchmaking probe.

Joins the queue with the configured credentials, waits for the polling policy
to produce an outcome and leaves again. Useful for checking a backend
deployment without a calling platform.
"""

from __future__ import annotations

import asyncio
import logging

from backend.client import BackendClient
from config.settings import Settings, get_settings
from matchmaking.queue_client import QueueClient, SearchOutcome, SearchStatus
from session.context import SessionContext

LOGGER = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


async def run_probe(settings: Settings) -> SearchOutcome:
    if not settings.access_token or not settings.user_id:
        raise RuntimeError("ACCESS_TOKEN/USER_ID not configured")

    context = SessionContext(user_id=settings.user_id, access_token=settings.access_token)
    queue = QueueClient(BackendClient(context, settings), settings)
    outcome = await queue.search()
    if outcome.status is SearchStatus.MATCHED:
        # The probe never joins the call, so free the partner straight away.
        await queue.leave()
    LOGGER.info("Probe finished: %s after %s polls", outcome.status.value, outcome.polls)
    return outcome


def main() -> None:
    settings = get_settings()
    configure_logging(settings)
    asyncio.run(run_probe(settings))


if __name__ == "__main__":
    main()
