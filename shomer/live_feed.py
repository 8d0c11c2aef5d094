"""
shomer/live_feed.py
Narrow interface to the live message connection owned by ingestion.
The engine only ever asks it to disconnect an account.
"""

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class LiveFeed(ABC):

    @abstractmethod
    def disconnect(self, account_id: str) -> None:
        """Drop the live connection for one account."""


class NullLiveFeed(LiveFeed):
    """Used when no ingestion process is attached (CLI, tests)."""

    def disconnect(self, account_id: str) -> None:
        logger.info(f"No live feed attached — disconnect for {account_id} is a no-op")
