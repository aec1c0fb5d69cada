"""
Decision Arbitrator: correlates an incoming transfer request with the
eventual accept/decline made by the user.

Each pending decision is a one-shot future keyed by transfer id. Accept or
decline resolves it, cancel/disconnect/timeout discards it, and whichever
signal comes first wins; later signals for the same id are no-ops.
"""

import asyncio
import logging

logger = logging.getLogger(__name__)


class DecisionArbitrator:
    """Holds at most one pending decision per transfer id."""

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Future[bool]] = {}

    def __contains__(self, transfer_id: str) -> bool:
        return transfer_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def open(self, transfer_id: str) -> asyncio.Future[bool] | None:
        """
        Register a pending decision and return its future.

        Returns None if a decision for this id is already pending.
        """
        if transfer_id in self._pending:
            logger.warning(f"Duplicate transfer request {transfer_id} ignored")
            return None
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending[transfer_id] = future
        return future

    def resolve(self, transfer_id: str, allowed: bool) -> bool:
        """Deliver the user's decision. False if nothing was pending."""
        future = self._pending.pop(transfer_id, None)
        if future is None or future.done():
            logger.debug(f"No pending decision for {transfer_id}")
            return False
        future.set_result(allowed)
        logger.info(
            f"Transfer {transfer_id} {'accepted' if allowed else 'declined'}"
        )
        return True

    def discard(self, transfer_id: str) -> bool:
        """Drop a pending decision without resolving it."""
        future = self._pending.pop(transfer_id, None)
        if future is None or future.done():
            return False
        future.cancel()
        logger.info(f"Pending decision for {transfer_id} withdrawn")
        return True
