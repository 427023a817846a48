"""
Usage accounting after each run.
"""

from typing import Optional

from loguru import logger

from mailbrief.database import LocalStore
from mailbrief.exceptions import AccountingError
from mailbrief.models import UsageCounters


class UsageAccountant:
    """Adds a run's counts to the user's monthly usage counters."""

    def __init__(self, local_store: LocalStore) -> None:
        self.local_store = local_store

    def record_run(
        self, user_id: str, processed: int, summarized: int, api_calls: int
    ) -> Optional[UsageCounters]:
        """
        Increment the counters; a failure is logged and never fails the run.

        Returns:
            The updated counters, or None if the update failed.
        """
        try:
            counters = self.local_store.increment_usage(
                user_id,
                emails_processed=processed,
                summaries_generated=summarized,
                api_calls=api_calls,
            )
        except Exception as e:
            error = AccountingError(f"Failed to update usage for user {user_id}: {e}")
            logger.error(str(error))
            return None

        logger.debug(
            f"Usage for user {user_id}: processed={counters.emails_processed}, "
            f"summaries={counters.summaries_generated}, api_calls={counters.api_calls}"
        )
        return counters
