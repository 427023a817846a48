"""
Daily aggregation: rolls a run's individual summaries into one Digest.
"""

import time
from collections import Counter
from typing import Optional

from loguru import logger

from mailbrief.core.llm_engine import SummaryClient
from mailbrief.database import LocalStore
from mailbrief.exceptions import AggregationError
from mailbrief.models import (
    ActionItem,
    DateRange,
    Digest,
    DigestDraft,
    DigestMetadata,
    IndividualSummary,
    PersonaProfile,
    previous_day_range,
)

MAX_DIGEST_CONTENT_LENGTH = 10000
DIGEST_TRUNCATION_MARKER = "... [truncated]"


def normalize_digest(digest: Digest) -> Digest:
    """
    Enforce the stored-digest bounds before a write.
    Content is capped (marker included), email ids are de-duplicated in order
    and the date range is re-validated.
    """
    content = digest.content
    if len(content) > MAX_DIGEST_CONTENT_LENGTH:
        keep = MAX_DIGEST_CONTENT_LENGTH - len(DIGEST_TRUNCATION_MARKER)
        content = content[:keep] + DIGEST_TRUNCATION_MARKER

    email_ids = list(dict.fromkeys(digest.email_ids))
    date_range = DateRange(start=digest.date_range.start, end=digest.date_range.end)

    return digest.model_copy(
        update={
            "content": content,
            "email_ids": email_ids,
            "date_range": date_range,
            "metadata": digest.metadata.model_copy(update={"email_count": len(email_ids)}),
        }
    )


def _collect_action_items(summaries: list[IndividualSummary]) -> list[ActionItem]:
    items = []
    for item in summaries:
        for action in item.summary.action_items:
            items.append(action.model_copy(update={"email_id": action.email_id or item.email_id}))
    return items


class DailyAggregator:
    """Builds and stores a Digest from a batch of individual summaries."""

    def __init__(self, client: SummaryClient, local_store: LocalStore) -> None:
        self.client = client
        self.local_store = local_store

    def build_digest(
        self,
        user_id: str,
        summaries: list[IndividualSummary],
        draft: DigestDraft,
        digest_type: str,
        date_range: DateRange,
        processing_time_ms: int,
    ) -> Digest:
        """
        Combine the model's draft with the run data.
        Action items and category counts come from the summaries when the draft has none.
        """
        info = self.client.model_info()
        categories = draft.categories or dict(Counter(item.summary.category for item in summaries))

        return Digest(
            user_id=user_id,
            type=digest_type,
            content=draft.content,
            email_ids=[item.email_id for item in summaries],
            action_items=draft.action_items or _collect_action_items(summaries),
            highlights=draft.highlights,
            categories=categories,
            date_range=date_range,
            metadata=DigestMetadata(
                provider=info.get("provider", ""),
                model=info.get("model", ""),
                processing_time_ms=processing_time_ms,
                email_count=len(summaries),
            ),
        )

    def aggregate(
        self,
        user_id: str,
        summaries: list[IndividualSummary],
        profile: Optional[PersonaProfile],
        digest_type: str = "daily",
        date_range: Optional[DateRange] = None,
    ) -> Optional[Digest]:
        """
        Generate and persist the digest of a run.

        Args:
            user_id: Owner of the digest.
            summaries: Summaries produced by the run.
            profile: The user's profile, if any.
            digest_type: "daily" or "on-demand".
            date_range: Covered period; defaults to the previous calendar day.

        Returns:
            The stored digest, or None when there is nothing to aggregate.

        Raises:
            AggregationError: If the model call or the write fails.
        """
        if not summaries:
            logger.info(f"No summaries to aggregate for user {user_id}")
            return None

        if date_range is None:
            start, end = previous_day_range()
            date_range = DateRange(start=start, end=end)

        start_time = time.time()
        try:
            draft = self.client.summarize_digest(summaries, profile)
        except Exception as e:
            raise AggregationError(f"Digest generation failed for user {user_id}: {e}") from e
        elapsed_ms = int((time.time() - start_time) * 1000)

        try:
            digest = normalize_digest(
                self.build_digest(user_id, summaries, draft, digest_type, date_range, elapsed_ms)
            )
            stored = self.local_store.save_digest(digest)
        except Exception as e:
            raise AggregationError(f"Failed to build or store digest for user {user_id}: {e}") from e

        logger.info(
            f"Created {digest_type} digest {stored.id} for user {user_id} "
            f"({len(stored.email_ids)} emails, {len(stored.action_items)} action items)"
        )
        return stored
