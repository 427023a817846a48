"""
Summarization orchestration.
Decides which stored emails deserve a summary and runs the model calls in bounded batches.
"""

import sqlite3
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from loguru import logger
from pydantic import BaseModel, Field

from mailbrief.core.llm_engine import SummaryClient
from mailbrief.database import LocalStore
from mailbrief.exceptions import NotFoundError, SummarizationError
from mailbrief.models import IndividualSummary, PersistedEmail, PersonaProfile, SummaryDraft, UserAccount

# Minimum score that earns a summary, per plan
PLAN_SCORE_THRESHOLDS = {"free": 5, "pro": 4, "enterprise": 3}

MIN_SUMMARY_BODY_LENGTH = 100
LONG_UNREAD_BODY_LENGTH = 300


def should_summarize(email: PersistedEmail, plan: str = "free") -> bool:
    """
    Decide whether an email is worth a model call.

    Short bodies never qualify; important emails always do; otherwise the score
    must reach the plan threshold, or the email must be unread and long.
    """
    body_length = len(email.body)
    if body_length < MIN_SUMMARY_BODY_LENGTH:
        return False
    if email.is_important:
        return True
    if email.score >= PLAN_SCORE_THRESHOLDS.get(plan, PLAN_SCORE_THRESHOLDS["free"]):
        return True
    return not email.is_read and body_length > LONG_UNREAD_BODY_LENGTH


@dataclass
class SummaryOutcome:
    """Result of one model call, tagged succeeded or failed."""

    email: PersistedEmail
    draft: Optional[SummaryDraft] = None
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.draft is not None


class SummarizationReport(BaseModel):
    summaries: list[IndividualSummary] = Field(default_factory=list)
    generated_count: int = 0
    reused_count: int = 0
    failed_email_ids: list[int] = Field(default_factory=list)
    api_calls: int = 0


class SummarizationOrchestrator:
    """
    Runs per-email summaries with failure isolation.
    One failing email never affects its siblings; failures are logged and recorded.
    """

    def __init__(
        self,
        client: SummaryClient,
        local_store: LocalStore,
        batch_size: int = 10,
        batch_delay: float = 0.1,
    ) -> None:
        """
        Args:
            client: Language-model client.
            local_store: Store the summaries are attached in.
            batch_size: Concurrent model calls per batch.
            batch_delay: Seconds to wait between batches.
        """
        self.client = client
        self.local_store = local_store
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay

    def _attempt(self, email: PersistedEmail, profile: Optional[PersonaProfile]) -> SummaryOutcome:
        try:
            return SummaryOutcome(email=email, draft=self.client.summarize_one(email, profile))
        except Exception as e:
            return SummaryOutcome(email=email, error=e)

    def _run_batches(self, emails: list[PersistedEmail], profile: Optional[PersonaProfile]) -> list[SummaryOutcome]:
        outcomes: list[SummaryOutcome] = []
        if not emails:
            return outcomes

        with ThreadPoolExecutor(max_workers=self.batch_size, thread_name_prefix="summarize") as executor:
            for start in range(0, len(emails), self.batch_size):
                if start and self.batch_delay > 0:
                    time.sleep(self.batch_delay)
                batch = emails[start: start + self.batch_size]
                outcomes.extend(executor.map(lambda email: self._attempt(email, profile), batch))
        return outcomes

    def _record_failure(self, user_id: str, email: PersistedEmail, error: Exception) -> None:
        logger.error(f"Failed to summarize email {email.id} ({email.subject[:50]}): {error}")
        self.local_store.record_error(user_id, "summarizing", str(error), message_id=email.message_id)

    def summarize(
        self, user: UserAccount, emails: list[PersistedEmail], profile: Optional[PersonaProfile]
    ) -> SummarizationReport:
        """
        Summarize the emails that qualify for the user's plan.

        Emails that already carry a summary reuse it without a model call.

        Returns:
            Report with the produced summaries in input order and the call counts.
        """
        selected = [email for email in emails if email.id is not None and should_summarize(email, user.plan)]
        pending = [email for email in selected if email.summary is None]
        logger.info(
            f"Summarizing {len(pending)} emails for user {user.user_id} "
            f"({len(selected) - len(pending)} reused, {len(emails) - len(selected)} not selected)"
        )

        outcomes = self._run_batches(pending, profile)
        succeeded = [outcome for outcome in outcomes if outcome.succeeded]
        failed = [outcome for outcome in outcomes if not outcome.succeeded]

        for outcome in failed:
            self._record_failure(user.user_id, outcome.email, outcome.error)

        generated: dict[int, PersistedEmail] = {}
        for outcome in succeeded:
            summary = outcome.draft.to_summary(generated_at=datetime.now())
            try:
                self.local_store.attach_summary(outcome.email.id, summary)
            except (sqlite3.Error, NotFoundError) as e:
                failed.append(outcome)
                self._record_failure(user.user_id, outcome.email, SummarizationError(f"could not store summary: {e}"))
                continue
            generated[outcome.email.id] = outcome.email.model_copy(update={"summary": summary})

        report = SummarizationReport(
            generated_count=len(generated),
            reused_count=len(selected) - len(pending),
            failed_email_ids=[outcome.email.id for outcome in failed],
            api_calls=len(pending),
        )
        for email in selected:
            email = generated.get(email.id, email)
            if email.summary is not None:
                report.summaries.append(
                    IndividualSummary(email_id=email.id, subject=email.subject, sender=email.sender, summary=email.summary)
                )
        return report
