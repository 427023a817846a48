"""
Per-user digest pipeline.
Fetch -> filter -> store -> summarize -> aggregate -> update usage, behind a single-flight gate.
"""

from datetime import datetime, timedelta
from typing import Optional

from loguru import logger

from mailbrief.config import Settings
from mailbrief.core import (
    BodyCleaner,
    DailyAggregator,
    EmailIngestor,
    ImapMailProvider,
    MailProvider,
    ProcessingStatusTracker,
    SummarizationOrchestrator,
    SummaryClient,
    SummaryEngine,
    UsageAccountant,
    filter_messages,
)
from mailbrief.database import LocalStore
from mailbrief.exceptions import AggregationError, AlreadyProcessing, FetchError, NotFoundError
from mailbrief.models import (
    DateRange,
    FetchQuery,
    ProcessingStage,
    RawMessage,
    RunOptions,
    RunResult,
    StatusSnapshot,
    previous_day_range,
)
from mailbrief.utils import get_logger


class EmailDigestPipeline:
    """
    Orchestrates one user's run.
    At most one run per user is in flight; a concurrent request gets "already_processing".
    """

    def __init__(
        self,
        settings: Settings,
        local_store: LocalStore,
        mail_provider: MailProvider,
        summary_client: SummaryClient,
        tracker: Optional[ProcessingStatusTracker] = None,
    ) -> None:
        self.settings = settings
        self.local_store = local_store
        self.mail_provider = mail_provider
        self.summary_client = summary_client
        self.tracker = tracker or ProcessingStatusTracker()

        self.cleaner = BodyCleaner(settings.MAX_BODY_LENGTH)
        self.ingestor = EmailIngestor(local_store, self.cleaner)
        self.summarizer = SummarizationOrchestrator(
            summary_client,
            local_store,
            batch_size=settings.SUMMARY_BATCH_SIZE,
            batch_delay=settings.SUMMARY_BATCH_DELAY_SECONDS,
        )
        self.aggregator = DailyAggregator(summary_client, local_store)
        self.usage = UsageAccountant(local_store)

    @classmethod
    def from_settings(cls, settings: Settings, local_store: Optional[LocalStore] = None) -> "EmailDigestPipeline":
        """Build a pipeline with the IMAP provider and the OpenAI-compatible engine."""
        try:
            local_store = local_store or LocalStore(db_path=settings.db_path)
            mail_provider = ImapMailProvider(settings, cleaner=BodyCleaner(settings.MAX_BODY_LENGTH))
            summary_client = SummaryEngine(settings)
        except Exception as e:
            logger.exception(f"Failed to initialize pipeline components: {e}")
            raise
        return cls(settings, local_store, mail_provider, summary_client)

    # --- entry points ----------------------------------------------------

    def process_daily_emails(self, user_id: str, options: Optional[RunOptions] = None) -> RunResult:
        """
        Digest the previous calendar day (or the given window) for one user.

        Raises:
            NotFoundError: If the user does not exist.
            FetchError: If the mail provider fails.
        """
        options = options or RunOptions()
        start, end = previous_day_range()
        return self._run(
            user_id,
            options,
            digest_type="daily",
            max_results=options.max_results or self.settings.DAILY_MAX_RESULTS,
            after=options.after or start,
            before=options.before or end,
        )

    def process_on_demand(self, user_id: str, options: Optional[RunOptions] = None) -> RunResult:
        """
        Digest the last few hours for one user.

        Raises:
            NotFoundError: If the user does not exist.
            FetchError: If the mail provider fails.
        """
        options = options or RunOptions()
        now = datetime.now()
        return self._run(
            user_id,
            options,
            digest_type="on-demand",
            max_results=options.max_results or self.settings.ON_DEMAND_MAX_RESULTS,
            after=options.after or now - timedelta(hours=self.settings.ON_DEMAND_LOOKBACK_HOURS),
            before=options.before or now,
        )

    def get_processing_status(self, user_id: str) -> StatusSnapshot:
        return self.tracker.query(user_id)

    # --- run -------------------------------------------------------------

    def _run(
        self,
        user_id: str,
        options: RunOptions,
        digest_type: str,
        max_results: int,
        after: datetime,
        before: datetime,
    ) -> RunResult:
        query = FetchQuery(
            after=after,
            before=before,
            max_results=max_results,
            include_read=options.include_read,
            exclude_promotions=options.exclude_promotions,
            exclude_social=options.exclude_social,
        )
        date_range = options.date_range or DateRange(start=query.after, end=query.before)

        try:
            with self.tracker.track(user_id):
                logger.info(f"Starting {digest_type} run for user {user_id} ({after} -> {before})")
                return self._execute(user_id, query, digest_type, date_range)
        except AlreadyProcessing:
            logger.warning(f"Run for user {user_id} rejected, processing already in progress")
            return RunResult(status="already_processing")

    def _fetch(self, user_id: str, query: FetchQuery) -> list[RawMessage]:
        try:
            return self.mail_provider.fetch_recent_messages(user_id, query)
        except FetchError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected mail provider error for user {user_id}: {e}")
            raise FetchError(f"Mail provider failed: {e}") from e

    def _execute(self, user_id: str, query: FetchQuery, digest_type: str, date_range: DateRange) -> RunResult:
        log = get_logger(__name__, user_id=user_id)
        user = self.local_store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User not found: {user_id}")
        profile = self.local_store.get_profile(user_id)
        if profile is None:
            log.info("No profile, using the basic filter")

        self.tracker.advance(user_id, ProcessingStage.FETCHING)
        messages = self._fetch(user_id, query)
        if not messages:
            log.info("No emails found")
            return RunResult(status="no_emails_found")

        self.tracker.advance(user_id, ProcessingStage.FILTERING)
        relevant = filter_messages(messages, profile)
        if not relevant:
            log.info(f"No relevant emails among {len(messages)}")
            return RunResult(status="no_relevant_emails")

        self.tracker.advance(user_id, ProcessingStage.STORING)
        emails = self.ingestor.ingest_all(user_id, relevant)

        self.tracker.advance(user_id, ProcessingStage.SUMMARIZING)
        report = self.summarizer.summarize(user, emails, profile)

        self.tracker.advance(user_id, ProcessingStage.AGGREGATING)
        digest = None
        digest_calls = 0
        if report.summaries:
            digest_calls = 1
            try:
                digest = self.aggregator.aggregate(user_id, report.summaries, profile, digest_type, date_range)
            except AggregationError as e:
                log.error(f"No digest: {e}")
                self.local_store.record_error(user_id, "aggregating", str(e))

        self.tracker.advance(user_id, ProcessingStage.UPDATING_STATS)
        self.usage.record_run(
            user_id,
            processed=len(emails),
            summarized=report.generated_count,
            api_calls=report.api_calls + digest_calls,
        )

        result = RunResult(
            status="completed",
            processed_count=len(emails),
            summarized_count=len(report.summaries),
            digest_id=digest.id if digest else None,
        )
        log.success(
            f"Run completed: processed={result.processed_count}, "
            f"summarized={result.summarized_count}, digest={result.digest_id}"
        )
        return result

    def cleanup(self) -> None:
        """Cleanup resources."""
        self.local_store.close()
