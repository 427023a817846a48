# Core processing modules
from mailbrief.core.aggregator import DailyAggregator, normalize_digest
from mailbrief.core.cleaner import BodyCleaner
from mailbrief.core.ingest_store import EmailIngestor, IngestOutcome
from mailbrief.core.ingestion import ImapMailProvider, MailProvider
from mailbrief.core.llm_engine import SummaryClient, SummaryEngine
from mailbrief.core.scorer import filter_messages
from mailbrief.core.status import ProcessingStatusTracker
from mailbrief.core.summarizer import SummarizationOrchestrator, SummarizationReport, should_summarize
from mailbrief.core.usage import UsageAccountant

__all__ = [
    "BodyCleaner",
    "DailyAggregator",
    "EmailIngestor",
    "ImapMailProvider",
    "IngestOutcome",
    "MailProvider",
    "ProcessingStatusTracker",
    "SummarizationOrchestrator",
    "SummarizationReport",
    "SummaryClient",
    "SummaryEngine",
    "UsageAccountant",
    "filter_messages",
    "normalize_digest",
    "should_summarize",
]
