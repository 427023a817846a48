"""
Data models and schemas for MailBrief.
Defines the contract for data flowing through the pipeline.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

Priority = Literal["low", "medium", "high"]
Sentiment = Literal["positive", "neutral", "negative"]
DigestType = Literal["daily", "on-demand"]
RunStatusName = Literal["already_processing", "no_emails_found", "no_relevant_emails", "completed"]

_PRIORITIES = ("low", "medium", "high")
_SENTIMENTS = ("positive", "neutral", "negative")


def to_local_naive(value: datetime) -> datetime:
    """Convert an aware datetime to naive local time; naive values pass through."""
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def previous_day_range(now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """[00:00:00, 23:59:59.999999] of the calendar day before `now`."""
    now = now or datetime.now()
    start = (now - timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=1) - timedelta(microseconds=1)
    return start, end


class Attachment(BaseModel):
    """Attachment metadata; content is never downloaded."""

    filename: str = ""
    mime_type: str = ""
    size: int = 0
    attachment_id: Optional[str] = None


class RawMessage(BaseModel):
    """
    Raw message data returned by the mail provider.
    This is the input data structure for the processing pipeline and is never stored as-is.
    """

    message_id: str = Field(..., description="Provider message id (unique per mailbox)")
    thread_id: Optional[str] = Field(None, description="Provider thread id")
    subject: str = Field(default="(No Subject)", description="Email subject line")
    sender: str = Field(default="Unknown", description="From header, e.g. 'Jane <jane@co.com>'")
    recipients: list[str] = Field(default_factory=list)
    body: str = Field(default="", description="Plain text body")
    html_body: str = Field(default="", description="HTML body")
    snippet: str = Field(default="")
    labels: list[str] = Field(default_factory=list)
    is_important: bool = False
    is_unread: bool = False
    received_at: datetime = Field(..., description="Email received date/time")
    attachments: list[Attachment] = Field(default_factory=list)

    @field_validator("received_at")
    @classmethod
    def normalize_received_at(cls, value: datetime) -> datetime:
        return to_local_naive(value)


class ScoredMessage(RawMessage):
    """A RawMessage annotated by the persona scorer."""

    score: int = Field(0, ge=0)
    category: str = "general"


class ActionItem(BaseModel):
    """A follow-up extracted by the model. Goes pending -> completed exactly once."""

    description: str = Field(..., max_length=500)
    priority: Priority = "medium"
    due_date: Optional[datetime] = None
    completed: bool = False
    completed_at: Optional[datetime] = None
    email_id: Optional[int] = None

    @field_validator("priority", mode="before")
    @classmethod
    def coerce_priority(cls, value: Any) -> str:
        value = str(value or "").strip().lower()
        return value if value in _PRIORITIES else "medium"

    @field_validator("due_date", mode="before")
    @classmethod
    def coerce_due_date(cls, value: Any) -> Any:
        # Models sometimes answer "none" or "tomorrow"; only ISO dates are kept.
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value.strip())
            except ValueError:
                return None
        return value

    def complete(self, at: Optional[datetime] = None) -> None:
        if self.completed:
            raise ValueError(f"Action item already completed: {self.description[:50]}")
        self.completed = True
        self.completed_at = at or datetime.now()


def _normalize_action_items(value: Any) -> list:
    """
    Accept action items as plain strings or objects.
    Handles models that answer with strings, {"task": ...} or {"description": ...}.
    """
    if not value:
        return []
    if isinstance(value, (str, dict)):
        value = [value]

    normalized: list = []
    for item in value:
        if isinstance(item, ActionItem):
            normalized.append(item)
        elif isinstance(item, str):
            if item.strip():
                normalized.append({"description": item.strip()[:500]})
        elif isinstance(item, dict):
            description = item.get("description") or item.get("task") or item.get("action") or item.get("text")
            if description and isinstance(description, str):
                normalized.append({**item, "description": description.strip()[:500]})
    return normalized


class EmailSummary(BaseModel):
    """Summary embedded in a PersistedEmail."""

    content: str
    action_items: list[ActionItem] = Field(default_factory=list)
    priority: Priority = "medium"
    category: str = "general"
    sentiment: Sentiment = "neutral"
    generated_at: datetime = Field(default_factory=datetime.now)


class SummaryDraft(BaseModel):
    """
    Individual email summary as returned by the language model.
    LLM must output JSON conforming to this structure.
    """

    content: str = Field(..., description="2-3 sentence summary of the email")
    action_items: list[ActionItem] = Field(
        default_factory=list, description="Specific actions the recipient needs to take"
    )
    priority: Priority = Field("medium", description="high, medium or low")
    category: str = Field("general", description="work, personal, newsletters, promotions, social, ...")
    sentiment: Sentiment = Field("neutral", description="positive, neutral or negative")

    @field_validator("action_items", mode="before")
    @classmethod
    def normalize_action_items(cls, value: Any) -> list:
        return _normalize_action_items(value)

    @field_validator("priority", mode="before")
    @classmethod
    def coerce_priority(cls, value: Any) -> str:
        value = str(value or "").strip().lower()
        return value if value in _PRIORITIES else "medium"

    @field_validator("sentiment", mode="before")
    @classmethod
    def coerce_sentiment(cls, value: Any) -> str:
        value = str(value or "").strip().lower()
        return value if value in _SENTIMENTS else "neutral"

    @field_validator("category", mode="before")
    @classmethod
    def coerce_category(cls, value: Any) -> str:
        return str(value or "general").strip().lower() or "general"

    def to_summary(self, generated_at: Optional[datetime] = None) -> EmailSummary:
        return EmailSummary(
            content=self.content,
            action_items=self.action_items,
            priority=self.priority,
            category=self.category,
            sentiment=self.sentiment,
            generated_at=generated_at or datetime.now(),
        )


class DigestDraft(BaseModel):
    """Daily digest as returned by the language model."""

    content: str = Field(..., description="Digest organized by priority")
    action_items: list[ActionItem] = Field(default_factory=list, description="All action items of the day")
    highlights: list[str] = Field(default_factory=list, description="Most important points")
    categories: dict[str, int] = Field(default_factory=dict, description="Email counts per category")

    @field_validator("action_items", mode="before")
    @classmethod
    def normalize_action_items(cls, value: Any) -> list:
        return _normalize_action_items(value)

    @field_validator("highlights", mode="before")
    @classmethod
    def normalize_highlights(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            value = [value]
        return [str(item).strip()[:300] for item in value or [] if str(item).strip()]

    @field_validator("categories", mode="before")
    @classmethod
    def normalize_categories(cls, value: Any) -> dict[str, int]:
        if not isinstance(value, dict):
            return {}
        counts: dict[str, int] = {}
        for name, count in value.items():
            try:
                counts[str(name).lower()] = max(0, int(count))
            except (TypeError, ValueError):
                continue
        return counts


class PersistedEmail(BaseModel):
    """Canonical, deduplicated record of a message. Unique on (user_id, message_id)."""

    id: Optional[int] = None
    user_id: str
    message_id: str
    thread_id: Optional[str] = None
    subject: str = "(No Subject)"
    sender: str = "Unknown"
    recipients: list[str] = Field(default_factory=list)
    body: str = ""
    html_body: str = ""
    snippet: str = ""
    labels: list[str] = Field(default_factory=list)
    is_important: bool = False
    is_read: bool = False
    is_archived: bool = False
    is_starred: bool = False
    received_at: datetime
    processed_at: datetime = Field(default_factory=datetime.now)
    score: int = Field(0, ge=0)
    category: str = "general"
    attachments: list[Attachment] = Field(default_factory=list)
    summary: Optional[EmailSummary] = None


class IndividualSummary(BaseModel):
    """A summary produced during a run, carried to the aggregator."""

    email_id: int
    subject: str
    sender: str
    summary: EmailSummary


class DateRange(BaseModel):
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def check_order(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError(f"Date range start {self.start} is after end {self.end}")
        return self


class DigestMetadata(BaseModel):
    provider: str = ""
    model: str = ""
    processing_time_ms: int = 0
    email_count: int = 0
    version: str = "1.0"


class Digest(BaseModel):
    """Aggregate of one run, built from the individual summaries."""

    id: Optional[int] = None
    user_id: str
    type: DigestType = "daily"
    content: str
    email_ids: list[int] = Field(default_factory=list)
    action_items: list[ActionItem] = Field(default_factory=list)
    highlights: list[str] = Field(default_factory=list)
    categories: dict[str, int] = Field(default_factory=dict)
    date_range: DateRange
    metadata: DigestMetadata = Field(default_factory=DigestMetadata)
    is_archived: bool = False
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def pending_action_items(self) -> list[ActionItem]:
        return [item for item in self.action_items if not item.completed]


class UsageCounters(BaseModel):
    emails_processed: int = 0
    summaries_generated: int = 0
    api_calls: int = 0
    last_reset_at: datetime = Field(default_factory=datetime.now)


class UserAccount(BaseModel):
    user_id: str
    email: str = ""
    plan: Literal["free", "pro", "enterprise"] = "free"
    usage: UsageCounters = Field(default_factory=UsageCounters)


class ProcessingStage(str, Enum):
    FETCHING = "fetching"
    FILTERING = "filtering"
    STORING = "storing"
    SUMMARIZING = "summarizing"
    AGGREGATING = "aggregating"
    UPDATING_STATS = "updating-stats"


class RunStatus(BaseModel):
    """In-flight run of one user. Only exists while the run is active."""

    user_id: str
    stage: ProcessingStage = ProcessingStage.FETCHING
    started_at: datetime = Field(default_factory=datetime.now)


class StatusSnapshot(BaseModel):
    state: Literal["idle", "processing"] = "idle"
    stage: Optional[ProcessingStage] = None
    started_at: Optional[datetime] = None
    elapsed_ms: Optional[int] = None


class FetchQuery(BaseModel):
    """Options passed to the mail provider."""

    after: datetime
    before: Optional[datetime] = None
    max_results: int = Field(50, gt=0)
    include_read: bool = True
    exclude_promotions: bool = True
    exclude_social: bool = True


class RunOptions(BaseModel):
    """Caller options for a pipeline run; unset values get per-entry-point defaults."""

    max_results: Optional[int] = Field(None, gt=0, le=500)
    include_read: bool = True
    exclude_promotions: bool = True
    exclude_social: bool = True
    after: Optional[datetime] = None
    before: Optional[datetime] = None
    date_range: Optional[DateRange] = None

    @field_validator("after", "before")
    @classmethod
    def normalize_bounds(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_local_naive(value) if value else value


class RunResult(BaseModel):
    status: RunStatusName
    processed_count: int = 0
    summarized_count: int = 0
    digest_id: Optional[int] = None
    processed_at: datetime = Field(default_factory=datetime.now)
