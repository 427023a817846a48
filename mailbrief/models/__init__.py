# Data models
from mailbrief.models.persona import CategoryRule, PersonaProfile, default_categories
from mailbrief.models.schemas import (
    ActionItem,
    Attachment,
    DateRange,
    Digest,
    DigestDraft,
    DigestMetadata,
    EmailSummary,
    FetchQuery,
    IndividualSummary,
    PersistedEmail,
    ProcessingStage,
    RawMessage,
    RunOptions,
    RunResult,
    RunStatus,
    ScoredMessage,
    StatusSnapshot,
    SummaryDraft,
    UsageCounters,
    UserAccount,
    previous_day_range,
    to_local_naive,
)

__all__ = [
    "ActionItem",
    "Attachment",
    "CategoryRule",
    "DateRange",
    "Digest",
    "DigestDraft",
    "DigestMetadata",
    "EmailSummary",
    "FetchQuery",
    "IndividualSummary",
    "PersistedEmail",
    "PersonaProfile",
    "ProcessingStage",
    "RawMessage",
    "RunOptions",
    "RunResult",
    "RunStatus",
    "ScoredMessage",
    "StatusSnapshot",
    "SummaryDraft",
    "UsageCounters",
    "UserAccount",
    "default_categories",
    "previous_day_range",
    "to_local_naive",
]
