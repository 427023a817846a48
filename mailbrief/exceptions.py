"""
Exception hierarchy for MailBrief.
Run-aborting errors propagate to the caller; per-entity errors are logged and skipped.
"""


class MailBriefError(Exception):
    """Base exception for all MailBrief errors."""


# Run-aborting
class FetchError(MailBriefError):
    """The mail provider failed to return messages."""


class MailAuthError(FetchError):
    """The mail provider rejected the user's credentials."""


class NotFoundError(MailBriefError):
    """A user or profile the run depends on does not exist."""


class AlreadyProcessing(MailBriefError):
    """A run for this user is already in flight."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"Processing already in progress for user {user_id}")
        self.user_id = user_id


# Per-entity / per-stage, never abort a run
class IngestError(MailBriefError):
    """A single message could not be persisted."""


class SummarizationError(MailBriefError):
    """A single email could not be summarized."""


class AggregationError(MailBriefError):
    """The digest could not be generated or stored."""


class AccountingError(MailBriefError):
    """Usage counters could not be updated."""
