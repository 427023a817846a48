"""
Shared fixtures: a temporary SQLite store, test settings and fake mail/LLM clients.
"""

import threading
from datetime import datetime, timedelta
from itertools import count
from typing import Optional

import pytest

from mailbrief.config import Settings
from mailbrief.database import LocalStore
from mailbrief.exceptions import SummarizationError
from mailbrief.models import (
    DigestDraft,
    FetchQuery,
    IndividualSummary,
    PersistedEmail,
    PersonaProfile,
    RawMessage,
    SummaryDraft,
    UserAccount,
)
from mailbrief.pipeline import EmailDigestPipeline

LONG_BODY = (
    "Hi, please have a look at the quarterly numbers I sent over and let me know "
    "what you think about them before Friday afternoon. Thanks a lot."
)

_ids = count(1)


def yesterday_noon() -> datetime:
    return (datetime.now() - timedelta(days=1)).replace(hour=12, minute=0, second=0, microsecond=0)


def make_message(**overrides) -> RawMessage:
    """RawMessage received yesterday at noon with a body long enough to pass the filters."""
    data = {
        "message_id": f"msg-{next(_ids)}",
        "subject": "Quarterly numbers",
        "sender": "Alice <alice@co.com>",
        "body": LONG_BODY,
        "is_unread": True,
        "received_at": yesterday_noon(),
    }
    data.update(overrides)
    return RawMessage(**data)


class FakeMailProvider:
    def __init__(self, messages: Optional[list[RawMessage]] = None, error: Optional[Exception] = None) -> None:
        self.messages = messages or []
        self.error = error
        self.queries: list[FetchQuery] = []
        self.release = threading.Event()
        self.release.set()
        self.entered = threading.Event()

    def fetch_recent_messages(self, user_id: str, query: FetchQuery) -> list[RawMessage]:
        self.queries.append(query)
        self.entered.set()
        self.release.wait(timeout=5)
        if self.error:
            raise self.error
        return self.messages[: query.max_results]


class FakeSummaryClient:
    def __init__(self, fail_subjects: tuple[str, ...] = (), digest_error: bool = False) -> None:
        self.fail_subjects = set(fail_subjects)
        self.digest_error = digest_error
        self.one_calls: list[str] = []
        self.digest_calls: list[list[IndividualSummary]] = []
        self._lock = threading.Lock()

    def summarize_one(self, email: PersistedEmail, profile: Optional[PersonaProfile]) -> SummaryDraft:
        with self._lock:
            self.one_calls.append(email.message_id)
        if email.subject in self.fail_subjects:
            raise SummarizationError(f"model refused {email.subject}")
        return SummaryDraft(
            content=f"Summary of {email.subject}",
            action_items=[f"Reply to {email.sender}"],
            priority="high" if email.is_important else "medium",
            category=email.category,
        )

    def summarize_digest(self, summaries: list[IndividualSummary], profile: Optional[PersonaProfile]) -> DigestDraft:
        self.digest_calls.append(list(summaries))
        if self.digest_error:
            raise SummarizationError("digest model unavailable")
        return DigestDraft(
            content="\n".join(item.summary.content for item in summaries),
            highlights=[summaries[0].subject],
        )

    def model_info(self) -> dict:
        return {"provider": "fake", "model": "fake-1"}


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        OPENAI_API_KEY="sk-test",
        DATA_DIR=str(tmp_path),
        PROMPT_EMAIL_PATH=str(tmp_path / "missing_email_prompt.txt"),
        PROMPT_DIGEST_PATH=str(tmp_path / "missing_digest_prompt.txt"),
        SUMMARY_BATCH_SIZE=2,
        SUMMARY_BATCH_DELAY_SECONDS=0,
        JOB_BATCH_DELAY_SECONDS=0,
    )


@pytest.fixture
def store(tmp_path):
    local_store = LocalStore(db_path=tmp_path / "test.db")
    yield local_store
    local_store.close()


@pytest.fixture
def user(store) -> UserAccount:
    return store.upsert_user(UserAccount(user_id="u1", email="u1@co.com", plan="free"))


@pytest.fixture
def mail_provider() -> FakeMailProvider:
    return FakeMailProvider()


@pytest.fixture
def summary_client() -> FakeSummaryClient:
    return FakeSummaryClient()


@pytest.fixture
def pipeline(settings, store, mail_provider, summary_client) -> EmailDigestPipeline:
    return EmailDigestPipeline(settings, store, mail_provider, summary_client)
