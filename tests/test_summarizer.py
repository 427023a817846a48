"""
Summarization orchestrator tests.
"""

from datetime import datetime

import pytest
from conftest import FakeSummaryClient

from mailbrief.core.summarizer import SummarizationOrchestrator, should_summarize
from mailbrief.models import EmailSummary, PersistedEmail, UserAccount

BODY_150 = "x" * 150
BODY_400 = "y" * 400


def _email(**overrides) -> PersistedEmail:
    data = {
        "user_id": "u1",
        "message_id": "m",
        "body": BODY_150,
        "is_read": True,
        "received_at": datetime(2026, 10, 17, 10),
    }
    data.update(overrides)
    return PersistedEmail(**data)


@pytest.mark.parametrize(
    "overrides, plan, expected",
    [
        ({"body": "short", "is_important": True, "score": 20}, "free", False),
        ({"is_important": True}, "free", True),
        ({"score": 5}, "free", True),
        ({"score": 4}, "free", False),
        ({"score": 4}, "pro", True),
        ({"score": 3}, "enterprise", True),
        ({"is_read": False, "body": BODY_400}, "free", True),
        ({"is_read": False}, "free", False),
    ],
)
def test_should_summarize(overrides, plan, expected) -> None:
    assert should_summarize(_email(**overrides), plan) is expected


def _stored(store, count: int, **overrides) -> list[PersistedEmail]:
    emails = []
    for index in range(count):
        email, _ = store.insert_email(
            _email(message_id=f"m{index}", subject=f"Subject {index}", score=9, **overrides)
        )
        emails.append(email)
    return emails


def test_failures_are_isolated(store) -> None:
    client = FakeSummaryClient(fail_subjects=("Subject 1",))
    orchestrator = SummarizationOrchestrator(client, store, batch_size=2, batch_delay=0)
    emails = _stored(store, 3)

    report = orchestrator.summarize(UserAccount(user_id="u1"), emails, None)

    assert [s.email_id for s in report.summaries] == [emails[0].id, emails[2].id]
    assert report.generated_count == 2
    assert report.failed_email_ids == [emails[1].id]
    assert report.api_calls == 3
    assert store.get_email(emails[0].id).summary.content == "Summary of Subject 0"
    assert store.get_email(emails[1].id).summary is None
    assert store.list_errors("u1")[0]["stage"] == "summarizing"


def test_existing_summary_is_reused(store) -> None:
    client = FakeSummaryClient()
    orchestrator = SummarizationOrchestrator(client, store, batch_size=10, batch_delay=0)
    emails = _stored(store, 2)
    existing = EmailSummary(content="Already done")
    store.attach_summary(emails[0].id, existing)
    emails[0] = store.get_email(emails[0].id)

    report = orchestrator.summarize(UserAccount(user_id="u1"), emails, None)

    assert client.one_calls == [emails[1].message_id]
    assert report.api_calls == 1
    assert report.generated_count == 1
    assert report.reused_count == 1
    assert report.summaries[0].summary.content == "Already done"


def test_unselected_emails_are_not_sent(store) -> None:
    client = FakeSummaryClient()
    orchestrator = SummarizationOrchestrator(client, store, batch_delay=0)
    email, _ = store.insert_email(_email(message_id="low", score=0))

    report = orchestrator.summarize(UserAccount(user_id="u1"), [email], None)

    assert client.one_calls == []
    assert report.summaries == []
    assert report.api_calls == 0


def test_batches_cover_every_email(store) -> None:
    client = FakeSummaryClient()
    orchestrator = SummarizationOrchestrator(client, store, batch_size=3, batch_delay=0)
    emails = _stored(store, 7)

    report = orchestrator.summarize(UserAccount(user_id="u1", plan="pro"), emails, None)

    assert sorted(client.one_calls) == sorted(e.message_id for e in emails)
    assert [s.email_id for s in report.summaries] == [e.id for e in emails]
