"""
Daily aggregator tests.
"""

from datetime import datetime

import pytest
from conftest import FakeSummaryClient

from mailbrief.core.aggregator import (
    DIGEST_TRUNCATION_MARKER,
    MAX_DIGEST_CONTENT_LENGTH,
    DailyAggregator,
    normalize_digest,
)
from mailbrief.exceptions import AggregationError
from mailbrief.models import ActionItem, DateRange, Digest, EmailSummary, IndividualSummary, previous_day_range


def _summaries() -> list[IndividualSummary]:
    return [
        IndividualSummary(
            email_id=1,
            subject="Invoice",
            sender="billing@co.com",
            summary=EmailSummary(content="Pay it", category="work", action_items=[ActionItem(description="Pay")]),
        ),
        IndividualSummary(
            email_id=2,
            subject="Party",
            sender="friend@home.net",
            summary=EmailSummary(content="Saturday", category="personal"),
        ),
    ]


def test_empty_input_returns_none(store) -> None:
    client = FakeSummaryClient()
    assert DailyAggregator(client, store).aggregate("u1", [], None) is None
    assert client.digest_calls == []


def test_aggregate_builds_and_stores_digest(store) -> None:
    aggregator = DailyAggregator(FakeSummaryClient(), store)

    digest = aggregator.aggregate("u1", _summaries(), None, digest_type="daily")

    assert digest.id is not None
    assert digest.email_ids == [1, 2]
    assert digest.content == "Pay it\nSaturday"
    assert digest.categories == {"work": 1, "personal": 1}
    assert [(item.description, item.email_id) for item in digest.action_items] == [("Pay", 1)]
    assert digest.metadata.provider == "fake"
    assert digest.metadata.email_count == 2

    start, end = previous_day_range()
    assert (digest.date_range.start, digest.date_range.end) == (start, end)
    assert end.hour == 23 and end.microsecond == 999999

    assert store.latest_digest("u1").id == digest.id


def test_aggregate_uses_given_range_and_type(store) -> None:
    aggregator = DailyAggregator(FakeSummaryClient(), store)
    date_range = DateRange(start=datetime(2026, 10, 18, 6), end=datetime(2026, 10, 18, 12))

    digest = aggregator.aggregate("u1", _summaries(), None, digest_type="on-demand", date_range=date_range)

    assert digest.type == "on-demand"
    assert digest.date_range == date_range


def test_model_failure_raises_aggregation_error(store) -> None:
    aggregator = DailyAggregator(FakeSummaryClient(digest_error=True), store)

    with pytest.raises(AggregationError):
        aggregator.aggregate("u1", _summaries(), None)
    assert store.latest_digest("u1") is None


def test_normalize_digest_truncates_and_dedupes() -> None:
    digest = Digest(
        user_id="u1",
        content="a" * (MAX_DIGEST_CONTENT_LENGTH + 500),
        email_ids=[3, 1, 3, 2, 1],
        date_range=DateRange(start=datetime(2026, 10, 17), end=datetime(2026, 10, 17, 23)),
    )

    normalized = normalize_digest(digest)

    assert len(normalized.content) == MAX_DIGEST_CONTENT_LENGTH
    assert normalized.content.endswith(DIGEST_TRUNCATION_MARKER)
    assert normalized.email_ids == [3, 1, 2]
    assert normalized.metadata.email_count == 3


def test_date_range_must_be_ordered() -> None:
    with pytest.raises(ValueError):
        DateRange(start=datetime(2026, 10, 18), end=datetime(2026, 10, 17))
