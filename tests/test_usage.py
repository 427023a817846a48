"""
Usage accountant tests.
"""

from mailbrief.core.usage import UsageAccountant


def test_record_run_increments(store, user) -> None:
    accountant = UsageAccountant(store)

    accountant.record_run("u1", processed=3, summarized=2, api_calls=3)
    counters = accountant.record_run("u1", processed=1, summarized=1, api_calls=2)

    assert (counters.emails_processed, counters.summaries_generated, counters.api_calls) == (4, 3, 5)
    assert store.get_user("u1").usage.api_calls == 5


def test_record_run_never_raises(store) -> None:
    accountant = UsageAccountant(store)
    assert accountant.record_run("ghost", processed=1, summarized=0, api_calls=0) is None
