"""
Persona scorer and filter tests.
"""

from datetime import timedelta

from conftest import make_message, yesterday_noon

from mailbrief.core.scorer import (
    basic_filter,
    categorize,
    filter_messages,
    score_message,
    sender_domain,
    should_include,
)
from mailbrief.models import CategoryRule, PersonaProfile


def test_sender_domain() -> None:
    assert sender_domain("Jane <Jane@Co.COM>") == "co.com"
    assert sender_domain("no address here") is None


def test_basic_filter_drops_newsletters() -> None:
    newsletter = make_message(
        sender="news@noreply.example.com",
        subject="Weekly Newsletter — unsubscribe here",
    )
    regular = make_message(sender="bob@co.com", subject="Lunch?")

    result = basic_filter([newsletter, regular])

    assert [m.message_id for m in result] == [regular.message_id]
    assert result[0].category == "general"


def test_filter_without_profile_uses_basic_filter() -> None:
    newsletter = make_message(sender="news@noreply.example.com", subject="Weekly Newsletter — unsubscribe here")
    assert filter_messages([newsletter], None) == []


def test_basic_filter_orders_important_first_then_newest() -> None:
    old_important = make_message(is_important=True, received_at=yesterday_noon() - timedelta(hours=5))
    newest = make_message(received_at=yesterday_noon() + timedelta(hours=5))
    middle = make_message(received_at=yesterday_noon())

    result = basic_filter([middle, newest, old_important])

    assert [m.message_id for m in result] == [old_important.message_id, newest.message_id, middle.message_id]


def test_basic_filter_caps_at_twenty() -> None:
    messages = [make_message() for _ in range(30)]
    assert len(basic_filter(messages)) == 20


def test_important_contact_scenario() -> None:
    profile = PersonaProfile(important_contacts=["boss@co.com"])
    message = make_message(sender="boss@co.com", is_unread=True, is_important=False)

    assert categorize(message, profile) == "work"
    assert score_message(message, profile) == 12
    assert should_include(message, profile)
    assert [m.score for m in filter_messages([message], profile)] == [12]


def test_score_terms_are_additive() -> None:
    profile = PersonaProfile(
        important_domains=["co.com"],
        keywords=["numbers", "friday"],
        interests=["quarterly"],
        categories={},
    )
    message = make_message(is_unread=False, is_important=True)

    # 3 important + 4 domain + 2*2 keywords + 1.5 interest = 12.5 -> 13
    assert score_message(message, profile) == 13


def test_exclude_pattern_penalizes_and_excludes() -> None:
    profile = PersonaProfile(exclude_patterns=["quarterly"], categories={})
    message = make_message(is_unread=True)

    assert score_message(message, profile) == 0
    assert not should_include(message, profile)


def test_score_never_negative() -> None:
    profile = PersonaProfile(exclude_patterns=["numbers"], categories={})
    message = make_message(is_unread=False)
    assert score_message(message, profile) == 0


def test_important_contact_strictly_increases_score() -> None:
    message = make_message(sender="carol@example.org")
    without = PersonaProfile()
    with_contact = PersonaProfile(important_contacts=["carol@example.org"])

    assert score_message(message, with_contact) > score_message(message, without)


def test_categorize_rule_order() -> None:
    profile = PersonaProfile()

    assert categorize(make_message(body="Team meeting moved. " * 10), profile) == "work"
    assert categorize(make_message(sender="robot@no-reply.shop.com"), profile) == "newsletters"
    assert categorize(make_message(subject="Newsletter #12"), PersonaProfile(categories={})) == "newsletters"
    assert categorize(make_message(subject="Special offer inside"), PersonaProfile(categories={})) == "promotions"
    assert categorize(make_message(sender="updates@linkedin.com"), PersonaProfile(categories={})) == "social"
    assert categorize(make_message(), PersonaProfile(categories={})) == "general"


def test_categorize_is_deterministic() -> None:
    profile = PersonaProfile(categories={"finance": CategoryRule(priority=4, keywords=["numbers"])})
    message = make_message()

    results = {categorize(message, profile) for _ in range(20)}
    assert results == {"finance"}


def test_low_priority_category_is_excluded() -> None:
    profile = PersonaProfile()
    promo = make_message(body="Huge discount on everything this week only. " * 4)

    assert categorize(promo, profile) == "promotions"
    assert not should_include(promo, profile)


def test_short_body_is_excluded() -> None:
    profile = PersonaProfile()
    assert not should_include(make_message(body="too short"), profile)


def test_filter_respects_max_per_digest_and_ranks() -> None:
    profile = PersonaProfile(max_emails_per_digest=5, important_contacts=["vip@co.com"])
    messages = [make_message() for _ in range(12)]
    vip = make_message(sender="vip@co.com")

    result = filter_messages(messages + [vip], profile)

    assert len(result) == 5
    assert result[0].message_id == vip.message_id
    assert all(a.score >= b.score for a, b in zip(result, result[1:]))


def test_filter_breaks_score_ties_by_recency() -> None:
    profile = PersonaProfile()
    older = make_message(received_at=yesterday_noon() - timedelta(hours=1))
    newer = make_message(received_at=yesterday_noon() + timedelta(hours=1))

    result = filter_messages([older, newer], profile)

    assert [m.message_id for m in result] == [newer.message_id, older.message_id]
