"""
Persona scoring and filtering.
Ranks raw messages against a PersonaProfile and trims them to the digest bound.

Every function here is pure: the same (message, profile) always gives the same answer.
"""

import math
import re
from typing import Iterable, Optional

from loguru import logger

from mailbrief.models import PersonaProfile, RawMessage, ScoredMessage

# Score weights
UNREAD_BONUS = 2
IMPORTANT_BONUS = 3
CONTACT_BONUS = 5
DOMAIN_BONUS = 4
KEYWORD_WEIGHT = 2
INTEREST_WEIGHT = 1.5
EXCLUDE_PENALTY = 5

MIN_PRIORITY_TO_INCLUDE = 2

# Used only when the user has no profile
BASIC_FILTER_KEYWORDS = ("unsubscribe", "newsletter", "noreply", "no-reply")
BASIC_FILTER_LIMIT = 20

SOCIAL_DOMAINS = ("linkedin.com", "facebookmail.com", "twitter.com")

_DOMAIN_RE = re.compile(r"@([\w.-]+)")

# Profile with no categories: basic-filter annotations only use the flag bonuses.
_BARE_PROFILE = PersonaProfile(categories={})


def sender_domain(sender: str) -> Optional[str]:
    """Domain part of the sender address, lower-cased."""
    match = _DOMAIN_RE.search(sender or "")
    return match.group(1).lower().rstrip(".") if match else None


def _text(message: RawMessage) -> str:
    return f"{message.subject} {message.body}".lower()


def _count_matches(terms: Iterable[str], text: str) -> int:
    return sum(1 for term in set(terms) if term and term in text)


def matches_exclude_pattern(message: RawMessage, profile: PersonaProfile) -> bool:
    text = _text(message)
    return any(pattern in text for pattern in profile.exclude_patterns)


def categorize(message: RawMessage, profile: PersonaProfile) -> str:
    """
    Resolve the category of a message.

    Order: configured category keywords (profile order), then no-reply senders,
    then unsubscribe/promotional wording, then social platforms, then the default.
    """
    subject = message.subject.lower()
    body = message.body.lower()
    sender = message.sender.lower()

    for name, rule in profile.categories.items():
        if any(kw in subject or kw in body or kw in sender for kw in rule.keywords):
            return name

    if "noreply" in sender or "no-reply" in sender or subject.startswith("newsletter"):
        return "newsletters"
    if "unsubscribe" in subject or "unsubscribe" in body or "promotion" in subject or "offer" in subject:
        return "promotions"

    domain = sender_domain(message.sender) or ""
    if any(domain == social or domain.endswith("." + social) for social in SOCIAL_DOMAINS):
        return "social"

    return "work" if "work" in profile.categories else "general"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def score_message(message: RawMessage, profile: PersonaProfile, category: Optional[str] = None) -> int:
    """
    Additive relevance score, clamped to >= 0 and rounded half-up.

    Args:
        message: Message to score.
        profile: The user's persona profile.
        category: Pre-resolved category; resolved here when omitted.

    Returns:
        Non-negative integer score.
    """
    score: float = 0
    text = _text(message)
    sender = message.sender.lower()

    if message.is_unread:
        score += UNREAD_BONUS
    if message.is_important:
        score += IMPORTANT_BONUS

    if any(contact in sender for contact in profile.important_contacts):
        score += CONTACT_BONUS

    domain = sender_domain(message.sender)
    if domain and any(important in domain for important in profile.important_domains):
        score += DOMAIN_BONUS

    score += KEYWORD_WEIGHT * _count_matches(profile.keywords, text)
    score += INTEREST_WEIGHT * _count_matches(profile.interests, text)

    priority = profile.category_priority(category or categorize(message, profile))
    if priority is not None:
        score += priority

    if matches_exclude_pattern(message, profile):
        score -= EXCLUDE_PENALTY

    return _round_half_up(max(0.0, score))


def should_include(message: RawMessage, profile: PersonaProfile, category: Optional[str] = None) -> bool:
    """Inclusion predicate applied after scoring."""
    if len(message.body) < profile.minimum_email_length:
        return False
    if matches_exclude_pattern(message, profile):
        return False

    priority = profile.category_priority(category or categorize(message, profile))
    if priority is not None and priority < MIN_PRIORITY_TO_INCLUDE:
        return False
    return True


def _rank(messages: list[ScoredMessage]) -> list[ScoredMessage]:
    # Stable two-pass sort: recency first, then score.
    ordered = sorted(messages, key=lambda m: m.received_at, reverse=True)
    return sorted(ordered, key=lambda m: m.score, reverse=True)


def basic_filter(messages: list[RawMessage]) -> list[ScoredMessage]:
    """
    Fallback filter for users without a profile.
    Drops obvious promotional senders/subjects, ranks important first then newest first.
    """
    kept: list[ScoredMessage] = []
    for message in messages:
        sender = message.sender.lower()
        subject = message.subject.lower()
        if any(kw in sender or kw in subject for kw in BASIC_FILTER_KEYWORDS):
            continue
        kept.append(
            ScoredMessage(
                **message.model_dump(exclude={"score", "category"}),
                score=score_message(message, _BARE_PROFILE, category="general"),
                category="general",
            )
        )

    kept.sort(key=lambda m: m.received_at, reverse=True)
    kept.sort(key=lambda m: m.is_important, reverse=True)
    return kept[:BASIC_FILTER_LIMIT]


def filter_messages(messages: list[RawMessage], profile: Optional[PersonaProfile]) -> list[ScoredMessage]:
    """
    Score, filter, rank and truncate messages for one user.

    Args:
        messages: Raw messages from the mail provider.
        profile: The user's profile, or None to use the basic filter.

    Returns:
        At most profile.max_emails_per_digest scored messages, best first.
    """
    if profile is None:
        result = basic_filter(messages)
        logger.debug(f"Basic filter kept {len(result)}/{len(messages)} messages")
        return result

    scored: list[ScoredMessage] = []
    for message in messages:
        category = categorize(message, profile)
        if not should_include(message, profile, category):
            continue
        scored.append(
            ScoredMessage(
                **message.model_dump(exclude={"score", "category"}),
                score=score_message(message, profile, category),
                category=category,
            )
        )

    result = _rank(scored)[: profile.max_emails_per_digest]
    logger.debug(f"Persona filter kept {len(result)}/{len(messages)} messages")
    return result
