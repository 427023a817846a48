"""
Persona profile: the per-user rules that drive scoring, categorization and filtering.
Plain data only; the scoring logic lives in mailbrief.core.scorer.
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

SummaryStyle = Literal["brief", "detailed", "action-focused", "balanced"]
SummaryLength = Literal["short", "medium", "long"]
FocusArea = Literal["deadlines", "meetings", "tasks", "updates", "decisions", "approvals"]


class CategoryRule(BaseModel):
    """Priority and matching keywords for one email category."""

    priority: int = Field(3, ge=1, le=5, description="5 = highest priority")
    keywords: list[str] = Field(default_factory=list)

    @field_validator("keywords")
    @classmethod
    def normalize_keywords(cls, value: list[str]) -> list[str]:
        return _normalize_terms(value)


def default_categories() -> dict[str, CategoryRule]:
    """Category rules given to a freshly created profile."""
    return {
        "work": CategoryRule(
            priority=5,
            keywords=["meeting", "project", "deadline", "urgent", "action required", "important"],
        ),
        "personal": CategoryRule(priority=3, keywords=["family", "friend", "personal", "invitation"]),
        "newsletters": CategoryRule(priority=1, keywords=["newsletter", "subscription", "digest", "unsubscribe"]),
        "social": CategoryRule(priority=2, keywords=["linkedin", "facebook", "twitter", "notification"]),
        "promotions": CategoryRule(priority=1, keywords=["sale", "offer", "discount", "promotion", "coupon"]),
    }


def _normalize_terms(values: list[str]) -> list[str]:
    """Trim, lower-case and de-duplicate while keeping first-seen order."""
    seen: dict[str, None] = {}
    for value in values:
        term = value.strip().lower()
        if term:
            seen.setdefault(term, None)
    return list(seen)


class PersonaProfile(BaseModel):
    """
    Per-user scoring configuration.
    Term lists behave as sets: duplicates and case differences collapse on validation.
    Category order matters, the first category whose keywords match wins.
    """

    role: str = Field("professional", max_length=100)
    important_contacts: list[str] = Field(default_factory=list)
    important_domains: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    interests: list[str] = Field(default_factory=list)
    exclude_patterns: list[str] = Field(default_factory=list)
    categories: dict[str, CategoryRule] = Field(default_factory=default_categories)
    minimum_email_length: int = Field(100, ge=50)
    max_emails_per_digest: int = Field(20, ge=5, le=100)
    summary_style: SummaryStyle = "balanced"
    summary_length: SummaryLength = "medium"
    focus_areas: list[FocusArea] = Field(default_factory=lambda: ["tasks", "deadlines", "meetings", "updates"])

    @field_validator("important_contacts", "important_domains", "keywords", "interests", "exclude_patterns")
    @classmethod
    def normalize_terms(cls, value: list[str]) -> list[str]:
        return _normalize_terms(value)

    @field_validator("categories")
    @classmethod
    def normalize_category_names(cls, value: dict[str, CategoryRule]) -> dict[str, CategoryRule]:
        return {name.strip().lower(): rule for name, rule in value.items() if name.strip()}

    def category_priority(self, category: str) -> int | None:
        """Priority of a configured category, None when the profile doesn't define it."""
        rule = self.categories.get(category)
        return rule.priority if rule else None

    @property
    def high_priority_categories(self) -> list[str]:
        return [name for name, rule in self.categories.items() if rule.priority >= 4]
