"""
LLM engine for email and digest summaries.
Uses LangChain to interact with the LLM and force structured JSON output.
"""

import json
import re
import time
from pathlib import Path
from typing import Any, Optional, Protocol, TypeVar

from langchain_core.prompts import ChatPromptTemplate, HumanMessagePromptTemplate, SystemMessagePromptTemplate
from langchain_openai import ChatOpenAI
from loguru import logger
from openai import APIConnectionError, APIError, APITimeoutError, RateLimitError
from pydantic import BaseModel, ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from mailbrief.config import Settings
from mailbrief.exceptions import SummarizationError
from mailbrief.models import DigestDraft, IndividualSummary, PersistedEmail, PersonaProfile, SummaryDraft

DraftT = TypeVar("DraftT", bound=BaseModel)

RETRYABLE_ERRORS = (APIConnectionError, APITimeoutError, RateLimitError)


# Default prompts (used when the prompt files are missing)
DEFAULT_EMAIL_SYSTEM_PROMPT = """You are an AI email assistant that creates concise, actionable summaries.
The user is a {role} who cares about: {interests}.
Their summary style preference is: {summary_style}, with {summary_length} length.
They want you to focus on: {focus_areas}.

Summarize the email in 2-3 sentences. Focus on:
1. Main purpose/topic
2. Key information or requests
3. Any actions needed from the recipient

Output a JSON object with these fields:
- "content": the main summary (2-3 sentences)
- "action_items": array of specific actions needed (may be empty)
- "priority": "high", "medium" or "low"
- "category": email category (work, personal, newsletters, promotions, social, ...)
- "sentiment": "positive", "neutral" or "negative"."""

DEFAULT_EMAIL_USER_PROMPT = """Email Details:
Subject: {subject}
From: {sender}
Date: {date}

Email Content:
{body}"""

DEFAULT_DIGEST_SYSTEM_PROMPT = """You are an AI email assistant creating a comprehensive daily email summary.
The user is a {role} who focuses on: {interests}.

Create a daily summary from the individual email summaries. Organize by:
1. High priority items that need immediate attention
2. Important updates and information
3. Lower priority items for awareness
4. Action items with deadlines or follow-ups needed

Output a JSON object with:
- "content": comprehensive daily summary organized by priority
- "action_items": array of all action items with priorities and ISO due dates when known
- "highlights": array of the most important points
- "categories": object mapping each email category to its count"""

DEFAULT_DIGEST_USER_PROMPT = """Individual Email Summaries:
{summaries}"""

# Prompt files hold the system part, a line with this marker, then the user part
PROMPT_SEPARATOR = "---USER---"

# Used to guess fields when the model ignores the JSON instructions
ACTION_KEYWORDS = ("action", "todo", "task", "follow up", "respond", "reply", "call", "meeting")
HIGH_PRIORITY_KEYWORDS = ("urgent", "asap", "immediately", "deadline", "critical")
LOW_PRIORITY_KEYWORDS = ("fyi", "information", "newsletter", "update")


class SummaryClient(Protocol):
    """Language-model client used by the summarizer and the aggregator."""

    def summarize_one(self, email: PersistedEmail, profile: Optional[PersonaProfile]) -> SummaryDraft: ...

    def summarize_digest(
        self, summaries: list[IndividualSummary], profile: Optional[PersonaProfile]
    ) -> DigestDraft: ...

    def model_info(self) -> dict: ...


class SummaryEngine:
    """
    LLM-powered summary engine.
    Produces per-email SummaryDrafts and per-run DigestDrafts.
    """

    def __init__(self, settings: Settings, llm: Optional[Any] = None) -> None:
        """
        Initialize the engine with LangChain ChatOpenAI.

        Args:
            settings: Application settings containing LLM configuration.
            llm: Pre-built chat model; built from settings when omitted.
        """
        self.settings = settings
        self.llm = llm or self._init_llm()
        self.email_prompt = self._load_prompt(
            settings.PROMPT_EMAIL_PATH, DEFAULT_EMAIL_SYSTEM_PROMPT, DEFAULT_EMAIL_USER_PROMPT
        )
        self.digest_prompt = self._load_prompt(
            settings.PROMPT_DIGEST_PATH, DEFAULT_DIGEST_SYSTEM_PROMPT, DEFAULT_DIGEST_USER_PROMPT
        )

        # Attempt count comes from settings, so the retry wrapper is built per instance
        self._call_llm = retry(
            stop=stop_after_attempt(settings.LLM_MAX_RETRIES),
            wait=wait_exponential(multiplier=1, min=4, max=10),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            reraise=True,
        )(self._call_llm)

        logger.info(
            f"SummaryEngine initialized with model: {settings.LLM_MODEL_NAME} "
            f"(base_url: {settings.OPENAI_BASE_URL})"
        )

    def _init_llm(self) -> ChatOpenAI:
        return ChatOpenAI(
            model=self.settings.LLM_MODEL_NAME,
            api_key=self.settings.OPENAI_API_KEY,
            base_url=self.settings.OPENAI_BASE_URL,
            temperature=self.settings.LLM_TEMPERATURE,
            max_tokens=self.settings.LLM_MAX_TOKENS,
            timeout=self.settings.LLM_TIMEOUT_SECONDS,
            max_retries=0,
        )

    def _load_prompt(self, path_value: str, default_system: str, default_user: str) -> ChatPromptTemplate:
        """
        Build a chat prompt from a prompt file, falling back to the defaults.
        A file without the separator line replaces only the system prompt.
        """
        system_prompt, user_prompt = default_system, default_user

        path = Path(path_value)
        if path.exists():
            try:
                text = path.read_text(encoding="utf-8").strip()
                if PROMPT_SEPARATOR in text:
                    system_prompt, user_prompt = (part.strip() for part in text.split(PROMPT_SEPARATOR, 1))
                else:
                    system_prompt = text
                logger.debug(f"Loaded prompt from: {path}")
            except OSError as e:
                logger.warning(f"Failed to load prompt from {path}: {e}, using default")
        else:
            logger.debug(f"Prompt file not found: {path}, using default")

        return ChatPromptTemplate.from_messages([
            SystemMessagePromptTemplate.from_template(system_prompt),
            HumanMessagePromptTemplate.from_template(user_prompt),
        ])

    @staticmethod
    def _persona_variables(profile: Optional[PersonaProfile]) -> dict[str, str]:
        profile = profile or PersonaProfile()
        return {
            "role": profile.role,
            "interests": ", ".join(profile.interests) or "general topics",
            "summary_style": profile.summary_style,
            "summary_length": profile.summary_length,
            "focus_areas": ", ".join(profile.focus_areas) or "everything relevant",
        }

    def _call_llm(self, messages: list, schema: type[DraftT]) -> DraftT:
        """
        Call the LLM for one structured result.

        Raises:
            APIError: If the API fails (retryable errors are retried first).
            ValueError: If the output cannot be parsed.
        """
        try:
            structured_llm = self.llm.with_structured_output(schema)
            result = structured_llm.invoke(messages)
            if isinstance(result, schema):
                return result
            return schema.model_validate(result)
        except RETRYABLE_ERRORS:
            raise
        except Exception as e:
            # Providers without tool calling, or output that fails validation
            logger.debug(f"Structured output failed, falling back to manual parsing: {e}")

        response = self.llm.invoke(messages)
        raw_content = response.content if hasattr(response, "content") else str(response)
        return self._parse_response(raw_content, schema)

    def _parse_response(self, raw_content: str, schema: type[DraftT]) -> DraftT:
        json_match = re.search(r"```(?:json)?\s*\n?(.*?)\n?```", raw_content, re.DOTALL)
        if json_match:
            json_str = json_match.group(1).strip()
        elif "{" in raw_content and "}" in raw_content:
            json_str = raw_content[raw_content.index("{"): raw_content.rindex("}") + 1]
        else:
            json_str = raw_content.strip()

        try:
            data = json.loads(json_str)
            if not isinstance(data, dict):
                raise TypeError(f"expected a JSON object, got {type(data).__name__}")
            return schema.model_validate(self._normalize_keys(data))
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.warning(f"Failed to parse LLM output as JSON ({e}), using text parsing")

        if not raw_content.strip():
            raise ValueError("LLM returned empty output")
        return schema.model_validate(self._parse_text_response(raw_content))

    @staticmethod
    def _normalize_keys(data: dict) -> dict:
        # camelCase keys and "summary" for "content" show up in model output
        aliases = {"actionItems": "action_items", "summary": "content"}
        normalized = dict(data)
        for alias, name in aliases.items():
            if alias in normalized and name not in normalized:
                normalized[name] = normalized.pop(alias)
        return normalized

    @staticmethod
    def _parse_text_response(raw_content: str) -> dict:
        lines = [line.strip() for line in raw_content.splitlines() if line.strip()]
        lowered = raw_content.lower()

        priority = "medium"
        if any(keyword in lowered for keyword in HIGH_PRIORITY_KEYWORDS):
            priority = "high"
        elif any(keyword in lowered for keyword in LOW_PRIORITY_KEYWORDS):
            priority = "low"

        return {
            "content": " ".join(lines[:3]),
            "action_items": [line for line in lines if any(kw in line.lower() for kw in ACTION_KEYWORDS)],
            "priority": priority,
        }

    def summarize_one(self, email: PersistedEmail, profile: Optional[PersonaProfile]) -> SummaryDraft:
        """
        Summarize a single email.

        Raises:
            SummarizationError: If the LLM call or output parsing fails.
        """
        start_time = time.time()
        try:
            messages = self.email_prompt.format_messages(
                **self._persona_variables(profile),
                subject=email.subject or "No subject",
                sender=email.sender or "Unknown sender",
                date=email.received_at.isoformat(sep=" ", timespec="minutes"),
                body=email.body or email.snippet or "No content available",
            )
            draft = self._call_llm(messages, SummaryDraft)
        except (APIError, ValueError, KeyError) as e:
            logger.error(f"LLM summary failed for email {email.id}: {e}")
            raise SummarizationError(f"Summary failed for email {email.id}: {e}") from e

        logger.debug(
            f"Summarized email {email.id}: priority={draft.priority}, "
            f"actions={len(draft.action_items)}, elapsed={time.time() - start_time:.2f}s"
        )
        return draft

    def summarize_digest(
        self, summaries: list[IndividualSummary], profile: Optional[PersonaProfile]
    ) -> DigestDraft:
        """
        Combine individual summaries into one digest.

        Raises:
            SummarizationError: If the LLM call or output parsing fails.
        """
        start_time = time.time()
        try:
            # A prompt file referencing an unknown placeholder fails here with KeyError
            messages = self.digest_prompt.format_messages(
                **self._persona_variables(profile),
                summaries=self.format_summaries(summaries),
            )
            draft = self._call_llm(messages, DigestDraft)
        except (APIError, ValueError, KeyError) as e:
            logger.error(f"LLM digest failed: {e}")
            raise SummarizationError(f"Digest generation failed: {e}") from e

        logger.info(f"Generated digest from {len(summaries)} summaries in {time.time() - start_time:.2f}s")
        return draft

    @staticmethod
    def format_summaries(summaries: list[IndividualSummary]) -> str:
        """Render individual summaries as the numbered list sent to the model."""
        blocks = []
        for index, item in enumerate(summaries, start=1):
            actions = "; ".join(action.description for action in item.summary.action_items) or "none"
            blocks.append(
                f"{index}. Subject: {item.subject or 'Unknown'}\n"
                f"   From: {item.sender}\n"
                f"   Summary: {item.summary.content}\n"
                f"   Priority: {item.summary.priority}\n"
                f"   Action Items: {actions}\n"
                f"   Category: {item.summary.category}"
            )
        return "\n\n".join(blocks)

    def test_connection(self) -> bool:
        """
        Test the LLM connection with a simple prompt.

        Returns:
            True if connection works, False otherwise.
        """
        try:
            logger.info("Testing LLM connection...")
            response = self.llm.invoke("Reply with 'OK' to confirm connection.")
            if response and response.content:
                logger.info(f"LLM connection successful: {response.content[:50]}")
                return True
            return False
        except APIError as e:
            logger.error(f"LLM connection test failed: {e}")
            return False

    def model_info(self) -> dict:
        return {
            "provider": self.settings.LLM_PROVIDER_NAME,
            "model": self.settings.LLM_MODEL_NAME,
            "base_url": self.settings.OPENAI_BASE_URL,
            "temperature": self.settings.LLM_TEMPERATURE,
            "max_tokens": self.settings.LLM_MAX_TOKENS,
        }
