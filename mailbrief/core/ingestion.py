"""
Mail provider clients.
Defines the provider contract used by the pipeline and a Gmail IMAP implementation.
"""

import imaplib
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from imap_tools import AND, MailBox, MailMessage
from imap_tools.errors import ImapToolsError, MailboxLoginError
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from mailbrief.config import Settings
from mailbrief.core.cleaner import BodyCleaner
from mailbrief.exceptions import FetchError, MailAuthError
from mailbrief.models import Attachment, FetchQuery, RawMessage, to_local_naive

CredentialsResolver = Callable[[str], tuple[str, str]]

SNIPPET_LENGTH = 200


class MailProvider(Protocol):
    """Turns a user's mailbox into RawMessages."""

    def fetch_recent_messages(self, user_id: str, query: FetchQuery) -> list[RawMessage]:
        """
        Raises:
            MailAuthError: If the provider rejects the user's credentials.
            FetchError: For any other provider failure.
        """
        ...


class ImapMailProvider:
    """
    Gmail IMAP mail provider.
    Messages are read without changing their \\Seen flag, newest first.
    """

    # Gmail search extension; other servers reject it
    GMAIL_CATEGORY_QUERY = "X-GM-RAW"

    def __init__(
        self,
        settings: Settings,
        cleaner: Optional[BodyCleaner] = None,
        credentials: Optional[CredentialsResolver] = None,
    ) -> None:
        """
        Initialize the IMAP provider.

        Args:
            settings: Application settings (server, folder, default credentials).
            cleaner: Body cleaner used to turn HTML-only messages into text.
            credentials: Maps a user id to (login, app password). Defaults to the
                single account configured in settings.
        """
        self.settings = settings
        self.cleaner = cleaner or BodyCleaner(settings.MAX_BODY_LENGTH)
        self._credentials = credentials or self._configured_credentials

    def _configured_credentials(self, user_id: str) -> tuple[str, str]:
        return self.settings.GMAIL_USER, self.settings.GMAIL_APP_PASSWORD

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=retry_if_exception_type((imaplib.IMAP4.abort, ConnectionError, TimeoutError)),
        reraise=True,
    )
    def connect(self, login: str, password: str) -> MailBox:
        """
        Open an authenticated IMAP session on the configured folder.

        Raises:
            MailboxLoginError: If authentication fails (not retried).
        """
        mailbox = MailBox(self.settings.IMAP_SERVER)
        mailbox.login(login, password, initial_folder=self.settings.GMAIL_FOLDER)
        logger.info(f"Connected to {self.settings.IMAP_SERVER} as: {login}")
        return mailbox

    def build_criteria(self, query: FetchQuery) -> AND:
        """
        IMAP search criteria for a query.
        IMAP date search is day-granular; exact bounds are applied after fetching.
        """
        raw: list[str] = []
        exclusions = []
        if query.exclude_promotions:
            exclusions.append("-category:promotions")
        if query.exclude_social:
            exclusions.append("-category:social")
        if exclusions and "gmail" in self.settings.IMAP_SERVER.lower():
            raw.append(f'{self.GMAIL_CATEGORY_QUERY} "{" ".join(exclusions)}"')

        kwargs: dict = {"date_gte": query.after.date()}
        if query.before:
            kwargs["date_lt"] = query.before.date() + timedelta(days=1)
        if not query.include_read:
            kwargs["seen"] = False

        return AND(*raw, **kwargs)

    def fetch_recent_messages(self, user_id: str, query: FetchQuery) -> list[RawMessage]:
        """
        Fetch up to query.max_results messages received in [after, before], newest first.

        Raises:
            MailAuthError: If there are no credentials or the login is rejected.
            FetchError: On any other IMAP failure.
        """
        login, password = self._credentials(user_id)
        if not login or not password:
            raise MailAuthError(f"No IMAP credentials configured for user {user_id}")

        try:
            mailbox = self.connect(login, password)
        except MailboxLoginError as e:
            logger.error(f"IMAP login rejected for user {user_id}: {e}")
            raise MailAuthError(f"IMAP login rejected for {login}") from e
        except (ImapToolsError, imaplib.IMAP4.error, OSError) as e:
            logger.error(f"Failed to connect to {self.settings.IMAP_SERVER}: {e}")
            raise FetchError(f"Could not connect to {self.settings.IMAP_SERVER}: {e}") from e

        messages: list[RawMessage] = []
        try:
            criteria = self.build_criteria(query)
            logger.debug(f"Searching {self.settings.GMAIL_FOLDER} with: {criteria}")

            for msg in mailbox.fetch(criteria=criteria, mark_seen=False, reverse=True):
                message = self._convert_message(msg)
                if message is None or not self._in_range(message.received_at, query):
                    continue
                messages.append(message)
                if len(messages) >= query.max_results:
                    break
        except (ImapToolsError, imaplib.IMAP4.error, OSError) as e:
            logger.error(f"IMAP error fetching messages for user {user_id}: {e}")
            raise FetchError(f"IMAP fetch failed: {e}") from e
        finally:
            try:
                mailbox.logout()
            except (ImapToolsError, imaplib.IMAP4.error, OSError) as e:
                logger.warning(f"Error during logout: {e}")

        logger.info(f"Fetched {len(messages)} messages for user {user_id}")
        return messages

    @staticmethod
    def _in_range(received_at: datetime, query: FetchQuery) -> bool:
        after = to_local_naive(query.after)
        before = to_local_naive(query.before) if query.before else None
        return received_at >= after and (before is None or received_at <= before)

    def _convert_message(self, msg: MailMessage) -> Optional[RawMessage]:
        """
        Convert an imap_tools MailMessage to a RawMessage.

        Returns:
            RawMessage or None if the message cannot be converted.
        """
        try:
            message_id = self._header(msg, "message-id").strip("<>") or msg.uid
            if not message_id:
                logger.warning("Skipping message without Message-ID or UID")
                return None

            text = msg.text or ""
            html = msg.html or ""
            if not text.strip() and html:
                text = self.cleaner.html_to_text(html)

            flags = list(msg.flags)
            sender = msg.from_values.full if msg.from_values else (msg.from_ or "Unknown")

            return RawMessage(
                message_id=message_id,
                thread_id=self._header(msg, "in-reply-to").strip("<>") or None,
                subject=msg.subject or "(No Subject)",
                sender=sender,
                recipients=list(msg.to),
                body=text,
                html_body=html,
                snippet=" ".join(text.split())[:SNIPPET_LENGTH],
                labels=flags,
                is_important="\\Flagged" in flags,
                is_unread="\\Seen" not in flags,
                received_at=msg.date,
                attachments=[
                    Attachment(
                        filename=att.filename or "",
                        mime_type=att.content_type or "",
                        size=att.size,
                        attachment_id=att.content_id or None,
                    )
                    for att in msg.attachments
                ],
            )
        except (ValueError, AttributeError) as e:
            logger.error(f"Failed to convert message {msg.uid}: {e}")
            return None

    @staticmethod
    def _header(msg: MailMessage, name: str) -> str:
        values = msg.headers.get(name, ())
        return values[0].strip() if values else ""
