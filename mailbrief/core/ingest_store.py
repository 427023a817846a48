"""
Deduplicating ingest of scored messages into canonical PersistedEmail records.
"""

from typing import NamedTuple

from loguru import logger

from mailbrief.core.cleaner import BodyCleaner
from mailbrief.database import LocalStore
from mailbrief.exceptions import IngestError
from mailbrief.models import PersistedEmail, ScoredMessage

STARRED_LABELS = ("STARRED", "\\FLAGGED")


class IngestOutcome(NamedTuple):
    email: PersistedEmail
    created: bool


class EmailIngestor:
    """
    Idempotent writer for PersistedEmail records.
    Ingesting a (user_id, message_id) that already exists returns the stored record unchanged.
    """

    def __init__(self, local_store: LocalStore, cleaner: BodyCleaner) -> None:
        self.local_store = local_store
        self.cleaner = cleaner

    def to_persisted(self, user_id: str, message: ScoredMessage) -> PersistedEmail:
        """Map a scored message onto a new, not yet stored record."""
        return PersistedEmail(
            user_id=user_id,
            message_id=message.message_id,
            thread_id=message.thread_id,
            subject=message.subject,
            sender=message.sender,
            recipients=message.recipients,
            body=self.cleaner.normalize(message.body, message.html_body),
            html_body=message.html_body,
            snippet=message.snippet,
            labels=message.labels,
            is_important=message.is_important,
            is_read=not message.is_unread,
            is_starred=any(label.upper() in STARRED_LABELS for label in message.labels),
            received_at=message.received_at,
            score=message.score,
            category=message.category,
            attachments=message.attachments,
        )

    def ingest(self, user_id: str, message: ScoredMessage) -> IngestOutcome:
        """
        Persist one message unless it is already stored.

        Raises:
            IngestError: If the record cannot be built or written.
        """
        try:
            existing = self.local_store.find_email(user_id, message.message_id)
            if existing is not None:
                logger.debug(f"Email {message.message_id} already stored as {existing.id}, skipping")
                return IngestOutcome(existing, False)

            email, created = self.local_store.insert_email(self.to_persisted(user_id, message))
        except Exception as e:
            # Store errors and body-cleaner errors alike
            raise IngestError(f"Failed to store message {message.message_id}: {e}") from e

        if created:
            logger.debug(f"Stored email {message.message_id} as {email.id} (score={email.score})")
        else:
            # Lost an insert race; the winner's row is returned
            logger.debug(f"Email {message.message_id} was stored concurrently as {email.id}")
        return IngestOutcome(email, created)

    def ingest_all(self, user_id: str, messages: list[ScoredMessage]) -> list[PersistedEmail]:
        """
        Ingest a batch, skipping messages that fail.

        Returns:
            Stored records (new and pre-existing) in input order.
        """
        stored: list[PersistedEmail] = []
        for message in messages:
            try:
                stored.append(self.ingest(user_id, message).email)
            except IngestError as e:
                logger.error(str(e))
                self.local_store.record_error(user_id, "storing", str(e), message_id=message.message_id)

        logger.info(f"Ingested {len(stored)}/{len(messages)} messages for user {user_id}")
        return stored
