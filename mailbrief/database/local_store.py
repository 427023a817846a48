"""
Local SQLite storage for users, profiles, emails and digests.
The UNIQUE(user_id, message_id) constraint is the source of truth for deduplication.
"""

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from mailbrief.exceptions import NotFoundError
from mailbrief.models import (
    ActionItem,
    DateRange,
    Digest,
    DigestMetadata,
    EmailSummary,
    PersistedEmail,
    PersonaProfile,
    UsageCounters,
    UserAccount,
)


def _dt(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width ISO strings so range queries can compare them as text
    return value.isoformat(timespec="microseconds") if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _same_month(a: datetime, b: datetime) -> bool:
    return (a.year, a.month) == (b.year, b.month)


class LocalStore:
    """
    SQLite-based storage for the digest pipeline.
    Each thread gets its own connection.
    """

    def __init__(self, db_path: Optional[Path] = None):
        """
        Initialize the local store.

        Args:
            db_path: Path to SQLite database file. Defaults to data/mailbrief.db
        """
        if db_path is None:
            db_path = Path("data") / "mailbrief.db"

        self.db_path = Path(db_path)
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create database directory {self.db_path.parent}: {e}")
            raise

        self._thread_local = threading.local()

        try:
            self._init_db()
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the calling thread's connection."""
        conn = getattr(self._thread_local, "connection", None)

        if conn is None:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=10)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            self._thread_local.connection = conn
            logger.debug(f"Created database connection for thread {threading.get_ident()}")

        return conn

    def _init_db(self) -> None:
        """Initialize database schema."""
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                email TEXT NOT NULL DEFAULT '',
                plan TEXT NOT NULL DEFAULT 'free',
                emails_processed INTEGER NOT NULL DEFAULT 0,
                summaries_generated INTEGER NOT NULL DEFAULT 0,
                api_calls INTEGER NOT NULL DEFAULT 0,
                last_reset_at TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS personas (
                user_id TEXT PRIMARY KEY,
                profile TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS emails (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                message_id TEXT NOT NULL,
                thread_id TEXT,
                subject TEXT,
                sender TEXT,
                recipients TEXT NOT NULL DEFAULT '[]',
                body TEXT,
                html_body TEXT,
                snippet TEXT,
                labels TEXT NOT NULL DEFAULT '[]',
                is_important BOOLEAN DEFAULT FALSE,
                is_read BOOLEAN DEFAULT FALSE,
                is_archived BOOLEAN DEFAULT FALSE,
                is_starred BOOLEAN DEFAULT FALSE,
                received_at TEXT NOT NULL,
                processed_at TEXT NOT NULL,
                score INTEGER NOT NULL DEFAULT 0,
                category TEXT NOT NULL DEFAULT 'general',
                attachments TEXT NOT NULL DEFAULT '[]',
                summary TEXT,
                UNIQUE (user_id, message_id)
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_emails_user_received ON emails(user_id, received_at DESC)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS digests (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                content TEXT NOT NULL,
                email_ids TEXT NOT NULL DEFAULT '[]',
                action_items TEXT NOT NULL DEFAULT '[]',
                highlights TEXT NOT NULL DEFAULT '[]',
                categories TEXT NOT NULL DEFAULT '{}',
                range_start TEXT NOT NULL,
                range_end TEXT NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}',
                is_archived BOOLEAN DEFAULT FALSE,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_digests_user_created ON digests(user_id, created_at DESC)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS processing_errors (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                message_id TEXT,
                stage TEXT NOT NULL,
                error_message TEXT,
                error_time TEXT NOT NULL
            )
        """)

        conn.commit()
        logger.info(f"Database initialized at: {self.db_path}")

    # --- users -----------------------------------------------------------

    def upsert_user(self, account: UserAccount) -> UserAccount:
        """
        Create a user or update its email and plan. Usage counters are never overwritten.

        Returns:
            The stored account.
        """
        conn = self._get_connection()
        now = _dt(datetime.now())
        conn.execute(
            """
            INSERT INTO users (user_id, email, plan, last_reset_at, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET email = excluded.email, plan = excluded.plan
            """,
            (account.user_id, account.email, account.plan, _dt(account.usage.last_reset_at), now),
        )
        conn.commit()
        logger.debug(f"Upserted user {account.user_id} (plan={account.plan})")
        return self.get_user(account.user_id)

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        row = self._get_connection().execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return UserAccount(
            user_id=row["user_id"],
            email=row["email"],
            plan=row["plan"],
            usage=UsageCounters(
                emails_processed=row["emails_processed"],
                summaries_generated=row["summaries_generated"],
                api_calls=row["api_calls"],
                last_reset_at=_parse_dt(row["last_reset_at"]),
            ),
        )

    def increment_usage(
        self,
        user_id: str,
        emails_processed: int = 0,
        summaries_generated: int = 0,
        api_calls: int = 0,
        now: Optional[datetime] = None,
    ) -> UsageCounters:
        """
        Add to the usage counters of a user.
        Counters are zeroed first when the stored reset month is not the current month;
        the reset and the increment happen in one transaction.

        Raises:
            NotFoundError: If the user does not exist.
        """
        now = now or datetime.now()
        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            row = conn.execute(
                "SELECT emails_processed, summaries_generated, api_calls, last_reset_at FROM users WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"User not found: {user_id}")

            counters = UsageCounters(
                emails_processed=row["emails_processed"],
                summaries_generated=row["summaries_generated"],
                api_calls=row["api_calls"],
                last_reset_at=_parse_dt(row["last_reset_at"]),
            )
            if not _same_month(counters.last_reset_at, now):
                logger.info(f"Monthly usage reset for user {user_id}")
                counters = UsageCounters(last_reset_at=now)

            counters.emails_processed += emails_processed
            counters.summaries_generated += summaries_generated
            counters.api_calls += api_calls

            conn.execute(
                """
                UPDATE users
                SET emails_processed = ?, summaries_generated = ?, api_calls = ?, last_reset_at = ?
                WHERE user_id = ?
                """,
                (
                    counters.emails_processed,
                    counters.summaries_generated,
                    counters.api_calls,
                    _dt(counters.last_reset_at),
                    user_id,
                ),
            )
            conn.commit()
        except BaseException:
            conn.rollback()
            raise

        return counters

    # --- profiles --------------------------------------------------------

    def save_profile(self, user_id: str, profile: PersonaProfile) -> PersonaProfile:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO personas (user_id, profile, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET profile = excluded.profile, updated_at = excluded.updated_at
            """,
            (user_id, profile.model_dump_json(), _dt(datetime.now())),
        )
        conn.commit()
        logger.debug(f"Saved profile for user {user_id}")
        return profile

    def get_profile(self, user_id: str) -> Optional[PersonaProfile]:
        row = self._get_connection().execute(
            "SELECT profile FROM personas WHERE user_id = ?", (user_id,)
        ).fetchone()
        return PersonaProfile.model_validate_json(row["profile"]) if row else None

    def delete_profile(self, user_id: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute("DELETE FROM personas WHERE user_id = ?", (user_id,))
        conn.commit()
        return cursor.rowcount > 0

    def list_profiled_users(self) -> list[str]:
        """Ids of users that have both an account and a profile."""
        rows = self._get_connection().execute(
            """
            SELECT u.user_id FROM users u JOIN personas p ON p.user_id = u.user_id
            ORDER BY u.user_id
            """
        ).fetchall()
        return [row["user_id"] for row in rows]

    # --- emails ----------------------------------------------------------

    def _row_to_email(self, row: sqlite3.Row) -> PersistedEmail:
        return PersistedEmail(
            id=row["id"],
            user_id=row["user_id"],
            message_id=row["message_id"],
            thread_id=row["thread_id"],
            subject=row["subject"],
            sender=row["sender"],
            recipients=json.loads(row["recipients"]),
            body=row["body"] or "",
            html_body=row["html_body"] or "",
            snippet=row["snippet"] or "",
            labels=json.loads(row["labels"]),
            is_important=bool(row["is_important"]),
            is_read=bool(row["is_read"]),
            is_archived=bool(row["is_archived"]),
            is_starred=bool(row["is_starred"]),
            received_at=_parse_dt(row["received_at"]),
            processed_at=_parse_dt(row["processed_at"]),
            score=row["score"],
            category=row["category"],
            attachments=json.loads(row["attachments"]),
            summary=EmailSummary.model_validate_json(row["summary"]) if row["summary"] else None,
        )

    def find_email(self, user_id: str, message_id: str) -> Optional[PersistedEmail]:
        """Look up an email by its natural key."""
        row = self._get_connection().execute(
            "SELECT * FROM emails WHERE user_id = ? AND message_id = ?", (user_id, message_id)
        ).fetchone()
        return self._row_to_email(row) if row else None

    def get_email(self, email_id: int) -> Optional[PersistedEmail]:
        row = self._get_connection().execute("SELECT * FROM emails WHERE id = ?", (email_id,)).fetchone()
        return self._row_to_email(row) if row else None

    def insert_email(self, email: PersistedEmail) -> tuple[PersistedEmail, bool]:
        """
        Insert an email unless its (user_id, message_id) already exists.

        Returns:
            The stored record and whether this call created it.
        """
        conn = self._get_connection()
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO emails
            (user_id, message_id, thread_id, subject, sender, recipients, body, html_body, snippet,
             labels, is_important, is_read, is_archived, is_starred, received_at, processed_at,
             score, category, attachments, summary)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                email.user_id,
                email.message_id,
                email.thread_id,
                email.subject,
                email.sender,
                json.dumps(email.recipients),
                email.body,
                email.html_body,
                email.snippet,
                json.dumps(email.labels),
                email.is_important,
                email.is_read,
                email.is_archived,
                email.is_starred,
                _dt(email.received_at),
                _dt(email.processed_at),
                email.score,
                email.category,
                json.dumps([a.model_dump(mode="json") for a in email.attachments]),
                email.summary.model_dump_json() if email.summary else None,
            ),
        )
        conn.commit()
        created = cursor.rowcount > 0

        stored = self.find_email(email.user_id, email.message_id)
        if stored is None:
            raise sqlite3.DatabaseError(f"Email {email.message_id} missing after insert")
        return stored, created

    def attach_summary(self, email_id: int, summary: EmailSummary) -> None:
        """
        Store the summary of an email.

        Raises:
            NotFoundError: If the email does not exist.
        """
        conn = self._get_connection()
        cursor = conn.execute(
            "UPDATE emails SET summary = ? WHERE id = ?", (summary.model_dump_json(), email_id)
        )
        conn.commit()
        if cursor.rowcount == 0:
            raise NotFoundError(f"Email not found: {email_id}")

    def list_recent_emails(self, user_id: str, limit: int = 10) -> list[PersistedEmail]:
        rows = self._get_connection().execute(
            "SELECT * FROM emails WHERE user_id = ? ORDER BY received_at DESC LIMIT ?", (user_id, limit)
        ).fetchall()
        return [self._row_to_email(row) for row in rows]

    # --- digests ---------------------------------------------------------

    def _row_to_digest(self, row: sqlite3.Row) -> Digest:
        return Digest(
            id=row["id"],
            user_id=row["user_id"],
            type=row["type"],
            content=row["content"],
            email_ids=json.loads(row["email_ids"]),
            action_items=json.loads(row["action_items"]),
            highlights=json.loads(row["highlights"]),
            categories=json.loads(row["categories"]),
            date_range=DateRange(start=_parse_dt(row["range_start"]), end=_parse_dt(row["range_end"])),
            metadata=DigestMetadata.model_validate_json(row["metadata"]),
            is_archived=bool(row["is_archived"]),
            created_at=_parse_dt(row["created_at"]),
        )

    @staticmethod
    def _dump_action_items(items: list[ActionItem]) -> str:
        return json.dumps([item.model_dump(mode="json") for item in items])

    def save_digest(self, digest: Digest) -> Digest:
        """
        Persist a new digest.

        Returns:
            The digest with its assigned id.
        """
        conn = self._get_connection()
        cursor = conn.execute(
            """
            INSERT INTO digests
            (user_id, type, content, email_ids, action_items, highlights, categories,
             range_start, range_end, metadata, is_archived, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                digest.user_id,
                digest.type,
                digest.content,
                json.dumps(digest.email_ids),
                self._dump_action_items(digest.action_items),
                json.dumps(digest.highlights),
                json.dumps(digest.categories),
                _dt(digest.date_range.start),
                _dt(digest.date_range.end),
                digest.metadata.model_dump_json(),
                digest.is_archived,
                _dt(digest.created_at),
            ),
        )
        conn.commit()
        logger.debug(f"Saved {digest.type} digest {cursor.lastrowid} for user {digest.user_id}")
        return digest.model_copy(update={"id": cursor.lastrowid})

    def get_digest(self, digest_id: int) -> Optional[Digest]:
        row = self._get_connection().execute("SELECT * FROM digests WHERE id = ?", (digest_id,)).fetchone()
        return self._row_to_digest(row) if row else None

    def latest_digest(self, user_id: str, digest_type: Optional[str] = None) -> Optional[Digest]:
        """Most recently created digest of a user, optionally of one type."""
        query = "SELECT * FROM digests WHERE user_id = ?"
        params: list[Any] = [user_id]
        if digest_type:
            query += " AND type = ?"
            params.append(digest_type)
        query += " ORDER BY created_at DESC, id DESC LIMIT 1"

        row = self._get_connection().execute(query, params).fetchone()
        return self._row_to_digest(row) if row else None

    def has_digest_since(self, user_id: str, since: datetime, digest_type: str = "daily") -> bool:
        row = self._get_connection().execute(
            "SELECT 1 FROM digests WHERE user_id = ? AND type = ? AND created_at >= ? LIMIT 1",
            (user_id, digest_type, _dt(since)),
        ).fetchone()
        return row is not None

    def pending_action_items(self, user_id: str, limit: int = 50) -> list[dict]:
        """
        Pending action items across the user's non-archived digests, newest digest first.

        Returns:
            Dicts with digest_id, index (position in the digest) and the item fields.
        """
        rows = self._get_connection().execute(
            """
            SELECT id, action_items FROM digests
            WHERE user_id = ? AND is_archived = 0
            ORDER BY created_at DESC, id DESC
            """,
            (user_id,),
        ).fetchall()

        pending: list[dict] = []
        for row in rows:
            for index, raw in enumerate(json.loads(row["action_items"])):
                item = ActionItem.model_validate(raw)
                if item.completed:
                    continue
                pending.append({"digest_id": row["id"], "index": index, **item.model_dump(mode="json")})
                if len(pending) >= limit:
                    return pending
        return pending

    def complete_action_item(self, digest_id: int, index: int, at: Optional[datetime] = None) -> ActionItem:
        """
        Mark one action item of a digest as completed.

        Raises:
            NotFoundError: If the digest or the item does not exist.
            ValueError: If the item is already completed.
        """
        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            row = conn.execute("SELECT action_items FROM digests WHERE id = ?", (digest_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"Digest not found: {digest_id}")

            items = [ActionItem.model_validate(raw) for raw in json.loads(row["action_items"])]
            if not 0 <= index < len(items):
                raise NotFoundError(f"Action item {index} not found in digest {digest_id}")

            items[index].complete(at)
            conn.execute(
                "UPDATE digests SET action_items = ? WHERE id = ?", (self._dump_action_items(items), digest_id)
            )
            conn.commit()
        except BaseException:
            conn.rollback()
            raise

        return items[index]

    # --- errors & stats --------------------------------------------------

    def record_error(self, user_id: str, stage: str, error_message: str, message_id: Optional[str] = None) -> None:
        """
        Record a per-entity processing error.

        Args:
            user_id: Owner of the failing entity.
            stage: Pipeline stage that failed (storing, summarizing, ...).
            error_message: Error description.
            message_id: Provider message id, when the error concerns one message.
        """
        conn = self._get_connection()

        try:
            conn.execute(
                """
                INSERT INTO processing_errors (user_id, message_id, stage, error_message, error_time)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, message_id, stage, error_message, _dt(datetime.now())),
            )
            conn.commit()
            logger.warning(f"Recorded {stage} error for user {user_id} ({message_id}): {error_message}")
        except sqlite3.Error as e:
            logger.error(f"Failed to record error: {e}")

    def list_errors(self, user_id: str, limit: int = 20) -> list[dict]:
        rows = self._get_connection().execute(
            """
            SELECT message_id, stage, error_message, error_time FROM processing_errors
            WHERE user_id = ? ORDER BY id DESC LIMIT ?
            """,
            (user_id, limit),
        ).fetchall()
        return [{key: row[key] for key in row.keys()} for row in rows]

    def get_stats(self, user_id: str) -> dict:
        """
        Get processing statistics for one user.

        Returns:
            Dictionary with total_emails, total_summarized, total_digests, total_errors, avg_score
        """
        conn = self._get_connection()

        row = conn.execute(
            """
            SELECT COUNT(*) AS total, COUNT(summary) AS summarized, AVG(score) AS avg_score
            FROM emails WHERE user_id = ?
            """,
            (user_id,),
        ).fetchone()
        total_digests = conn.execute("SELECT COUNT(*) FROM digests WHERE user_id = ?", (user_id,)).fetchone()[0]
        total_errors = conn.execute(
            "SELECT COUNT(*) FROM processing_errors WHERE user_id = ?", (user_id,)
        ).fetchone()[0]

        return {
            "total_emails": row["total"],
            "total_summarized": row["summarized"],
            "total_digests": total_digests,
            "total_errors": total_errors,
            "avg_score": round(row["avg_score"], 1) if row["avg_score"] is not None else 0.0,
        }

    def close(self) -> None:
        """Close the calling thread's connection."""
        conn = getattr(self._thread_local, "connection", None)
        if conn is not None:
            conn.close()
            self._thread_local.connection = None
            logger.debug("Thread-local database connection closed")

    def __enter__(self) -> "LocalStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
