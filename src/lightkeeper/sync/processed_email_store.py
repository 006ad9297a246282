"""Storage layer for processed emails.

Each row marks a message as examined for a user, whether or not it produced a
task, so a scan never extracts the same message twice.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from .models import ProcessedEmail
from ..database import Database, to_db_time
from ..models import Task
from ..utils.datetime import parse_iso


logger = logging.getLogger(__name__)


class DuplicateProcessedEmailError(ValueError):
    """This message was already processed for the user."""

    def __init__(self, message_id: str, user_id: int):
        super().__init__(f"Email {message_id} already processed for user {user_id}")
        self.message_id = message_id
        self.user_id = user_id


class ProcessedEmailStore:
    """Persistent storage for processed-email records."""

    def __init__(self, db: Database):
        self.db = db
        self.logger = logging.getLogger(__name__)

    def _insert_record(self, conn: sqlite3.Connection, record: ProcessedEmail) -> ProcessedEmail:
        try:
            cursor = conn.execute("""
                INSERT INTO processed_emails
                (message_id, user_id, grant_id, email_date, task_id, processed_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                record.message_id,
                record.user_id,
                record.grant_id,
                to_db_time(record.email_date),
                record.task_id,
                to_db_time(record.processed_at),
            ))
        except sqlite3.IntegrityError as e:
            if "UNIQUE" in str(e):
                raise DuplicateProcessedEmailError(record.message_id, record.user_id)
            raise
        record.id = cursor.lastrowid
        return record

    async def find(self, message_id: str, user_id: int) -> Optional[ProcessedEmail]:
        with self.db.connect() as conn:
            row = conn.execute("""
                SELECT * FROM processed_emails WHERE message_id = ? AND user_id = ?
            """, (message_id, user_id)).fetchone()
        return self._row_to_record(row) if row else None

    async def is_processed(self, message_id: str, user_id: int) -> bool:
        return await self.find(message_id, user_id) is not None

    async def latest_email_date(self, user_id: int, grant_id: str) -> Optional[datetime]:
        """Date of the newest message processed for a user and grant."""
        with self.db.connect() as conn:
            row = conn.execute("""
                SELECT MAX(email_date) FROM processed_emails
                WHERE user_id = ? AND grant_id = ?
            """, (user_id, grant_id)).fetchone()
        return parse_iso(row[0]) if row and row[0] else None

    async def record_email(self, record: ProcessedEmail,
                           task: Optional[Task] = None) -> Tuple[Optional[Task], ProcessedEmail]:
        """Mark a message processed, storing the task it produced if any.

        The task and the record are written in one transaction.

        Args:
            record: Record for the message; its ``id`` (and ``task_id``) are assigned
            task: Task extracted from the message, or None

        Returns:
            The stored task (or None) and record

        Raises:
            DuplicateProcessedEmailError: If the message was already processed for the user
            ValueError: If the task fails validation
        """
        with self.db.connect() as conn:
            if task is not None:
                self.db.insert_task(conn, task)
                record.task_id = task.id
            self._insert_record(conn, record)

        self.logger.debug(
            f"Processed email {record.message_id} for user {record.user_id} (task={record.task_id})"
        )
        return task, record

    async def count_for_user(self, user_id: int) -> int:
        with self.db.connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM processed_emails WHERE user_id = ?", (user_id,)
            ).fetchone()[0]

    async def get_stats(self, user_id: int) -> Dict[str, Any]:
        """Processing statistics for a user.

        Returns:
            Dictionary with ``total_emails_processed``, ``tasks_created``,
            ``last_processed_at`` and ``last_email_date`` (ISO strings or None)
        """
        with self.db.connect() as conn:
            row = conn.execute("""
                SELECT COUNT(*) AS total, COUNT(task_id) AS with_task,
                       MAX(processed_at) AS last_processed, MAX(email_date) AS last_email
                FROM processed_emails WHERE user_id = ?
            """, (user_id,)).fetchone()

        return {
            'total_emails_processed': row['total'],
            'tasks_created': row['with_task'],
            'last_processed_at': row['last_processed'],
            'last_email_date': row['last_email'],
        }

    def _row_to_record(self, row: sqlite3.Row) -> ProcessedEmail:
        return ProcessedEmail(
            id=row['id'],
            message_id=row['message_id'],
            user_id=row['user_id'],
            grant_id=row['grant_id'],
            email_date=parse_iso(row['email_date']),
            task_id=row['task_id'],
            processed_at=parse_iso(row['processed_at']),
        )
