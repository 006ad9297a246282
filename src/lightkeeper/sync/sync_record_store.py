"""Storage layer for calendar sync records.

A sync record ties an external calendar event to the task it produced (or, in
the reverse direction, a task to the event it produced). Records share the
application database so a task and its record can be written in one
transaction.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .models import SyncDirection, SyncRecord
from ..database import Database, to_db_time
from ..models import Task
from ..utils.datetime import now_utc, parse_iso


logger = logging.getLogger(__name__)


RECENT_SYNCS_LIMIT = 10


class DuplicateSyncRecordError(ValueError):
    """A record for this (event, user) pair already exists."""

    def __init__(self, event_id: str, user_id: int):
        super().__init__(f"Sync record already exists for event {event_id} and user {user_id}")
        self.event_id = event_id
        self.user_id = user_id


class SyncRecordStore:
    """Persistent storage for calendar sync records."""

    def __init__(self, db: Database):
        """Initialize the record store.

        Args:
            db: Application database; its schema includes ``sync_records``
        """
        self.db = db
        self.logger = logging.getLogger(__name__)

    def _insert_record(self, conn: sqlite3.Connection, record: SyncRecord) -> SyncRecord:
        try:
            cursor = conn.execute("""
                INSERT INTO sync_records
                (event_id, calendar_id, user_id, grant_id, task_id, event_title,
                 event_start_time, event_end_time, sync_direction, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.event_id,
                record.calendar_id,
                record.user_id,
                record.grant_id,
                record.task_id,
                record.event_title,
                to_db_time(record.event_start_time),
                to_db_time(record.event_end_time),
                record.sync_direction.value,
                to_db_time(record.created_at),
            ))
        except sqlite3.IntegrityError as e:
            if "UNIQUE" in str(e):
                raise DuplicateSyncRecordError(record.event_id, record.user_id)
            raise
        record.id = cursor.lastrowid
        return record

    async def find_by_event(self, event_id: str, user_id: int) -> Optional[SyncRecord]:
        """Get the record for an external event and user, if any."""
        with self.db.connect() as conn:
            row = conn.execute("""
                SELECT * FROM sync_records WHERE event_id = ? AND user_id = ?
            """, (event_id, user_id)).fetchone()
        return self._row_to_record(row) if row else None

    async def find_by_task(self, task_id: int,
                           direction: Optional[SyncDirection] = None) -> Optional[SyncRecord]:
        """Get the record pointing at a task, optionally in one direction only."""
        query = "SELECT * FROM sync_records WHERE task_id = ?"
        params: List[Any] = [task_id]
        if direction is not None:
            query += " AND sync_direction = ?"
            params.append(direction.value)
        query += " ORDER BY id LIMIT 1"

        with self.db.connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._row_to_record(row) if row else None

    async def list_for_user(self, user_id: int, limit: int = 50) -> List[SyncRecord]:
        """Records for a user, latest event start first."""
        with self.db.connect() as conn:
            rows = conn.execute("""
                SELECT * FROM sync_records
                WHERE user_id = ?
                ORDER BY event_start_time DESC, id DESC
                LIMIT ?
            """, (user_id, limit)).fetchall()
        return [self._row_to_record(row) for row in rows]

    async def count_for_user(self, user_id: int) -> int:
        with self.db.connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM sync_records WHERE user_id = ?", (user_id,)
            ).fetchone()[0]

    async def materialize_task(self, task: Task, record: SyncRecord) -> Tuple[Task, SyncRecord]:
        """Insert a task and the record that produced it in one transaction.

        Either both rows are written or neither is.

        Args:
            task: New task; its ``id`` is assigned
            record: Record for the source event; its ``task_id`` and ``id`` are assigned

        Returns:
            The stored task and record

        Raises:
            DuplicateSyncRecordError: If the event was already materialized for the user
            ValueError: If the task fails validation
        """
        with self.db.connect() as conn:
            self.db.insert_task(conn, task)
            record.task_id = task.id
            self._insert_record(conn, record)

        self.logger.debug(f"Materialized event {record.event_id} as task {task.id} for user {record.user_id}")
        return task, record

    async def save_record(self, record: SyncRecord) -> SyncRecord:
        """Insert a standalone record.

        Raises:
            DuplicateSyncRecordError: If a record for the (event, user) pair exists
        """
        with self.db.connect() as conn:
            self._insert_record(conn, record)
        return record

    async def get_stats(self, user_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Sync record statistics for a user.

        Args:
            user_id: User to report on
            now: Reference instant for upcoming/past split

        Returns:
            Dictionary with ``total_synced``, ``upcoming_events``, ``past_events``
            and ``recent_syncs`` (the most recently created records)
        """
        now_value = to_db_time(now or now_utc())
        with self.db.connect() as conn:
            total = conn.execute(
                "SELECT COUNT(*) FROM sync_records WHERE user_id = ?", (user_id,)
            ).fetchone()[0]
            upcoming = conn.execute("""
                SELECT COUNT(*) FROM sync_records
                WHERE user_id = ? AND event_start_time >= ?
            """, (user_id, now_value)).fetchone()[0]
            recent_rows = conn.execute("""
                SELECT * FROM sync_records
                WHERE user_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
            """, (user_id, RECENT_SYNCS_LIMIT)).fetchall()

        return {
            'total_synced': total,
            'upcoming_events': upcoming,
            'past_events': total - upcoming,
            'recent_syncs': [self._row_to_record(row).to_dict() for row in recent_rows],
        }

    def _row_to_record(self, row: sqlite3.Row) -> SyncRecord:
        """Convert database row to SyncRecord."""
        return SyncRecord(
            id=row['id'],
            event_id=row['event_id'],
            calendar_id=row['calendar_id'],
            user_id=row['user_id'],
            grant_id=row['grant_id'],
            task_id=row['task_id'],
            event_title=row['event_title'],
            event_start_time=parse_iso(row['event_start_time']),
            event_end_time=parse_iso(row['event_end_time']),
            sync_direction=SyncDirection(row['sync_direction']),
            created_at=parse_iso(row['created_at']),
        )
