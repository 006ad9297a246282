"""SQLite persistence for users, tasks, calendar sync records and processed emails.

One database file holds all four tables. Connections are opened per
operation; methods are ``async`` so callers on the event loop treat the store
like any other awaitable service.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from .config import get_config
from .models import Task, User, UserRole, USER_NAME_MAX_LENGTH
from .utils.datetime import ensure_aware, now_utc, parse_iso


logger = logging.getLogger(__name__)


def to_db_time(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as a UTC ISO string so stored values sort correctly."""
    if dt is None:
        return None
    return ensure_aware(dt).astimezone(timezone.utc).isoformat()


class Database:
    """SQLite database for Lightkeeper."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize the database.

        Args:
            db_path: Optional custom database path; defaults to the configured one
        """
        if db_path is None:
            config = get_config()
            config.ensure_data_dir()
            db_path = config.get_database_path()

        self.db_path = Path(db_path)
        self.logger = logging.getLogger(__name__)

        self._init_database()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection with row access by name and foreign keys enforced.

        The block runs as one transaction: committed on success, rolled back
        if it raises.
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_database(self):
        """Initialize the SQLite database with required tables."""
        try:
            with self.connect() as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS users (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        email TEXT UNIQUE NOT NULL,
                        name TEXT NOT NULL,
                        password_hash TEXT NOT NULL DEFAULT '',
                        role TEXT NOT NULL DEFAULT 'member',
                        created_at TEXT NOT NULL,
                        is_active INTEGER NOT NULL DEFAULT 1
                    )
                """)

                conn.execute("""
                    CREATE TABLE IF NOT EXISTS tasks (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        title TEXT NOT NULL,
                        description TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'pending',
                        priority TEXT NOT NULL DEFAULT 'medium',
                        due_date TEXT,
                        assigned_to INTEGER REFERENCES users(id),
                        is_private INTEGER NOT NULL DEFAULT 0,
                        created_by INTEGER NOT NULL REFERENCES users(id),
                        source TEXT NOT NULL DEFAULT 'manual',
                        source_meeting_id INTEGER,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                """)

                conn.execute("""
                    CREATE TABLE IF NOT EXISTS sync_records (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        event_id TEXT NOT NULL,
                        calendar_id TEXT NOT NULL,
                        user_id INTEGER NOT NULL REFERENCES users(id),
                        grant_id TEXT NOT NULL,
                        task_id INTEGER REFERENCES tasks(id),
                        event_title TEXT NOT NULL,
                        event_start_time TEXT NOT NULL,
                        event_end_time TEXT,
                        sync_direction TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        UNIQUE(event_id, user_id)
                    )
                """)

                conn.execute("""
                    CREATE TABLE IF NOT EXISTS processed_emails (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        message_id TEXT NOT NULL,
                        user_id INTEGER NOT NULL REFERENCES users(id),
                        grant_id TEXT NOT NULL,
                        email_date TEXT NOT NULL,
                        task_id INTEGER REFERENCES tasks(id),
                        processed_at TEXT NOT NULL,
                        UNIQUE(message_id, user_id)
                    )
                """)

                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_tasks_created_by
                    ON tasks(created_by)
                """)

                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_tasks_assigned_to
                    ON tasks(assigned_to)
                """)

                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_sync_records_task_id
                    ON sync_records(task_id)
                """)

                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_sync_records_start
                    ON sync_records(event_start_time)
                """)

                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_processed_emails_user_date
                    ON processed_emails(user_id, grant_id, email_date)
                """)

            self.logger.debug(f"Initialized database at {self.db_path}")

        except sqlite3.Error as e:
            self.logger.error(f"Failed to initialize database: {e}")
            raise

    # User Operations

    async def create_user(self, email: str, name: str, password_hash: str = "",
                          role: UserRole = UserRole.MEMBER) -> User:
        """Create a new user.

        Args:
            email: Unique email address (stored lower-cased)
            name: Display name
            password_hash: bcrypt hash, empty for users that never log in
            role: Account role

        Returns:
            Created User instance

        Raises:
            ValueError: If the email already exists or a field is invalid
        """
        email = email.strip().lower()
        name = name.strip()
        if not email:
            raise ValueError("Email is required")
        if not name:
            raise ValueError("Name is required")
        if len(name) > USER_NAME_MAX_LENGTH:
            raise ValueError(f"Name cannot exceed {USER_NAME_MAX_LENGTH} characters")

        role = UserRole(role)
        created_at = now_utc()

        try:
            with self.connect() as conn:
                cursor = conn.execute("""
                    INSERT INTO users (email, name, password_hash, role, created_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (email, name, password_hash, role.value, to_db_time(created_at)))
                user_id = cursor.lastrowid
        except sqlite3.IntegrityError:
            raise ValueError(f"Email '{email}' already exists")

        self.logger.info(f"Created user: {email} (id={user_id})")
        return User(
            id=user_id,
            email=email,
            name=name,
            password_hash=password_hash,
            role=role,
            created_at=created_at,
        )

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID, or None if not found."""
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        """Get user by email (case-insensitive), or None if not found."""
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    async def list_users(self) -> List[User]:
        """List all users in id order."""
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY id").fetchall()
        return [self._row_to_user(row) for row in rows]

    async def list_members(self) -> List[User]:
        """List member accounts ordered by name."""
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM users WHERE role = ? ORDER BY name COLLATE NOCASE",
                (UserRole.MEMBER.value,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    async def count_users(self) -> int:
        with self.connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]

    def _row_to_user(self, row: sqlite3.Row) -> User:
        """Convert database row to User instance."""
        return User(
            id=row['id'],
            email=row['email'],
            name=row['name'],
            password_hash=row['password_hash'],
            role=UserRole(row['role']),
            created_at=parse_iso(row['created_at']),
            is_active=bool(row['is_active']),
        )

    # Task Operations

    def insert_task(self, conn: sqlite3.Connection, task: Task) -> Task:
        """Validate and insert a task on an open connection.

        The caller owns the transaction, so this can be combined with other
        writes. Sets ``task.id`` and returns the task.

        Raises:
            ValueError: If the task fails validation
        """
        task.validate()
        cursor = conn.execute("""
            INSERT INTO tasks (title, description, status, priority, due_date,
                               assigned_to, is_private, created_by, source,
                               source_meeting_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            task.title,
            task.description,
            task.status.value,
            task.priority.value,
            to_db_time(task.due_date),
            task.assigned_to,
            int(task.is_private),
            task.created_by,
            task.source.value,
            task.source_meeting_id,
            to_db_time(task.created_at),
            to_db_time(task.updated_at),
        ))
        task.id = cursor.lastrowid
        return task

    async def create_task(self, task: Task) -> Task:
        """Store a new task.

        Args:
            task: Task to store; its ``id`` is assigned

        Returns:
            The stored task

        Raises:
            ValueError: If validation fails or a referenced user does not exist
        """
        try:
            with self.connect() as conn:
                self.insert_task(conn, task)
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Invalid task reference: {e}")

        self.logger.info(f"Created task {task.id}: {task.title}")
        return task

    async def get_task(self, task_id: int) -> Optional[Task]:
        """Get task by ID, or None if not found."""
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    async def list_tasks_for_user(self, user_id: int) -> List[Task]:
        """Tasks created by or assigned to a user, newest first."""
        with self.connect() as conn:
            rows = conn.execute("""
                SELECT * FROM tasks
                WHERE created_by = ? OR assigned_to = ?
                ORDER BY created_at DESC, id DESC
            """, (user_id, user_id)).fetchall()
        return [self._row_to_task(row) for row in rows]

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        """Convert database row to Task instance."""
        return Task(
            id=row['id'],
            title=row['title'],
            description=row['description'],
            status=row['status'],
            priority=row['priority'],
            due_date=parse_iso(row['due_date']),
            assigned_to=row['assigned_to'],
            is_private=bool(row['is_private']),
            created_by=row['created_by'],
            source=row['source'],
            source_meeting_id=row['source_meeting_id'],
            created_at=parse_iso(row['created_at']),
            updated_at=parse_iso(row['updated_at']),
        )


# Global database instance
_db_instance: Optional[Database] = None


def get_database() -> Database:
    """Get global database instance."""
    global _db_instance

    if _db_instance is None:
        _db_instance = Database()

    return _db_instance


def reset_database():
    """Reset global database instance (for testing)."""
    global _db_instance
    _db_instance = None
