"""Core domain models: users and tasks."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .utils.datetime import ensure_aware, now_utc, parse_iso, to_iso_string


TASK_TITLE_MAX_LENGTH = 100
TASK_DESCRIPTION_MAX_LENGTH = 500
USER_NAME_MAX_LENGTH = 50


class UserRole(Enum):
    """Account roles."""
    ORGANISATION = "organisation"
    MEMBER = "member"


class TaskStatus(Enum):
    """Task status states."""
    PENDING = "pending"
    COMPLETED = "completed"


class TaskPriority(Enum):
    """Task priority levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskSource(Enum):
    """Where a task originated."""
    MANUAL = "manual"
    EMAIL = "email"
    CALENDAR = "calendar"
    MEETING = "meeting"


@dataclass
class User:
    """Application user (an organisation account or a member)."""

    id: int
    email: str
    name: str
    password_hash: str = ""
    role: UserRole = UserRole.MEMBER
    created_at: datetime = field(default_factory=now_utc)
    is_active: bool = True

    def __post_init__(self):
        self.email = self.email.strip().lower()
        self.created_at = ensure_aware(self.created_at)
        if isinstance(self.role, str):
            self.role = UserRole(self.role)

    @property
    def is_organisation(self) -> bool:
        return self.role == UserRole.ORGANISATION

    def to_dict(self, include_sensitive: bool = False) -> Dict[str, Any]:
        """Convert user to dictionary.

        Args:
            include_sensitive: Include password hash in output

        Returns:
            Dictionary representation of user
        """
        data = {
            'id': self.id,
            'email': self.email,
            'name': self.name,
            'role': self.role.value,
            'created_at': to_iso_string(self.created_at),
            'is_active': self.is_active,
        }
        if include_sensitive:
            data['password_hash'] = self.password_hash
        return data


@dataclass
class Task:
    """A unit of work, created manually or materialized from an external source."""

    title: str
    description: str
    created_by: int
    id: Optional[int] = None
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[datetime] = None
    assigned_to: Optional[int] = None
    is_private: bool = False
    source: TaskSource = TaskSource.MANUAL
    source_meeting_id: Optional[int] = None
    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)

    def __post_init__(self):
        self.title = (self.title or "").strip()
        self.description = (self.description or "").strip()
        self.due_date = ensure_aware(self.due_date)
        self.created_at = ensure_aware(self.created_at)
        self.updated_at = ensure_aware(self.updated_at)
        if isinstance(self.status, str):
            self.status = TaskStatus(self.status)
        if isinstance(self.priority, str):
            self.priority = TaskPriority(self.priority)
        if isinstance(self.source, str):
            self.source = TaskSource(self.source)

    def validate(self) -> None:
        """Check field constraints before the task is stored.

        Raises:
            ValueError: If a required field is empty or too long
        """
        if not self.title:
            raise ValueError("Task title is required")
        if len(self.title) > TASK_TITLE_MAX_LENGTH:
            raise ValueError(f"Title cannot exceed {TASK_TITLE_MAX_LENGTH} characters")
        if not self.description:
            raise ValueError("Task description is required")
        if len(self.description) > TASK_DESCRIPTION_MAX_LENGTH:
            raise ValueError(f"Description cannot exceed {TASK_DESCRIPTION_MAX_LENGTH} characters")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'status': self.status.value,
            'priority': self.priority.value,
            'due_date': to_iso_string(self.due_date),
            'assigned_to': self.assigned_to,
            'is_private': self.is_private,
            'created_by': self.created_by,
            'source': self.source.value,
            'source_meeting_id': self.source_meeting_id,
            'created_at': to_iso_string(self.created_at),
            'updated_at': to_iso_string(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Task':
        """Create from dictionary representation."""
        data = dict(data)
        for name in ('due_date', 'created_at', 'updated_at'):
            if isinstance(data.get(name), str):
                data[name] = parse_iso(data[name])
        for name in ('created_at', 'updated_at'):
            if data.get(name) is None:
                data.pop(name, None)
        return cls(**data)
