"""Lightkeeper - task and meeting management with external calendar sync."""

__version__ = "0.1.0"
__author__ = "Lightkeeper Team"

from .models import (
    User,
    UserRole,
    Task,
    TaskStatus,
    TaskPriority,
    TaskSource,
)

__all__ = [
    "User",
    "UserRole",
    "Task",
    "TaskStatus",
    "TaskPriority",
    "TaskSource",
    "__version__",
]
