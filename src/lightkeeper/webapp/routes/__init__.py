"""API routes."""

from .auth import router as auth_router
from .calendar import router as calendar_router
from .email import router as email_router
from .tasks import router as tasks_router

__all__ = ['auth_router', 'calendar_router', 'email_router', 'tasks_router']
